from concurrent.futures import Executor, Future

import pytest
from sqlalchemy import select

from addrpool.config import Settings
from addrpool.database import build_engine, build_session_factory, create_tables
from addrpool.models import AddressRecord
from addrpool.schemas.pool import PoolCreate, RouterCreate
from addrpool.services.container import build_services
from addrpool.services.pool_registry import PoolRegistryService
from addrpool.services.router_client import InMemoryRouterClient
from addrpool.services.sessions import StaticSessionDirectory


class ImmediateExecutor(Executor):
    """Runs submitted work inline so router pushes finish before assign returns."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'addrpool.db'}",
        router_client="memory",
        router_retry_attempts=2,
        router_retry_backoff_seconds=0,
        router_retry_priority_attempts=3,
        _env_file=None,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def router_client():
    return InMemoryRouterClient()


@pytest.fixture
def session_directory():
    return StaticSessionDirectory()


@pytest.fixture
def executor():
    return ImmediateExecutor()


@pytest.fixture
def services(settings, session_factory, router_client, session_directory, executor):
    container = build_services(
        settings,
        session_factory,
        router_client=router_client,
        session_directory=session_directory,
        executor=executor,
    )
    yield container
    container.close()


@pytest.fixture
def router(db):
    return PoolRegistryService.create_router(
        db, RouterCreate(name="bras-1", api_url="https://10.255.0.1", username="api")
    )


@pytest.fixture
def make_pool(db, router, settings, services):
    """Create a pool on the test router and import its whole network."""

    def _make_pool(cidr="10.0.0.0/24", name=None, import_addresses=True, **kwargs):
        pool = PoolRegistryService.create_pool(
            db,
            PoolCreate(name=name or f"pool-{cidr}", router_id=router.id, cidr=cidr, **kwargs),
            settings,
        )
        if import_addresses:
            services.importer.import_cidr(db, pool.id, cidr)
        return pool

    return _make_pool


@pytest.fixture
def fetch(session_factory):
    """Read an address record fresh from the database."""

    def _fetch(address):
        with session_factory() as session:
            return session.execute(
                select(AddressRecord).where(AddressRecord.address == address)
            ).scalar_one_or_none()

    return _fetch
