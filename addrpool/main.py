import logging
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings, get_settings
from .database import build_engine, build_session_factory, create_tables
from .exceptions import PoolEngineError
from .models import Pool
from .routers import addresses, maintenance, network_routers, pools, sessions
from .services.container import build_services
from .services.router_client import RouterClient
from .services.sessions import SessionDirectory

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    router_client: Optional[RouterClient] = None,
    session_directory: Optional[SessionDirectory] = None,
    executor: Optional[Executor] = None,
) -> FastAPI:
    """Build the API. Collaborators not passed in are built from ``settings``."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: engine, tables, services and background jobs
        configure_logging(settings.log_level)
        engine = build_engine(settings.database_url)
        create_tables(engine)
        session_factory = build_session_factory(engine)
        services = build_services(
            settings,
            session_factory,
            router_client=router_client,
            session_directory=session_directory,
            executor=executor,
        )
        services.start_jobs()
        app.state.session_factory = session_factory
        app.state.services = services
        logger.info("Subscriber address pool service started")
        yield
        # Shutdown: let queued router pushes finish before the engine goes away
        services.close()
        engine.dispose()
        logger.info("Subscriber address pool service stopped")

    app = FastAPI(
        title="Subscriber Address Pool Service",
        description="""
## Subscriber Address Pool Service

Hands out IPv4 addresses from router-owned pools to subscriber sessions and
keeps each router's binding table in step with the store.

---

### Address lifecycle

| Status | Meaning |
|--------|---------|
| available | Free to assign |
| assigned | Bound to exactly one subscriber session |
| reserved | Held back (gateway, unknown router binding) |
| blocked | Taken out of service by an operator |

---

### Key Features
- CIDR import with network/broadcast exclusion
- Atomic lowest-free-address assignment, one address per session
- Moving sessions between pools (e.g. active to suspended) in one transaction
- Per-pool, per-router and global utilization statistics
- Background router pushes with retry; failures flag the record for resync
- Router reconciliation and periodic consistency verification
- Audit trail of every address event
        """,
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(PoolEngineError)
    async def pool_engine_error_handler(request: Request, exc: PoolEngineError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    # Include routers
    for module in (pools, network_routers, sessions, addresses, maintenance):
        app.include_router(module.router, prefix=settings.api_v1_prefix)

    @app.get("/", tags=["Health"])
    def root():
        """Health check endpoint."""
        return {
            "service": "Subscriber Address Pool Service",
            "status": "healthy",
            "version": __version__,
        }

    @app.get("/health", tags=["Health"])
    def health_check(request: Request):
        """Detailed health check, including pools currently out of step with their router."""
        with request.app.state.session_factory() as db:
            degraded = db.query(Pool).filter(Pool.degraded.is_(True)).count()
        return {
            "status": "degraded" if degraded else "healthy",
            "database": "connected",
            "degraded_pools": degraded,
        }

    return app


app = create_app()
