"""Explicit wiring of the services, built once per process and closed at shutdown."""
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..events import ALL_EVENTS, AuditLogSubscriber, EventBus
from .assignment import AssignmentEngine
from .cidr_importer import CIDRImporter
from .reconciler import RouterReconciler
from .router_client import InMemoryRouterClient, RestRouterClient, RouterClient
from .scheduler import PeriodicJob
from .sessions import HttpSessionDirectory, SessionDirectory, StaticSessionDirectory
from .verifier import ConsistencyVerifier

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: sessionmaker
    event_bus: EventBus
    router_client: RouterClient
    session_directory: SessionDirectory
    executor: Executor
    importer: CIDRImporter
    reconciler: RouterReconciler
    assignments: AssignmentEngine
    verifier: ConsistencyVerifier
    jobs: List[PeriodicJob] = field(default_factory=list)

    def start_jobs(self) -> None:
        if self.settings.sync_interval_seconds > 0:
            self.jobs.append(PeriodicJob("router-sync", self.settings.sync_interval_seconds,
                                         self.reconciler.sync_all))
        if self.settings.verify_interval_seconds > 0:
            self.jobs.append(PeriodicJob("verify", self.settings.verify_interval_seconds,
                                         self.verifier.verify_assignments))
        for job in self.jobs:
            job.start()

    def close(self) -> None:
        for job in self.jobs:
            job.stop()
        self.jobs.clear()
        shutdown = getattr(self.executor, "shutdown", None)
        if shutdown is not None:
            shutdown(wait=True)


def default_router_client(settings: Settings) -> RouterClient:
    if settings.router_client == "memory":
        return InMemoryRouterClient()
    return RestRouterClient(timeout=settings.router_timeout_seconds)


def default_session_directory(settings: Settings) -> SessionDirectory:
    if settings.session_directory_url:
        return HttpSessionDirectory(settings.session_directory_url,
                                    timeout=settings.session_directory_timeout_seconds)
    logger.warning("No session directory configured; every session is treated as existing")
    return StaticSessionDirectory()


def build_services(
    settings: Settings,
    session_factory: sessionmaker,
    router_client: Optional[RouterClient] = None,
    session_directory: Optional[SessionDirectory] = None,
    executor: Optional[Executor] = None,
    event_bus: Optional[EventBus] = None,
    audit: bool = True,
) -> ServiceContainer:
    event_bus = event_bus or EventBus()
    if audit:
        event_bus.subscribe(ALL_EVENTS, AuditLogSubscriber(session_factory))

    router_client = router_client or default_router_client(settings)
    session_directory = session_directory or default_session_directory(settings)
    executor = executor or ThreadPoolExecutor(
        max_workers=settings.push_workers, thread_name_prefix="router-push",
    )

    importer = CIDRImporter(settings, event_bus)
    reconciler = RouterReconciler(settings, session_factory, router_client, session_directory, event_bus)
    assignments = AssignmentEngine(session_factory, event_bus, reconciler, executor)
    verifier = ConsistencyVerifier(settings, session_factory, assignments, reconciler, session_directory)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        event_bus=event_bus,
        router_client=router_client,
        session_directory=session_directory,
        executor=executor,
        importer=importer,
        reconciler=reconciler,
        assignments=assignments,
        verifier=verifier,
    )
