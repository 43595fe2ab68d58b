from .assignment import AssignmentEngine
from .cidr_importer import CIDRImporter
from .container import ServiceContainer, build_services
from .pool_registry import PoolRegistryService
from .reconciler import RouterReconciler
from .verifier import ConsistencyVerifier

__all__ = [
    "AssignmentEngine",
    "CIDRImporter",
    "ConsistencyVerifier",
    "PoolRegistryService",
    "RouterReconciler",
    "ServiceContainer",
    "build_services",
]
