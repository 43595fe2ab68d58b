from .pool import (
    PoolType,
    RouterCreate,
    RouterResponse,
    PoolCreate,
    PoolUpdate,
    PoolResponse,
    PoolCreateResponse,
    PoolStatsResponse,
    PoolCapacityResponse,
    PoolSummary,
    RouterPoolStatsResponse,
    RouterSummary,
    GlobalPoolStatsResponse,
    ImportRequest,
    ImportResponse,
)
from .address import (
    AddressResponse,
    AddressPage,
    AssignRequest,
    AddressUpdate,
    EditableStatus,
    ReleaseResponse,
    MoveRequest,
    BulkMoveRequest,
    BulkMoveResponse,
)
from .maintenance import (
    SyncReportResponse,
    VerificationReportResponse,
    EventResponse,
)

__all__ = [
    "PoolType",
    "RouterCreate",
    "RouterResponse",
    "PoolCreate",
    "PoolUpdate",
    "PoolResponse",
    "PoolCreateResponse",
    "PoolStatsResponse",
    "PoolCapacityResponse",
    "PoolSummary",
    "RouterPoolStatsResponse",
    "RouterSummary",
    "GlobalPoolStatsResponse",
    "ImportRequest",
    "ImportResponse",
    "AddressResponse",
    "AddressPage",
    "AssignRequest",
    "AddressUpdate",
    "EditableStatus",
    "ReleaseResponse",
    "MoveRequest",
    "BulkMoveRequest",
    "BulkMoveResponse",
    "SyncReportResponse",
    "VerificationReportResponse",
    "EventResponse",
]
