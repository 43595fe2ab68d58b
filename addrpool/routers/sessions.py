from fastapi import APIRouter, Depends

from ..dependencies import get_services
from ..exceptions import AddressNotFound
from ..schemas.address import AddressResponse, BulkMoveRequest, BulkMoveResponse, MoveRequest, ReleaseResponse
from ..services.container import ServiceContainer

router = APIRouter(prefix="/sessions", tags=["Sessions"])


@router.post("/move", response_model=BulkMoveResponse)
def bulk_move_sessions(request: BulkMoveRequest, services: ServiceContainer = Depends(get_services)):
    """
    Move several sessions into one pool.

    Each session is moved on its own; failures are listed with their reason
    and do not stop the remaining moves.
    """
    return services.assignments.bulk_move_sessions(request.session_ids, request.pool_id)


@router.post("/{session_id}/release", response_model=ReleaseResponse)
def release_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    """
    Return the session's address to its pool.

    Releasing a session that holds nothing succeeds with `released: false`,
    so a disconnect handler can call this without checking first.
    """
    record = services.assignments.release(session_id)
    if record is None:
        return ReleaseResponse(session_id=session_id, released=False)
    return ReleaseResponse(
        session_id=session_id,
        released=True,
        address=AddressResponse.model_validate(record),
    )


@router.get("/{session_id}/address", response_model=AddressResponse)
def get_session_address(session_id: str, services: ServiceContainer = Depends(get_services)):
    record = services.assignments.get_session_address(session_id)
    if record is None:
        raise AddressNotFound(f"Session '{session_id}' holds no address")
    return record


@router.post("/{session_id}/move", response_model=AddressResponse)
def move_session(session_id: str, request: MoveRequest, services: ServiceContainer = Depends(get_services)):
    """
    Move the session's address into another pool, e.g. from active to suspended.

    The old address is freed and the new one claimed in one transaction; the
    target pool must be active and below 95% utilization.
    """
    return services.assignments.move_session(session_id, request.pool_id, request.address)
