from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from ..database import get_db
from ..dependencies import get_services
from ..schemas.maintenance import EventResponse, SyncReportResponse, VerificationReportResponse
from ..schemas.pool import GlobalPoolStatsResponse
from ..services.container import ServiceContainer
from ..services.pool_registry import PoolRegistryService

router = APIRouter(tags=["Maintenance"])


@router.post("/maintenance/verify", response_model=VerificationReportResponse)
def verify_assignments(services: ServiceContainer = Depends(get_services)):
    """
    Run one consistency pass over every pool.

    Orphaned owners, duplicate owners and owner/status mismatches are released;
    records stuck waiting for a router push get an escalated retry.
    """
    report = services.verifier.verify_assignments()
    return VerificationReportResponse.model_validate(report)


@router.post("/maintenance/sync", response_model=List[SyncReportResponse])
def sync_all_routers(services: ServiceContainer = Depends(get_services)):
    """Reconcile every active router in turn."""
    return [SyncReportResponse.model_validate(report) for report in services.reconciler.sync_all()]


@router.get("/stats", response_model=GlobalPoolStatsResponse)
def get_global_stats(db: Session = Depends(get_db)):
    """Totals over every active router and pool, grouped by pool type and by router."""
    return PoolRegistryService.get_global_stats(db)


@router.get("/events", response_model=List[EventResponse])
def list_events(
    limit: int = Query(100, ge=1, le=1000),
    event_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Most recent audit events first."""
    return PoolRegistryService.list_events(db, limit=limit, event_type=event_type)
