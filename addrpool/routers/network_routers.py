from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from ..database import get_db
from ..dependencies import get_services
from ..schemas.maintenance import SyncReportResponse
from ..schemas.pool import RouterCreate, RouterPoolStatsResponse, RouterResponse
from ..services.container import ServiceContainer
from ..services.pool_registry import PoolRegistryService

router = APIRouter(prefix="/routers", tags=["Routers"])


@router.post("", response_model=RouterResponse, status_code=status.HTTP_201_CREATED)
def create_router(router_data: RouterCreate, db: Session = Depends(get_db)):
    """
    Register a network router that owns address pools.

    - **api_url**: Base URL of the router's management API
    - **username** / **password**: API credentials
    """
    return PoolRegistryService.create_router(db, router_data)


@router.get("", response_model=List[RouterResponse])
def list_routers(db: Session = Depends(get_db)):
    return PoolRegistryService.list_routers(db)


@router.get("/{router_id}", response_model=RouterResponse)
def get_router(router_id: int, db: Session = Depends(get_db)):
    return PoolRegistryService.get_router(db, router_id)


@router.delete("/{router_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_router(router_id: int, db: Session = Depends(get_db)):
    PoolRegistryService.delete_router(db, router_id)


@router.post("/{router_id}/sync", response_model=SyncReportResponse)
def sync_with_router(router_id: int, services: ServiceContainer = Depends(get_services)):
    """
    Reconcile the store with the router's live binding table.

    Missing bindings are pushed, unknown router bindings are imported and
    ownership disagreements are reported as conflicts. An unreachable router
    changes nothing and is reported with `reachable: false`.
    """
    report = services.reconciler.sync_with_router(router_id)
    return SyncReportResponse.model_validate(report)


@router.get("/{router_id}/stats", response_model=RouterPoolStatsResponse)
def get_router_stats(router_id: int, db: Session = Depends(get_db)):
    """Statistics of each active pool of the router plus router-wide totals."""
    return PoolRegistryService.get_router_stats(db, router_id)
