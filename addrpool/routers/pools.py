import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from ..database import get_db
from ..dependencies import get_services
from ..schemas.address import AddressPage, AddressResponse, AddressStatus, AssignRequest
from ..schemas.pool import (
    ImportRequest,
    ImportResponse,
    PoolCreate,
    PoolCreateResponse,
    PoolCapacityResponse,
    PoolResponse,
    PoolStatsResponse,
    PoolType,
    PoolUpdate,
)
from ..services.container import ServiceContainer
from ..services.pool_registry import PoolRegistryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pools", tags=["Pools"])


@router.post("", response_model=PoolCreateResponse, status_code=status.HTTP_201_CREATED)
def create_pool(
    pool_data: PoolCreate,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """
    Create a new subscriber address pool.

    - **name**: Pool name, unique per router (e.g. "pppoe-active")
    - **router_id**: Router that owns the pool
    - **cidr**: Pool network (e.g. "100.64.0.0/22"); must not overlap another pool
    - **pool_type**: "dynamic", "static", "management", "suspended" or "cut_service"
    - **import_addresses**: Expand the whole CIDR into address records right away

    When the import fails the pool is not kept.
    """
    if pool_data.import_addresses:
        services.importer.check_importable(pool_data.cidr)

    pool = PoolRegistryService.create_pool(db, pool_data, services.settings)
    response = PoolCreateResponse.model_validate(pool)

    if pool_data.import_addresses:
        try:
            result = services.importer.import_cidr(db, pool.id, pool.cidr)
        except Exception:
            db.rollback()
            logger.warning("Import into new pool %s failed, removing the pool", pool.name)
            PoolRegistryService.decommission_pool(db, pool.id)
            raise
        response.imported = ImportResponse.model_validate(result)

    return response


@router.get("", response_model=List[PoolResponse])
def list_pools(
    router_id: Optional[int] = None,
    pool_type: Optional[PoolType] = None,
    active: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """List pools, optionally filtered by router, type or active flag."""
    return PoolRegistryService.list_pools(
        db,
        router_id=router_id,
        pool_type=pool_type.value if pool_type else None,
        active=active,
    )


@router.get("/{pool_id}", response_model=PoolResponse)
def get_pool(pool_id: int, db: Session = Depends(get_db)):
    return PoolRegistryService.get_pool(db, pool_id)


@router.patch("/{pool_id}", response_model=PoolResponse)
def update_pool(pool_id: int, pool_update: PoolUpdate, db: Session = Depends(get_db)):
    """Rename, retype, describe or (de)activate a pool. The network itself is immutable."""
    return PoolRegistryService.update_pool(db, pool_id, pool_update)


@router.delete("/{pool_id}", status_code=status.HTTP_204_NO_CONTENT)
def decommission_pool(pool_id: int, db: Session = Depends(get_db)):
    """Delete a pool and its address records. Refused while any address is assigned."""
    PoolRegistryService.decommission_pool(db, pool_id)


@router.post("/{pool_id}/import", response_model=ImportResponse)
def import_cidr(
    pool_id: int,
    request: ImportRequest,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """
    Expand a CIDR block into available address records.

    Network and broadcast addresses are skipped, as is the first host when
    **reserve_gateway** is set. Re-importing the same block creates nothing.
    """
    result = services.importer.import_cidr(db, pool_id, request.cidr, request.reserve_gateway)
    return ImportResponse.model_validate(result)


@router.get("/{pool_id}/stats", response_model=PoolStatsResponse)
def get_pool_stats(pool_id: int, db: Session = Depends(get_db)):
    return PoolRegistryService.get_pool_stats(db, pool_id)


@router.get("/{pool_id}/capacity", response_model=PoolCapacityResponse)
def check_pool_capacity(pool_id: int, db: Session = Depends(get_db)):
    """
    Headroom of a pool.

    - **has_capacity**: false once 95% of assignable addresses are in use; moves are refused
    - **accepts_new_sessions**: false from 90%
    """
    return PoolRegistryService.check_pool_capacity(db, pool_id)


@router.get("/{pool_id}/addresses", response_model=AddressPage)
def list_pool_addresses(
    pool_id: int,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=1000),
    status_filter: Optional[AddressStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    """Page through a pool's addresses in numeric order."""
    return PoolRegistryService.list_pool_addresses(
        db, pool_id, page=page, size=size,
        status=status_filter.value if status_filter else None,
    )


@router.post("/{pool_id}/assign", response_model=AddressResponse)
def assign_address(
    pool_id: int,
    request: AssignRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Assign an address from the pool to a subscriber session.

    - **session_id**: Subscriber session identifier
    - **address**: Optional specific address; otherwise the lowest free one

    The router is updated in the background; a slow or failing router never
    fails this call.
    """
    return services.assignments.assign(request.session_id, pool_id, request.address)
