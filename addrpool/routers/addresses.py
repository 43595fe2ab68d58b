from fastapi import APIRouter, Depends

from ..dependencies import get_services
from ..schemas.address import AddressResponse, AddressUpdate
from ..services.container import ServiceContainer

router = APIRouter(prefix="/addresses", tags=["Addresses"])


@router.patch("/{address_id}", response_model=AddressResponse)
def update_address(
    address_id: int,
    address_update: AddressUpdate,
    services: ServiceContainer = Depends(get_services),
):
    """
    Edit an address record.

    - **status**: "available", "reserved" or "blocked"; assigned addresses must be released first
    - **comment**: Free-form operator note
    """
    return services.assignments.update_address(
        address_id,
        status=address_update.status.value if address_update.status else None,
        comment=address_update.comment,
    )
