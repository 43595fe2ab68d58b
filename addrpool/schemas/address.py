from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
import ipaddress


def _ipv4_or_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    try:
        return str(ipaddress.IPv4Address(v.strip()))
    except ValueError:
        raise ValueError("Invalid IPv4 address")


class AddressStatus(str, Enum):
    available = "available"
    assigned = "assigned"
    reserved = "reserved"
    blocked = "blocked"


class EditableStatus(str, Enum):
    """Statuses an operator may set directly; 'assigned' only comes from an assignment."""

    available = "available"
    reserved = "reserved"
    blocked = "blocked"


class AddressResponse(BaseModel):
    id: int
    pool_id: int
    address: str
    status: str
    owner_session_id: Optional[str]
    comment: Optional[str]
    needs_sync: bool
    sync_attempts: int
    last_modified: Optional[datetime]

    class Config:
        from_attributes = True


class AddressPage(BaseModel):
    items: List[AddressResponse]
    total: int
    page: int
    size: int
    pages: int

    class Config:
        from_attributes = True


class AssignRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=255, description="Subscriber session identifier")
    address: Optional[str] = Field(None, description="Specific address to claim; lowest free one if omitted")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _ipv4_or_none(v)


class AddressUpdate(BaseModel):
    status: Optional[EditableStatus] = None
    comment: Optional[str] = None


class ReleaseResponse(BaseModel):
    session_id: str
    released: bool
    address: Optional[AddressResponse] = None


class MoveRequest(BaseModel):
    pool_id: int = Field(..., description="Pool to move the session into")
    address: Optional[str] = Field(None, description="Specific address in the target pool; lowest free one if omitted")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _ipv4_or_none(v)


class BulkMoveRequest(BaseModel):
    pool_id: int = Field(..., description="Pool to move every session into")
    session_ids: List[str] = Field(..., min_length=1, max_length=1000)


class MovedSession(BaseModel):
    session_id: str
    address: str


class FailedMove(BaseModel):
    session_id: str
    error: str


class BulkMoveResponse(BaseModel):
    moved: List[MovedSession]
    unchanged: List[MovedSession]
    failed: List[FailedMove]
