from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class PoolType(str, Enum):
    dynamic = "dynamic"
    static = "static"
    management = "management"
    suspended = "suspended"
    cut_service = "cut_service"


class RouterCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Unique router name")
    description: Optional[str] = Field(None, description="Site/purpose of this router")
    api_url: Optional[str] = Field(None, max_length=255, description="Management API base URL, e.g. https://10.0.0.1")
    username: Optional[str] = Field(None, max_length=100)
    password: Optional[str] = Field(None, max_length=255)
    active: bool = True


class RouterResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    api_url: Optional[str]
    username: Optional[str]
    active: bool
    last_sync_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class PoolCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Pool name, unique per router")
    description: Optional[str] = Field(None, description="Purpose/description of this pool")
    router_id: int = Field(..., description="Router that owns this pool")
    cidr: str = Field(..., description="CIDR notation e.g., 100.64.0.0/22")
    pool_type: PoolType = Field(PoolType.dynamic, description="Purpose of the pool, e.g. dynamic or suspended")
    active: bool = True
    import_addresses: bool = Field(False, description="Import every usable host of the CIDR right away")


class PoolUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    pool_type: Optional[PoolType] = None
    active: Optional[bool] = None


class PoolResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    router_id: int
    pool_type: str
    cidr: str
    network_address: str
    prefix_length: int
    active: bool
    degraded: bool
    degraded_reason: Optional[str]
    last_sync_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class PoolStatsResponse(BaseModel):
    pool_id: int
    pool_name: str
    total: int
    available: int
    assigned: int
    reserved: int
    blocked: int
    needs_sync: int
    utilization: float
    degraded: bool


class PoolCapacityResponse(BaseModel):
    pool_id: int
    pool_name: str
    available: int
    utilization: float
    has_capacity: bool
    accepts_new_sessions: bool


class PoolSummary(BaseModel):
    total_pools: int
    total: int
    assigned: int
    available: int
    utilization: float


class RouterPoolStatsResponse(BaseModel):
    router_id: int
    router_name: str
    pools: List[PoolStatsResponse]
    summary: PoolSummary


class RouterSummary(PoolSummary):
    router_id: int
    router_name: str


class GlobalPoolStatsResponse(PoolSummary):
    total_routers: int
    pools_by_type: Dict[str, PoolSummary]
    routers: List[RouterSummary]


class ImportRequest(BaseModel):
    cidr: str = Field(..., description="Block to expand, e.g. 100.64.0.0/24")
    reserve_gateway: Optional[bool] = Field(
        None, description="Keep the first usable host back for the router interface"
    )


class ImportResponse(BaseModel):
    pool_id: int
    cidr: str
    created: int
    skipped: int
    reserved: int

    class Config:
        from_attributes = True


class PoolCreateResponse(PoolResponse):
    imported: Optional[ImportResponse] = None
