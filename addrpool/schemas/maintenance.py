from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class SyncDetail(BaseModel):
    kind: str
    address: Optional[str] = None
    session_id: Optional[str] = None
    message: str

    class Config:
        from_attributes = True


class SyncReportResponse(BaseModel):
    router_id: int
    reachable: bool
    pushed: int
    pulled: int
    removed: int
    conflicts: int
    failed: int
    detail: List[SyncDetail] = []

    class Config:
        from_attributes = True


class AnomalyDetail(BaseModel):
    kind: str
    address: str
    session_id: Optional[str]
    action: str
    fixed: bool

    class Config:
        from_attributes = True


class VerificationReportResponse(BaseModel):
    anomalies_found: int
    anomalies_fixed: int
    detail: List[AnomalyDetail] = []

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    id: int
    event_type: str
    address: Optional[str]
    pool_id: Optional[int]
    session_id: Optional[str]
    detail: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True
