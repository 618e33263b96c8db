"""
Pydantic schemas for request validation (Http/Requests).
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List, Union


# Tracking Schemas
class TrackBatchRequest(BaseModel):
    awbs: List[str] = Field(..., min_items=1)

    @validator("awbs", each_item=True)
    def strip_awb(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("AWB must not be empty")
        return v


# Sync Schemas
class SyncRunRequest(BaseModel):
    live: bool = True
    onlyStale: bool = False


# Webhook Schemas
class StatusPushRequest(BaseModel):
    awb: str
    status: str
    timestamp: Optional[Union[str, int, float]] = None
    location: Optional[str] = None
    remarks: Optional[str] = None

    @validator("awb")
    def validate_awb(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("AWB must not be empty")
        return v


# Carrier Schemas
class CarrierCredentialRequest(BaseModel):
    apiKey: str = Field(..., min_length=1)
