"""Request bodies for the admin API."""

from typing import Optional

from pydantic import BaseModel, Field


class KillSwitchEnableRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: Optional[str] = None
    ttl_ms: Optional[int] = Field(default=None, gt=0)


class KillSwitchDisableRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: Optional[str] = None


class FeatureLimitsRequest(BaseModel):
    daily_limit_usd: float = Field(..., ge=0)
    monthly_limit_usd: float = Field(..., ge=0)


class ProviderDisableRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: str = "admin"


class ProviderEnableRequest(BaseModel):
    actor: str = "admin"


class ApprovalRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)
    note: str = ""
    ttl_seconds: Optional[float] = Field(default=None, gt=0)


class OverrideRequest(BaseModel):
    overridden_by: str = Field(..., min_length=1)
    new_decision: str
    reason: str = Field(..., min_length=1)


class EmergencyStopRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
