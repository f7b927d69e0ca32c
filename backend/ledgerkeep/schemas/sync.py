"""Sync API schemas"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field


class AppStateRequest(BaseModel):
    state: Literal["active", "background"]


class LightningClaimRequest(BaseModel):
    """Claim an incoming lightning payment by its hash"""
    payment_hash: str = Field(min_length=1)
    amount_sat: int = Field(gt=0)
    description: str = ""


class SyncResponse(BaseModel):
    message: str
    stats: Optional[Dict[str, Any]] = None


class SyncStatusResponse(BaseModel):
    running: bool
    app_state: str
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    background_job: Optional[str] = None
