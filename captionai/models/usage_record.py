"""
captionai/models/usage_record.py

UsageRecord model: per-identity metering and entitlement state.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class UsageRecord(BaseModel):
    """
    UsageRecord holds everything the entitlement gate needs for one identity.

    Fields:
    - generation_count: quota-consuming actions committed since the last reset
    - subscribed: last-known entitlement state
    - last_verified_at: when `subscribed` was last refreshed (pull or push)
    - customer_id: billing-provider customer reference, once known
    - transition_epoch: bumped by every applied billing transition; a charge
      authorized under an older epoch is dropped

    Records are immutable; mutations produce a new copy via `model_copy`.
    """
    model_config = ConfigDict(frozen=True)

    identity: str
    generation_count: int = Field(default=0, ge=0)
    subscribed: bool = False
    last_verified_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    transition_epoch: int = Field(default=0, ge=0)
