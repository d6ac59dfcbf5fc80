"""
captionai/models/billing_event.py

Normalized billing lifecycle notification, independent of the provider.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class BillingEventKind(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"


GRANTING_KINDS = frozenset({BillingEventKind.SUBSCRIPTION_ACTIVATED, BillingEventKind.SUBSCRIPTION_RENEWED})
REVOKING_KINDS = frozenset({BillingEventKind.SUBSCRIPTION_CANCELED, BillingEventKind.PAYMENT_FAILED})


class BillingEvent(BaseModel):
    """
    A billing event the receiver knows how to apply.

    `identity` is set when the payload carried an email; otherwise the
    receiver resolves it from `customer_id`. `amount` is in the currency's
    minor unit (cents).
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    kind: BillingEventKind
    identity: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
