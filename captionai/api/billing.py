"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/webhook: Handle Stripe webhooks
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, field_validator
from starlette.concurrency import run_in_threadpool

from captionai.core.config import settings
from captionai.core.deps import get_billing_provider, get_receiver
from captionai.core.errors import BillingDisabledError, UpstreamError, ValidationError
from captionai.features.billing.provider import BillingProvider, BillingProviderError, BillingWebhookError
from captionai.features.billing.service import BillingEventReceiver, billing_enabled, start_checkout
from captionai.features.entitlements.identity import normalize_identity


logger = logging.getLogger("captionai")

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    email: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalized_email(cls, value: str) -> str:
        return normalize_identity(value)


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    url: str


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Invalid email
        502: Stripe API error
    """
    if not billing_enabled():
        raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")

    origin = (request.headers.get("origin") or settings.BASE_URL).rstrip("/")
    success_url = body.success_url or f"{origin}?success=true"
    cancel_url = body.cancel_url or f"{origin}?canceled=true"

    try:
        url = await run_in_threadpool(start_checkout, provider, body.email, success_url, cancel_url)
    except BillingProviderError as e:
        raise UpstreamError(str(e))
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    receiver: BillingEventReceiver = Depends(get_receiver),
):
    """
    Handle Stripe webhook events.

    The raw body is read untouched for signature verification. Processed,
    ignored and unresolvable events all answer 200 so Stripe stops retrying;
    only signature/payload failures answer 400.
    """
    if not billing_enabled():
        raise BillingDisabledError("Billing disabled")

    body = await request.body()
    headers = dict(request.headers)

    try:
        outcome = await run_in_threadpool(receiver.process_webhook_event, headers, body)
    except BillingWebhookError as e:
        logger.warning("billing.webhook_rejected", extra={"reason": str(e)})
        raise ValidationError(str(e), code="webhook_invalid")

    return {"received": True, "event_id": outcome.event_id, "status": outcome.status}
