"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles subscription verification, webhook signature verification and event parsing.
"""
import json
import logging
import os
from typing import Dict, Any, Optional
import stripe

from captionai.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    VerificationResult,
)
from captionai.features.entitlements.identity import try_normalize_identity
from captionai.models.billing_event import BillingEvent, BillingEventKind


logger = logging.getLogger(__name__)

# Subscription statuses that grant entitlement
ENTITLED_STATUSES = ("active", "trialing")

EVENT_KINDS = {
    "checkout.session.completed": BillingEventKind.SUBSCRIPTION_ACTIVATED,
    "invoice.paid": BillingEventKind.SUBSCRIPTION_RENEWED,
    "invoice.payment_succeeded": BillingEventKind.SUBSCRIPTION_RENEWED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_CANCELED,
    "invoice.payment_failed": BillingEventKind.PAYMENT_FAILED,
}


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        price_id: Optional[str] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            price_id: Subscription price (defaults to STRIPE_PRICE_ID env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.price_id = price_id or os.getenv("STRIPE_PRICE_ID")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def check_subscription(self, identity: str) -> VerificationResult:
        """
        Pull-based entitlement check by customer email.

        Checkout creates a new Customer per session, so every customer carrying
        the email is checked. Queries are filtered by status so old canceled
        subscriptions cannot push an active one off the first page.
        """
        try:
            customers = stripe.Customer.list(email=identity, limit=100)
            for customer in customers.auto_paging_iter():
                for status in ENTITLED_STATUSES:
                    subs = stripe.Subscription.list(customer=customer.id, status=status, limit=1)
                    if subs.data:
                        return VerificationResult.ACTIVE
            return VerificationResult.INACTIVE
        except stripe.StripeError as e:
            logger.warning(
                "[stripe] subscription check failed",
                extra={"identity": identity, "error": type(e).__name__},
            )
            return VerificationResult.UNKNOWN
        except Exception:
            logger.exception("[stripe] unexpected subscription check failure", extra={"identity": identity})
            return VerificationResult.UNKNOWN

    def resolve_customer_email(self, customer_id: str) -> Optional[str]:
        """Fetch the email attached to a Stripe customer."""
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            logger.warning(
                "[stripe] customer lookup failed",
                extra={"customer_id": customer_id, "error": type(e).__name__},
            )
            return None
        if getattr(customer, "deleted", False):
            return None
        return getattr(customer, "email", None)

    def create_checkout_session(
        self,
        email: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe subscription checkout session."""
        if not self.price_id:
            raise BillingProviderError("STRIPE_PRICE_ID not configured")
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[{"price": self.price_id, "quantity": 1}],
                mode="subscription",
                customer_email=email,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[BillingEvent]:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return parse_event(event)


def parse_event(event: Dict[str, Any]) -> Optional[BillingEvent]:
    """Parse a verified Stripe event into a normalized BillingEvent."""
    event_type = event.get("type")
    event_id = event.get("id")
    if not event_type or not event_id:
        raise BillingWebhookError("Event is missing id or type")

    kind = EVENT_KINDS.get(event_type)
    if kind is None:
        return None

    data = event.get("data", {}).get("object", {}) or {}
    email = None
    amount = None

    if event_type == "checkout.session.completed":
        details = data.get("customer_details") or {}
        email = details.get("email") or data.get("customer_email")
        amount = data.get("amount_total")
    elif event_type.startswith("invoice."):
        email = data.get("customer_email")
        amount = data.get("amount_paid") if kind is BillingEventKind.SUBSCRIPTION_RENEWED else data.get("amount_due")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        identity=try_normalize_identity(email),
        customer_id=customer,
        amount=amount,
        currency=data.get("currency"),
    )
