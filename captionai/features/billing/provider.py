"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from enum import Enum
from typing import Protocol, Dict, Optional

from captionai.models.billing_event import BillingEvent


class VerificationResult(str, Enum):
    """Tri-state subscription check. UNKNOWN means the provider could not answer."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Subscription verification (pull)
    - Webhook signature verification and parsing (push)
    - Customer -> email resolution
    - Checkout session creation
    """

    def check_subscription(self, identity: str) -> VerificationResult:
        """
        Check whether the identity currently holds an active subscription.

        Never raises: provider or transport failures map to UNKNOWN, and a
        missing customer is a confirmed INACTIVE.
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[BillingEvent]:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Parsed event, or None for event types that do not affect entitlements

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...

    def resolve_customer_email(self, customer_id: str) -> Optional[str]:
        """
        Look up the email on a provider customer record.

        Returns:
            Email, or None if the customer has none or the lookup failed
        """
        ...

    def create_checkout_session(
        self,
        email: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass


class NullBillingProvider:
    """Stand-in used when Stripe is not configured. Verification is always UNKNOWN."""

    def check_subscription(self, identity: str) -> VerificationResult:
        return VerificationResult.UNKNOWN

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[BillingEvent]:
        raise BillingWebhookError("Billing not enabled")

    def resolve_customer_email(self, customer_id: str) -> Optional[str]:
        return None

    def create_checkout_session(self, email, success_url, cancel_url, metadata=None) -> str:
        raise BillingProviderError("Billing not enabled")
