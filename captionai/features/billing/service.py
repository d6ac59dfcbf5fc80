"""
Billing service orchestrator.

Coordinates:
- Provider selection (Stripe when configured, null provider otherwise)
- Webhook processing: verify -> resolve identity -> apply transition -> dedupe -> hooks
- Checkout session creation

All Stripe-specific code is in stripe_provider.py.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from captionai.core.config import settings
from captionai.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    NullBillingProvider,
)
from captionai.features.billing.stripe_provider import StripeProvider
from captionai.features.entitlements.identity import try_normalize_identity
from captionai.features.entitlements.store import EntitlementStore
from captionai.models.billing_event import BillingEvent, GRANTING_KINDS, REVOKING_KINDS
from captionai.models.usage_record import UsageRecord


logger = logging.getLogger(__name__)

# Runs after the entitlement update of a first-seen event (e.g. referral payouts)
PostUpdateHook = Callable[[BillingEvent, UsageRecord], None]


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY or os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> BillingProvider:
    """Get the Stripe provider, or a null provider if billing is disabled."""
    if not billing_enabled():
        return NullBillingProvider()
    try:
        return StripeProvider(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_id=settings.STRIPE_PRICE_ID,
        )
    except BillingProviderError as e:
        logger.warning(f"[billing] provider unavailable: {e}")
        return NullBillingProvider()


def start_checkout(
    provider: BillingProvider,
    identity: str,
    success_url: str,
    cancel_url: str,
) -> str:
    """
    Start a subscription checkout session for an identity.

    Returns:
        Checkout URL

    Raises:
        BillingProviderError: If checkout creation fails
    """
    return provider.create_checkout_session(
        email=identity,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"identity": identity},
    )


@dataclass(frozen=True)
class WebhookOutcome:
    """What the receiver did with one delivery."""
    status: str  # applied | duplicate | ignored | unresolved | vip_skipped
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    identity: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingEventReceiver:
    """
    Applies provider-pushed lifecycle events to the entitlement store.

    Known event ids are skipped up front. The id is recorded only after the
    update succeeded, so a failed delivery stays retryable. Two deliveries of
    one event racing past the check both apply the same overwrite transition
    and only the one that records the id runs the post-update hooks.
    """

    def __init__(
        self,
        store: EntitlementStore,
        provider: BillingProvider,
        vip_identities: Iterable[str] = (),
        *,
        hooks: Iterable[PostUpdateHook] = (),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._provider = provider
        self._vip: FrozenSet[str] = frozenset(vip_identities)
        self._hooks: List[PostUpdateHook] = list(hooks)
        self._clock = clock

    def register_hook(self, hook: PostUpdateHook) -> None:
        self._hooks.append(hook)

    def process_webhook_event(self, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        """
        Verify and apply one raw webhook delivery.

        Raises:
            BillingWebhookError: If the signature or payload is invalid (nothing is applied)
        """
        event = self._provider.handle_webhook(headers, body)
        if event is None:
            return WebhookOutcome(status="ignored")
        return self.apply_event(event)

    def apply_event(self, event: BillingEvent) -> WebhookOutcome:
        if self._store.has_event(event.event_id):
            logger.info("billing.event_duplicate", extra={"event_id": event.event_id, "event_type": event.event_type})
            return WebhookOutcome(status="duplicate", event_id=event.event_id, event_type=event.event_type)

        identity = self._resolve_identity(event)
        if identity is None:
            logger.warning(
                "billing.identity_unresolved",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "customer_id": event.customer_id,
                },
            )
            return WebhookOutcome(status="unresolved", event_id=event.event_id, event_type=event.event_type)

        if event.kind in REVOKING_KINDS and identity in self._vip:
            self._store.record_event(event.event_id, event.event_type)
            logger.info(
                "billing.vip_downgrade_ignored",
                extra={"identity": identity, "event_id": event.event_id, "event_type": event.event_type},
            )
            return WebhookOutcome(
                status="vip_skipped", event_id=event.event_id, event_type=event.event_type, identity=identity
            )

        record = self._store.update(identity, self._transition(event))
        first_delivery = self._store.record_event(event.event_id, event.event_type)

        logger.info(
            "billing.event_applied",
            extra={
                "identity": identity,
                "event_id": event.event_id,
                "event_type": event.event_type,
                "subscribed": record.subscribed,
                "replay": not first_delivery,
            },
        )
        if not first_delivery:
            return WebhookOutcome(
                status="duplicate", event_id=event.event_id, event_type=event.event_type, identity=identity
            )

        self._run_hooks(event, record)
        return WebhookOutcome(
            status="applied", event_id=event.event_id, event_type=event.event_type, identity=identity
        )

    def _transition(self, event: BillingEvent) -> Callable[[UsageRecord], UsageRecord]:
        if event.kind in GRANTING_KINDS:
            subscribed = True
        elif event.kind in REVOKING_KINDS:
            subscribed = False
        else:
            raise ValueError(f"unhandled billing event kind: {event.kind}")
        now = self._clock()

        def mutate(record: UsageRecord) -> UsageRecord:
            # any subscription transition starts a fresh free-tier count
            return record.model_copy(
                update={
                    "subscribed": subscribed,
                    "generation_count": 0,
                    "last_verified_at": now,
                    "customer_id": event.customer_id or record.customer_id,
                    "transition_epoch": record.transition_epoch + 1,
                }
            )

        return mutate

    def _resolve_identity(self, event: BillingEvent) -> Optional[str]:
        if event.identity:
            return event.identity
        if not event.customer_id:
            return None

        known = self._store.find_by_customer(event.customer_id)
        if known is not None:
            return known.identity

        try:
            email = self._provider.resolve_customer_email(event.customer_id)
        except Exception:
            logger.exception("billing.customer_lookup_failed", extra={"customer_id": event.customer_id})
            return None
        return try_normalize_identity(email)

    def _run_hooks(self, event: BillingEvent, record: UsageRecord) -> None:
        for hook in self._hooks:
            try:
                hook(event, record)
            except Exception:
                logger.exception(
                    "billing.hook_failed",
                    extra={"event_id": event.event_id, "hook": getattr(hook, "__name__", repr(hook))},
                )
