"""
captionai/features/entitlements/service.py

Entitlement gate: the single decision point for quota-consuming actions.

Handles:
- VIP short-circuit (always allowed, never downgraded)
- Opportunistic subscription refresh through the billing provider (tri-state)
- Free quota check and post-success usage accounting
- Per-identity serialization of authorize -> action -> commit
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional

from captionai.core.errors import QuotaExceededError
from captionai.features.billing.provider import BillingProvider, VerificationResult
from captionai.features.entitlements.store import EntitlementStore
from captionai.models.usage_record import UsageRecord


logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenialReason]
    is_vip: bool
    subscribed: bool
    generation_count: int
    remaining: Optional[int]  # free uses left before this action; None = unlimited

    def remaining_after_commit(self) -> Optional[int]:
        if self.remaining is None:
            return None
        return max(self.remaining - 1, 0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AsyncKeyedLocks:
    """asyncio locks keyed by identity, released from the map when idle."""

    def __init__(self) -> None:
        self._locks: Dict[str, List] = {}  # key -> [lock, holders]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class EntitlementGate:
    """
    Decides whether an identity may run a quota-consuming action.

    authorize() persists subscription refreshes whatever the outcome;
    generation_count only moves on commit(), after the action succeeded.
    Handlers should go through metered(), which holds the per-identity lock
    across the whole authorize -> action -> commit sequence.
    """

    def __init__(
        self,
        store: EntitlementStore,
        verifier: BillingProvider,
        vip_identities: Iterable[str] = (),
        *,
        free_limit: int = 3,
        verifier_timeout: float = 5.0,
        verify_ttl_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._verifier = verifier
        self._vip: FrozenSet[str] = frozenset(vip_identities)
        self._free_limit = free_limit
        self._verifier_timeout = verifier_timeout
        self._verify_ttl = timedelta(seconds=verify_ttl_seconds)
        self._clock = clock
        self._locks = AsyncKeyedLocks()

    @property
    def free_limit(self) -> int:
        return self._free_limit

    def is_vip(self, identity: str) -> bool:
        return identity in self._vip

    async def authorize(self, identity: str, free_limit: Optional[int] = None) -> Decision:
        limit = self._free_limit if free_limit is None else free_limit

        if identity in self._vip:
            record = self._store.update(identity, lambda r: r.model_copy(update={"subscribed": True}))
            return self._decide(record, limit, is_vip=True)

        record = self._store.get_or_create(identity)
        if self._needs_refresh(record):
            record = await self._refresh(identity, record)

        decision = self._decide(record, limit, is_vip=False)
        if not decision.allowed:
            logger.warning(
                "entitlement.denied",
                extra={
                    "identity": identity,
                    "reason": decision.reason.value,
                    "generation_count": record.generation_count,
                    "free_limit": limit,
                },
            )
        return decision

    def commit(self, identity: str, epoch: Optional[int] = None) -> UsageRecord:
        """
        Charge one quota-consuming action. Call only after the action succeeded.

        With `epoch`, the charge is dropped if a billing transition landed since
        the action was authorized; the transition already reset the count.
        """
        skipped = False

        def charge(r: UsageRecord) -> UsageRecord:
            nonlocal skipped
            if epoch is not None and r.transition_epoch != epoch:
                skipped = True
                return r
            return r.model_copy(update={"generation_count": r.generation_count + 1})

        record = self._store.update(identity, charge)
        if skipped:
            logger.info(
                "entitlement.commit_superseded",
                extra={"identity": identity, "transition_epoch": record.transition_epoch},
            )
            return record
        logger.info(
            "entitlement.committed",
            extra={"identity": identity, "generation_count": record.generation_count},
        )
        return record

    @asynccontextmanager
    async def metered(self, identity: str, free_limit: Optional[int] = None) -> AsyncIterator[Decision]:
        """
        Guard a quota-consuming action.

        Raises QuotaExceededError when denied. Commits only if the body exits
        cleanly; an exception inside the body leaves usage untouched.
        """
        async with self._locks.hold(identity):
            decision = await self.authorize(identity, free_limit)
            if not decision.allowed:
                raise QuotaExceededError(
                    "Free generation limit reached. Upgrade to continue.",
                    details={
                        "free_limit": self._free_limit if free_limit is None else free_limit,
                        "upgrade_url": "/api/billing/checkout",
                    },
                )
            authorized = self._store.get(identity)
            yield decision
            self.commit(identity, authorized.transition_epoch if authorized else None)

    def status(self, identity: str, free_limit: Optional[int] = None) -> Decision:
        """Read-only view for the entitlement query. Never creates or verifies."""
        limit = self._free_limit if free_limit is None else free_limit
        is_vip = identity in self._vip
        record = self._store.get(identity) or UsageRecord(identity=identity, subscribed=is_vip)
        if is_vip and not record.subscribed:
            record = record.model_copy(update={"subscribed": True})
        return self._decide(record, limit, is_vip=is_vip)

    def _needs_refresh(self, record: UsageRecord) -> bool:
        if self._verify_ttl <= timedelta(0) or record.last_verified_at is None:
            return True
        return self._clock() - record.last_verified_at >= self._verify_ttl

    async def _refresh(self, identity: str, record: UsageRecord) -> UsageRecord:
        result = await self._verify(identity)
        if result is VerificationResult.UNKNOWN:
            # last known state stands
            return record

        subscribed = result is VerificationResult.ACTIVE
        now = self._clock()
        updated = self._store.update(
            identity,
            lambda r: r.model_copy(update={"subscribed": subscribed, "last_verified_at": now}),
        )
        if updated.subscribed != record.subscribed:
            logger.info(
                "entitlement.refreshed",
                extra={"identity": identity, "subscribed": updated.subscribed},
            )
        return updated

    async def _verify(self, identity: str) -> VerificationResult:
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._verifier.check_subscription, identity),
                timeout=self._verifier_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("verifier.unknown", extra={"identity": identity, "cause": "timeout"})
            return VerificationResult.UNKNOWN
        except Exception as e:
            logger.warning("verifier.unknown", extra={"identity": identity, "cause": type(e).__name__})
            return VerificationResult.UNKNOWN

        if not isinstance(result, VerificationResult):
            logger.warning("verifier.unknown", extra={"identity": identity, "cause": "bad_result"})
            return VerificationResult.UNKNOWN
        if result is VerificationResult.UNKNOWN:
            logger.info("verifier.unknown", extra={"identity": identity, "cause": "provider"})
        return result

    @staticmethod
    def _decide(record: UsageRecord, limit: int, *, is_vip: bool) -> Decision:
        if is_vip or record.subscribed:
            return Decision(
                allowed=True,
                reason=None,
                is_vip=is_vip,
                subscribed=True,
                generation_count=record.generation_count,
                remaining=None,
            )
        remaining = max(limit - record.generation_count, 0)
        return Decision(
            allowed=remaining > 0,
            reason=None if remaining > 0 else DenialReason.QUOTA_EXCEEDED,
            is_vip=False,
            subscribed=False,
            generation_count=record.generation_count,
            remaining=remaining,
        )
