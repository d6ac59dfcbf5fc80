"""
captionai/features/entitlements/store.py

Entitlement store: keyed UsageRecord storage with atomic per-identity updates.

Two interchangeable backends implement the same protocol:
- InMemoryEntitlementStore: process-lifetime dict, per-key locks
- SqlEntitlementStore: SQLAlchemy Core tables (usage_records, billing_events)

No operation spans more than one identity, so locking is per key only.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import timezone
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Protocol, Set

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from captionai.core.database import billing_events, usage_records
from captionai.models.usage_record import UsageRecord


logger = logging.getLogger(__name__)

Mutator = Callable[[UsageRecord], UsageRecord]


class EntitlementStore(Protocol):
    """Storage contract consumed by the entitlement gate and billing receiver."""

    def get(self, identity: str) -> Optional[UsageRecord]:
        """Return the record or None. Never creates."""
        ...

    def get_or_create(self, identity: str) -> UsageRecord:
        """Return the record, creating it with defaults when missing."""
        ...

    def update(self, identity: str, mutator: Mutator) -> UsageRecord:
        """Apply `mutator` atomically relative to other updates of the same identity."""
        ...

    def find_by_customer(self, customer_id: str) -> Optional[UsageRecord]:
        """Map a billing-provider customer reference back to its record."""
        ...

    def has_event(self, event_id: str) -> bool:
        """True if the billing event id was already recorded."""
        ...

    def record_event(self, event_id: str, event_type: Optional[str] = None) -> bool:
        """Remember a processed billing event. False if already recorded."""
        ...


class KeyedLocks:
    """Per-key threading locks that are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _checked(identity: str, updated: UsageRecord) -> UsageRecord:
    if updated.identity != identity:
        raise ValueError(f"mutator changed identity {identity!r} -> {updated.identity!r}")
    return updated


class InMemoryEntitlementStore:
    """Process-scoped store. Records live as long as the process."""

    def __init__(self, vip_identities: Iterable[str] = ()):
        self._vip: FrozenSet[str] = frozenset(vip_identities)
        self._records: Dict[str, UsageRecord] = {}
        self._events: Set[str] = set()
        self._events_lock = threading.Lock()
        self._locks = KeyedLocks()

    def _new_record(self, identity: str) -> UsageRecord:
        return UsageRecord(identity=identity, subscribed=identity in self._vip)

    def get(self, identity: str) -> Optional[UsageRecord]:
        return self._records.get(identity)

    def get_or_create(self, identity: str) -> UsageRecord:
        with self._locks.hold(identity):
            record = self._records.get(identity)
            if record is None:
                record = self._new_record(identity)
                self._records[identity] = record
            return record

    def update(self, identity: str, mutator: Mutator) -> UsageRecord:
        with self._locks.hold(identity):
            current = self._records.get(identity) or self._new_record(identity)
            updated = _checked(identity, mutator(current))
            self._records[identity] = updated
            return updated

    def find_by_customer(self, customer_id: str) -> Optional[UsageRecord]:
        for record in list(self._records.values()):
            if record.customer_id == customer_id:
                return record
        return None

    def has_event(self, event_id: str) -> bool:
        with self._events_lock:
            return event_id in self._events

    def record_event(self, event_id: str, event_type: Optional[str] = None) -> bool:
        with self._events_lock:
            if event_id in self._events:
                return False
            self._events.add(event_id)
            return True


class SqlEntitlementStore:
    """
    Durable store on SQLAlchemy Core.

    Read-modify-write runs in one transaction with SELECT ... FOR UPDATE
    (ignored by SQLite) plus an in-process per-key lock. A concurrent first
    insert from another process surfaces as IntegrityError and is retried.
    """

    def __init__(self, engine: Engine, vip_identities: Iterable[str] = (), max_retries: int = 3):
        self._engine = engine
        self._vip: FrozenSet[str] = frozenset(vip_identities)
        self._max_retries = max_retries
        self._locks = KeyedLocks()

    def _new_record(self, identity: str) -> UsageRecord:
        return UsageRecord(identity=identity, subscribed=identity in self._vip)

    @staticmethod
    def _row_to_record(row) -> UsageRecord:
        verified_at = row.last_verified_at
        if verified_at is not None and verified_at.tzinfo is None:
            verified_at = verified_at.replace(tzinfo=timezone.utc)
        return UsageRecord(
            identity=row.identity,
            generation_count=row.generation_count,
            subscribed=bool(row.subscribed),
            last_verified_at=verified_at,
            customer_id=row.customer_id,
            transition_epoch=row.transition_epoch or 0,
        )

    @staticmethod
    def _values(record: UsageRecord) -> dict:
        return {
            "generation_count": record.generation_count,
            "subscribed": record.subscribed,
            "last_verified_at": record.last_verified_at,
            "customer_id": record.customer_id,
            "transition_epoch": record.transition_epoch,
        }

    def get(self, identity: str) -> Optional[UsageRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(usage_records).where(usage_records.c.identity == identity)
            ).first()
        return self._row_to_record(row) if row else None

    def get_or_create(self, identity: str) -> UsageRecord:
        return self.update(identity, lambda record: record)

    def update(self, identity: str, mutator: Mutator) -> UsageRecord:
        with self._locks.hold(identity):
            for attempt in range(1, self._max_retries + 1):
                try:
                    with self._engine.begin() as conn:
                        row = conn.execute(
                            select(usage_records)
                            .where(usage_records.c.identity == identity)
                            .with_for_update()
                        ).first()
                        if row is None:
                            updated = _checked(identity, mutator(self._new_record(identity)))
                            conn.execute(
                                insert(usage_records).values(identity=identity, **self._values(updated))
                            )
                            return updated

                        current = self._row_to_record(row)
                        updated = _checked(identity, mutator(current))
                        if updated != current:
                            conn.execute(
                                update(usage_records)
                                .where(usage_records.c.identity == identity)
                                .values(**self._values(updated))
                            )
                        return updated
                except IntegrityError:
                    if attempt == self._max_retries:
                        raise
                    logger.info(
                        "[store] concurrent insert, retrying",
                        extra={"identity": identity, "attempt": attempt},
                    )
        raise RuntimeError("unreachable")

    def find_by_customer(self, customer_id: str) -> Optional[UsageRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(usage_records).where(usage_records.c.customer_id == customer_id).limit(1)
            ).first()
        return self._row_to_record(row) if row else None

    def has_event(self, event_id: str) -> bool:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(billing_events.c.id).where(billing_events.c.stripe_event_id == event_id)
            ).first()
        return row is not None

    def record_event(self, event_id: str, event_type: Optional[str] = None) -> bool:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(billing_events).values(stripe_event_id=event_id, event_type=event_type)
                )
        except IntegrityError:
            return False
        return True
