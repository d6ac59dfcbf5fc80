"""
Process-wide service wiring exposed as FastAPI dependencies.

Each getter builds its object once from settings. Tests swap them through
app.dependency_overrides or reset_dependencies().
"""

import logging
from functools import lru_cache
from typing import FrozenSet

from captionai.core.config import settings
from captionai.core.database import create_all_tables, init_engine
from captionai.features.billing.provider import BillingProvider
from captionai.features.billing.service import BillingEventReceiver, get_provider
from captionai.features.entitlements.service import EntitlementGate
from captionai.features.entitlements.store import (
    EntitlementStore,
    InMemoryEntitlementStore,
    SqlEntitlementStore,
)
from captionai.features.entitlements.vip import load_vip_set
from captionai.features.generation.service import CaptionGenerator


logger = logging.getLogger("captionai")


@lru_cache(maxsize=1)
def get_vip_set() -> FrozenSet[str]:
    return load_vip_set(settings.VIP_EMAILS, settings.VIP_EMAILS_FILE)


@lru_cache(maxsize=1)
def get_store() -> EntitlementStore:
    backend = (settings.STORE_BACKEND or "memory").lower()
    if backend == "database":
        engine = init_engine(settings.DATABASE_URL)
        create_all_tables(engine)
        logger.info("[store] using database backend")
        return SqlEntitlementStore(engine, get_vip_set())
    logger.info("[store] using in-memory backend")
    return InMemoryEntitlementStore(get_vip_set())


@lru_cache(maxsize=1)
def get_billing_provider() -> BillingProvider:
    return get_provider()


@lru_cache(maxsize=1)
def get_gate() -> EntitlementGate:
    return EntitlementGate(
        get_store(),
        get_billing_provider(),
        get_vip_set(),
        free_limit=settings.FREE_GENERATION_LIMIT,
        verifier_timeout=settings.VERIFIER_TIMEOUT_SECONDS,
        verify_ttl_seconds=settings.SUBSCRIPTION_VERIFY_TTL_SECONDS,
    )


@lru_cache(maxsize=1)
def get_receiver() -> BillingEventReceiver:
    return BillingEventReceiver(get_store(), get_billing_provider(), get_vip_set())


@lru_cache(maxsize=1)
def get_generator() -> CaptionGenerator:
    return CaptionGenerator(
        api_key=settings.GROQ_API_KEY,
        model=settings.GROQ_MODEL,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )


def reset_dependencies() -> None:
    """Drop cached singletons (tests, config reload)."""
    for getter in (get_vip_set, get_store, get_billing_provider, get_gate, get_receiver, get_generator):
        getter.cache_clear()
