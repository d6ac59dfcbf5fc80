"""
Entitlement gate decisions.

Covers the quota boundary, VIP override, tri-state refresh, commit-only
accounting and same-identity serialization.
"""
import asyncio
from datetime import timedelta

import pytest

from captionai.core.errors import QuotaExceededError
from captionai.features.billing.provider import VerificationResult
from captionai.features.entitlements.service import DenialReason
from captionai.models.billing_event import BillingEvent, BillingEventKind
from captionai.tests.mocks import FIXED_NOW, VIP_EMAIL, FakeVerifier


class GenerationBoom(Exception):
    pass


@pytest.mark.asyncio
async def test_free_limit_boundary(make_gate, store):
    gate = make_gate(free_limit=3)

    for _ in range(3):
        decision = await gate.authorize("a@x.com")
        assert decision.allowed
        gate.commit("a@x.com")

    denied = await gate.authorize("a@x.com")
    assert not denied.allowed
    assert denied.reason is DenialReason.QUOTA_EXCEEDED
    assert denied.remaining == 0
    assert store.get("a@x.com").generation_count == 3


@pytest.mark.asyncio
async def test_authorize_alone_does_not_charge(make_gate, store):
    gate = make_gate(free_limit=1)
    for _ in range(5):
        assert (await gate.authorize("a@x.com")).allowed
    assert store.get("a@x.com").generation_count == 0


@pytest.mark.asyncio
async def test_zero_free_limit_denies_first_request(make_gate):
    gate = make_gate(free_limit=0)
    assert not (await gate.authorize("a@x.com")).allowed


@pytest.mark.asyncio
async def test_vip_always_allowed_even_when_verifier_says_inactive(make_gate, store):
    verifier = FakeVerifier(result=VerificationResult.INACTIVE)
    gate = make_gate(verifier=verifier, free_limit=1)
    store.update(VIP_EMAIL, lambda r: r.model_copy(update={"subscribed": False, "generation_count": 50}))

    for _ in range(5):
        decision = await gate.authorize(VIP_EMAIL)
        assert decision.allowed
        assert decision.is_vip
        assert decision.remaining is None
        gate.commit(VIP_EMAIL)

    assert store.get(VIP_EMAIL).subscribed is True
    assert verifier.calls == []


@pytest.mark.asyncio
async def test_active_verification_unlocks_and_persists(make_gate, store):
    gate = make_gate(verifier=FakeVerifier(result=VerificationResult.ACTIVE), free_limit=1)
    store.update("paid@x.com", lambda r: r.model_copy(update={"generation_count": 10}))

    decision = await gate.authorize("paid@x.com")

    assert decision.allowed
    assert decision.subscribed
    record = store.get("paid@x.com")
    assert record.subscribed is True
    assert record.last_verified_at == FIXED_NOW
    # pull refresh does not reset usage
    assert record.generation_count == 10


@pytest.mark.asyncio
async def test_inactive_verification_revokes_previous_subscription(make_gate, store):
    gate = make_gate(verifier=FakeVerifier(result=VerificationResult.INACTIVE), free_limit=2)
    store.update("lapsed@x.com", lambda r: r.model_copy(update={"subscribed": True, "generation_count": 2}))

    decision = await gate.authorize("lapsed@x.com")

    assert not decision.allowed
    assert store.get("lapsed@x.com").subscribed is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "verifier",
    [
        FakeVerifier(result=VerificationResult.UNKNOWN),
        FakeVerifier(error=ConnectionError("stripe down")),
        FakeVerifier(result=None),
    ],
    ids=["unknown", "raises", "garbage"],
)
async def test_verifier_failure_keeps_last_known_state(make_gate, store, verifier):
    gate = make_gate(verifier=verifier, free_limit=0)
    store.update("sub@x.com", lambda r: r.model_copy(update={"subscribed": True}))
    store.update("free@x.com", lambda r: r.model_copy(update={"subscribed": False}))

    assert (await gate.authorize("sub@x.com")).allowed
    assert not (await gate.authorize("free@x.com")).allowed
    assert store.get("sub@x.com").subscribed is True
    assert store.get("sub@x.com").last_verified_at is None
    assert store.get("free@x.com").subscribed is False


@pytest.mark.asyncio
async def test_verifier_timeout_resolves_to_unknown(make_gate, store):
    slow = FakeVerifier(result=VerificationResult.INACTIVE, delay=0.5)
    gate = make_gate(verifier=slow, verifier_timeout=0.05)
    store.update("sub@x.com", lambda r: r.model_copy(update={"subscribed": True}))

    decision = await asyncio.wait_for(gate.authorize("sub@x.com"), timeout=0.4)

    assert decision.allowed
    assert store.get("sub@x.com").subscribed is True


@pytest.mark.asyncio
async def test_fresh_verification_is_reused_within_ttl(make_gate, store):
    now = [FIXED_NOW]
    verifier = FakeVerifier(result=VerificationResult.INACTIVE)
    gate = make_gate(verifier=verifier, verify_ttl_seconds=60, clock=lambda: now[0])

    await gate.authorize("a@x.com")
    await gate.authorize("a@x.com")
    assert len(verifier.calls) == 1

    now[0] = FIXED_NOW + timedelta(seconds=61)
    await gate.authorize("a@x.com")
    assert len(verifier.calls) == 2


@pytest.mark.asyncio
async def test_failed_generation_does_not_consume_quota(make_gate, store):
    gate = make_gate(free_limit=3)

    with pytest.raises(GenerationBoom):
        async with gate.metered("a@x.com") as decision:
            assert decision.allowed
            raise GenerationBoom()

    assert store.get("a@x.com").generation_count == 0

    async with gate.metered("a@x.com"):
        pass
    assert store.get("a@x.com").generation_count == 1


@pytest.mark.asyncio
async def test_metered_raises_quota_exceeded_without_running_body(make_gate, store):
    gate = make_gate(free_limit=1)
    async with gate.metered("a@x.com"):
        pass

    ran = False
    with pytest.raises(QuotaExceededError) as exc:
        async with gate.metered("a@x.com"):
            ran = True
    assert exc.value.status_code == 402
    assert ran is False
    assert store.get("a@x.com").generation_count == 1


@pytest.mark.asyncio
async def test_concurrent_requests_for_one_identity_never_overshoot(make_gate, store):
    n = 6
    gate = make_gate(
        verifier=FakeVerifier(result=VerificationResult.INACTIVE, delay=0.01),
        free_limit=n - 1,
    )

    async def attempt():
        try:
            async with gate.metered("race@x.com"):
                await asyncio.sleep(0.01)
            return True
        except QuotaExceededError:
            return False

    results = await asyncio.gather(*(attempt() for _ in range(n)))

    assert results.count(True) == n - 1
    assert results.count(False) == 1
    assert store.get("race@x.com").generation_count == n - 1


@pytest.mark.asyncio
async def test_different_identities_run_in_parallel(make_gate):
    gate = make_gate(verifier=FakeVerifier(result=VerificationResult.INACTIVE, delay=0.2), verifier_timeout=2.0)
    loop = asyncio.get_running_loop()

    started = loop.time()
    await asyncio.gather(*(gate.authorize(f"user{i}@x.com") for i in range(4)))
    elapsed = loop.time() - started

    assert elapsed < 0.6


def test_status_is_read_only(make_gate, store, provider):
    gate = make_gate(free_limit=3)

    fresh = gate.status("new@x.com")
    assert fresh.subscribed is False
    assert fresh.remaining == 3
    assert store.get("new@x.com") is None
    assert provider.calls == []

    vip = gate.status(VIP_EMAIL)
    assert vip.is_vip and vip.subscribed and vip.remaining is None
    assert store.get(VIP_EMAIL) is None


def test_commit_increments_count(make_gate, store):
    gate = make_gate()
    gate.commit("a@x.com")
    assert gate.commit("a@x.com").generation_count == 2
    assert store.get("a@x.com").generation_count == 2


def _billing_event(kind, event_id="evt_mid"):
    return BillingEvent(event_id=event_id, event_type="test", kind=kind, identity="a@x.com", customer_id="cus_a")


@pytest.mark.asyncio
async def test_cancellation_during_metered_action_is_not_overwritten(make_gate, store, receiver):
    gate = make_gate(free_limit=5)
    store.update("a@x.com", lambda r: r.model_copy(update={"generation_count": 2}))

    async with gate.metered("a@x.com"):
        receiver.apply_event(_billing_event(BillingEventKind.SUBSCRIPTION_CANCELED))

    record = store.get("a@x.com")
    assert record.generation_count == 0
    assert record.subscribed is False
    assert record.transition_epoch == 1


@pytest.mark.asyncio
async def test_activation_during_metered_action_leaves_fresh_count(make_gate, store, receiver):
    gate = make_gate(free_limit=5)

    async with gate.metered("a@x.com"):
        receiver.apply_event(_billing_event(BillingEventKind.SUBSCRIPTION_ACTIVATED))

    record = store.get("a@x.com")
    assert record.subscribed is True
    assert record.generation_count == 0

    async with gate.metered("a@x.com"):
        pass
    assert store.get("a@x.com").generation_count == 1
