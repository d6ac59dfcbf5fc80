# captionai/conftest.py
import os

import pytest

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from captionai.features.billing.provider import VerificationResult  # noqa: E402
from captionai.features.billing.service import BillingEventReceiver  # noqa: E402
from captionai.features.entitlements.service import EntitlementGate  # noqa: E402
from captionai.features.entitlements.store import InMemoryEntitlementStore  # noqa: E402
from captionai.features.generation.service import CaptionGenerator  # noqa: E402
from captionai.tests.mocks import FIXED_NOW, VIP_EMAIL, FakeBillingProvider, FakeGroq  # noqa: E402


@pytest.fixture
def vip_set():
    return frozenset({VIP_EMAIL})


@pytest.fixture
def store(vip_set):
    return InMemoryEntitlementStore(vip_set)


@pytest.fixture
def provider():
    """Provider double; verification says INACTIVE unless a test changes it."""
    return FakeBillingProvider(result=VerificationResult.INACTIVE)


@pytest.fixture
def make_gate(store, provider, vip_set):
    """
    Build a gate over the shared store.

    Defaults to verifying on every authorize (ttl=0) so tests see each
    verifier outcome.
    """
    def _make(verifier=None, free_limit=3, verify_ttl_seconds=0, verifier_timeout=1.0, clock=None):
        return EntitlementGate(
            store,
            verifier or provider,
            vip_set,
            free_limit=free_limit,
            verifier_timeout=verifier_timeout,
            verify_ttl_seconds=verify_ttl_seconds,
            clock=clock or (lambda: FIXED_NOW),
        )
    return _make


@pytest.fixture
def receiver(store, provider, vip_set):
    return BillingEventReceiver(store, provider, vip_set, clock=lambda: FIXED_NOW)


@pytest.fixture
def fake_groq():
    return FakeGroq()


@pytest.fixture
def generator(fake_groq):
    return CaptionGenerator(model="test-model", timeout=2.0, client=fake_groq)


@pytest.fixture
def app_with_fakes(make_gate, receiver, provider, generator, monkeypatch):
    """
    The real app with every service dependency swapped for test doubles.

    Tests that need another gate configuration install it with
    `app.dependency_overrides[deps.get_gate] = ...`.
    """
    from captionai.core import deps
    from captionai.main import app

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    gate = make_gate()

    app.dependency_overrides[deps.get_gate] = lambda: gate
    app.dependency_overrides[deps.get_receiver] = lambda: receiver
    app.dependency_overrides[deps.get_billing_provider] = lambda: provider
    app.dependency_overrides[deps.get_generator] = lambda: generator
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def client(app_with_fakes):
    from fastapi.testclient import TestClient

    return TestClient(app_with_fakes)
