"""HTTP contract for generate, boost, entitlement query and billing routes."""

import groq
import pytest

from captionai.core.config import settings
from captionai.features.billing.provider import BillingWebhookError, VerificationResult
from captionai.models.billing_event import BillingEvent, BillingEventKind
from captionai.tests.mocks import VIP_EMAIL


def _generate_body(email="a@x.com", **overrides):
    body = {"idea": "coffee launch", "platform": "Instagram", "tone": "playful", "email": email}
    body.update(overrides)
    return body


def test_generate_returns_captions_and_remaining(client, store):
    resp = client.post("/api/generate", json=_generate_body(email=" A@X.com "))

    assert resp.status_code == 200
    body = resp.json()
    assert body["request_id"] == resp.headers["x-request-id"]
    data = body["data"]
    assert len(data["captions"]) == 5
    assert data["hashtags"][:2] == ["#coffee", "#CoffeeLover"]
    assert data["remaining_free_uses"] == 2
    assert store.get("a@x.com").generation_count == 1


@pytest.mark.parametrize(
    "body",
    [
        {"platform": "Instagram", "tone": "playful", "email": "a@x.com"},
        _generate_body(idea="   "),
        _generate_body(email="not-an-email"),
        _generate_body(brand_voice="x" * 2001),
        {"idea": "coffee", "platform": "x", "tone": "fun"},
    ],
    ids=["missing-idea", "blank-idea", "bad-email", "oversized-brand-voice", "missing-email"],
)
def test_generate_rejects_invalid_input(client, store, body):
    resp = client.post("/api/generate", json=body)

    assert resp.status_code == 400
    payload = resp.json()
    assert payload["error"]["code"] == "validation_error"
    assert payload["error"]["request_id"] == resp.headers["x-request-id"]
    assert store.get("a@x.com") is None


def test_generate_denied_after_free_limit(client, store, fake_groq):
    for _ in range(3):
        assert client.post("/api/generate", json=_generate_body()).status_code == 200

    resp = client.post("/api/generate", json=_generate_body())

    assert resp.status_code == 402
    error = resp.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"] == {"free_limit": 3, "upgrade_url": "/api/billing/checkout"}
    assert len(fake_groq.completions.calls) == 3
    assert store.get("a@x.com").generation_count == 3


def test_generation_failure_is_not_charged(client, store, fake_groq):
    fake_groq.completions.error = groq.GroqError("upstream exploded")

    resp = client.post("/api/generate", json=_generate_body())

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "generation_failed"
    assert store.get("a@x.com").generation_count == 0


def test_vip_generates_without_limit(client):
    for _ in range(5):
        resp = client.post("/api/generate", json=_generate_body(email=VIP_EMAIL))
        assert resp.status_code == 200
        assert resp.json()["data"]["remaining_free_uses"] == "unlimited"


def test_boost_accepts_caption_list(client, fake_groq, store):
    resp = client.post(
        "/api/boost",
        json=_generate_body(captions=["Old caption one", "Old caption two"]),
    )

    assert resp.status_code == 200
    prompt = fake_groq.completions.calls[0]["messages"][0]["content"]
    assert '1. "Old caption one"\n2. "Old caption two"' in prompt
    assert store.get("a@x.com").generation_count == 1


def test_boost_requires_captions(client):
    resp = client.post("/api/boost", json=_generate_body(captions=""))
    assert resp.status_code == 400


def test_entitlements_query_is_read_only(client, store, provider):
    resp = client.get("/api/entitlements", params={"email": "New@X.com"})

    assert resp.status_code == 200
    assert resp.json() == {"isSubscribed": False, "isVip": False, "remainingFreeUses": 3}
    assert store.get("new@x.com") is None
    assert provider.calls == []


def test_entitlements_query_reflects_usage_and_vip(client):
    client.post("/api/generate", json=_generate_body())

    assert client.get("/api/entitlements", params={"email": "a@x.com"}).json()["remainingFreeUses"] == 2
    vip = client.get("/api/entitlements", params={"email": VIP_EMAIL}).json()
    assert vip == {"isSubscribed": True, "isVip": True, "remainingFreeUses": "unlimited"}


def test_entitlements_query_rejects_bad_email(client):
    resp = client.get("/api/entitlements", params={"email": "nope"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_webhook_activation_unlocks_generation(client, provider, store):
    for _ in range(3):
        client.post("/api/generate", json=_generate_body())
    assert client.post("/api/generate", json=_generate_body()).status_code == 402

    provider.event = BillingEvent(
        event_id="evt_paid",
        event_type="checkout.session.completed",
        kind=BillingEventKind.SUBSCRIPTION_ACTIVATED,
        identity="a@x.com",
        customer_id="cus_a",
    )
    provider.result = VerificationResult.ACTIVE
    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=sig"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_paid", "status": "applied"}
    assert store.get("a@x.com").generation_count == 0

    resp = client.post("/api/generate", json=_generate_body())
    assert resp.status_code == 200
    assert resp.json()["data"]["remaining_free_uses"] == "unlimited"


def test_webhook_unresolved_identity_still_acknowledged(client, provider):
    provider.event = BillingEvent(
        event_id="evt_orphan",
        event_type="invoice.paid",
        kind=BillingEventKind.SUBSCRIPTION_RENEWED,
        customer_id="cus_nobody",
    )

    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "unresolved"


def test_webhook_bad_signature_rejected(client, provider):
    provider.webhook_error = BillingWebhookError("Invalid signature")

    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "bad"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "webhook_invalid"


def test_billing_routes_disabled_without_stripe(client, monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    webhook = client.post("/api/billing/webhook", content=b"{}")
    checkout = client.post("/api/billing/checkout", json={"email": "a@x.com"})

    assert webhook.status_code == 503
    assert checkout.status_code == 503
    assert webhook.json()["error"]["code"] == "billing_disabled"


def test_checkout_uses_origin_for_default_urls(client, provider):
    resp = client.post(
        "/api/billing/checkout",
        json={"email": "Buyer@X.com"},
        headers={"origin": "https://app.example.com"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/session"}
    checkout = provider.checkouts[0]
    assert checkout["email"] == "buyer@x.com"
    assert checkout["success_url"] == "https://app.example.com?success=true"
    assert checkout["cancel_url"] == "https://app.example.com?canceled=true"
    assert checkout["metadata"] == {"identity": "buyer@x.com"}


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_readyz_memory_store(client, monkeypatch):
    monkeypatch.setattr(settings, "STORE_BACKEND", "memory")
    assert client.get("/readyz").json() == {"status": "ok", "store": "memory"}
