"""Tests for the HTTP surface and the normalized error contract."""
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from membership.api.deps import require_entitlement
from membership.core.config import settings
from membership.core.errors import AppError, app_error_handler
from membership.core.middleware.request_id import RequestIdMiddleware
from membership.features.billing.provider import BillingProviderError, BillingWebhookResult, CheckoutSession
from membership.features.users.service import create_user

ALICE = {"X-User-Id": "alice"}


def _register(client, user_id="alice", **extra):
    resp = client.post("/v1/users", json={"userId": user_id, **extra})
    assert resp.status_code == 201
    return resp.json()


def test_register_user(client):
    body = _register(client, "alice", email="alice@example.com")
    assert body["user_id"] == "alice"
    assert body["email"] == "alice@example.com"

    dup = client.post("/v1/users", json={"userId": "alice"})
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "user_exists"


def test_evaluate_and_peek(client):
    _register(client)
    peek = client.post(
        "/v1/entitlements/peek",
        json={"userId": "alice", "requirement": {"feature": "monthly-flows", "quantity": 3}},
    )
    assert peek.status_code == 200
    assert peek.json() == {"allowed": True, "remaining": 7, "reason": "ok"}

    evaluate = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"feature": "monthly-flows", "quantity": 3}},
    )
    assert evaluate.json() == {"allowed": True, "remaining": 7, "reason": "ok"}

    denied = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"minTier": "pro"}},
    )
    assert denied.json() == {"allowed": False, "remaining": None, "reason": "tier-too-low"}


def test_validation_error_has_standard_shape(client):
    _register(client)
    resp = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"feature": "teleportation"}},
    )
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "unknown_feature"
    assert body["error"]["request_id"] == rid


def test_unknown_user_is_404(client):
    resp = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "ghost", "requirement": {"minTier": "free"}},
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "subscription_not_found"


def test_user_transition_and_report(client):
    _register(client)
    resp = client.post(
        "/v1/subscriptions/alice/transition",
        headers=ALICE,
        json={"event": "checkout_initiated", "payload": {"tier": "pro", "paymentReference": "cs_1"}},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"

    again = client.post(
        "/v1/subscriptions/alice/transition",
        headers=ALICE,
        json={"event": "checkout_initiated", "payload": {"tier": "pro", "paymentReference": "cs_2"}},
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "invalid_state"

    forbidden = client.post(
        "/v1/subscriptions/alice/transition",
        headers=ALICE,
        json={"event": "checkout_confirmed", "payload": {"paymentReference": "cs_1"}},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "event_not_permitted"

    report = client.get("/v1/subscriptions/alice/report", headers=ALICE)
    assert report.status_code == 200
    body = report.json()
    assert body["subscription"]["status"] == "pending"
    assert {row["feature"] for row in body["usage_summary"]} == {"monthly-flows", "monthly-ai-requests"}
    assert "history" not in body


def test_subscription_routes_require_matching_caller(client):
    _register(client)
    _register(client, "bob")

    missing = client.get("/v1/subscriptions/alice")
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "caller_required"

    foreign = client.post(
        "/v1/subscriptions/alice/transition",
        headers={"X-User-Id": "bob"},
        json={"event": "checkout_initiated", "payload": {"tier": "pro", "paymentReference": "cs_1"}},
    )
    assert foreign.status_code == 403
    assert foreign.json()["error"]["code"] == "caller_mismatch"

    for path in ("/v1/subscriptions/alice/report", "/v1/subscriptions/alice/usage",
                 "/v1/entitlements/alice/usage/monthly-flows"):
        assert client.get(path, headers={"X-User-Id": "bob"}).status_code == 403

    assert client.get("/v1/subscriptions/alice", headers=ALICE).json()["status"] == "none"


def test_subscription_read_routes(client):
    _register(client)
    client.post(
        "/v1/subscriptions/alice/transition",
        headers=ALICE,
        json={"event": "checkout_initiated", "payload": {"tier": "pro", "paymentReference": "cs_1"}},
    )
    client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"feature": "monthly-flows", "quantity": 3}},
    )

    current = client.get("/v1/subscriptions/alice", headers=ALICE).json()
    assert current["status"] == "pending"
    assert current["pending_tier"] == "pro"

    history = client.get("/v1/subscriptions/alice/history", headers=ALICE).json()
    assert [h["event"] for h in history] == ["checkout_initiated"]
    assert history[0]["actor"] == "user"

    usage = client.get("/v1/subscriptions/alice/usage", headers=ALICE).json()
    assert [(u["feature"], u["consumed"]) for u in usage] == [("monthly-flows", 3)]
    filtered = client.get("/v1/subscriptions/alice/usage", headers=ALICE, params={"feature": "monthly-ai-requests"})
    assert filtered.json() == []

    quota = client.get("/v1/entitlements/alice/usage/monthly-flows", headers=ALICE).json()
    assert quota == {"feature": "monthly-flows", "consumed": 3, "limit": 10, "remaining": 7}

    ghost = client.get("/v1/subscriptions/ghost/history", headers={"X-User-Id": "ghost"})
    assert ghost.status_code == 404
    assert ghost.json()["error"]["code"] == "subscription_not_found"


def test_datastore_outage_is_retryable_503(client, datastore_outage):
    _register(client)
    datastore_outage()

    resp = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"feature": "monthly-flows"}},
    )
    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "persistence_unavailable"
    assert body["error"]["retryable"] is True
    assert resp.headers["retry-after"] == "1"


def test_user_cancel_fails_cleanly_when_provider_refuses(client, mock_billing_provider):
    _register(client)
    client.post(
        "/v1/subscriptions/alice/transition",
        headers=ALICE,
        json={"event": "checkout_initiated", "payload": {"tier": "pro", "paymentReference": "cs_1"}},
    )
    mock_billing_provider.handle_webhook.return_value = BillingWebhookResult(
        event_id="evt_1",
        event_type="checkout.session.completed",
        lifecycle_event="checkout_confirmed",
        user_id="alice",
        payment_reference="cs_1",
        tier=None,
        period_end=None,
        subscription_id="sub_1",
    )
    client.post("/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    mock_billing_provider.cancel_subscription.side_effect = BillingProviderError("stripe down")

    resp = client.post("/v1/subscriptions/alice/transition", headers=ALICE, json={"event": "cancelled"})
    assert resp.status_code == 502
    mock_billing_provider.cancel_subscription.assert_called_once_with("sub_1", at_period_end=False)

    state = client.get("/v1/subscriptions/alice", headers=ALICE).json()
    assert state["status"] == "active"
    assert state["provider_subscription_id"] == "sub_1"

    mock_billing_provider.cancel_subscription.side_effect = None
    retry = client.post("/v1/subscriptions/alice/transition", headers=ALICE, json={"event": "cancelled"})
    assert retry.status_code == 200
    assert retry.json()["status"] == "cancelled"


def test_admin_endpoints_require_key(client, admin_key):
    _register(client)
    missing = client.post("/v1/admin/subscriptions/assign", json={"userId": "alice", "tier": "pro", "reason": "x"})
    assert missing.status_code == 403
    assert missing.json()["error"]["code"] == "admin_unauthorized"

    wrong = client.get("/v1/admin/tiers/distribution", headers={"X-Admin-Key": "nope"})
    assert wrong.status_code == 403


def test_admin_unconfigured_is_503(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    resp = client.get("/v1/admin/tiers/distribution", headers={"X-Admin-Key": "anything"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


def test_admin_assign_report_and_audit(client, admin_key):
    _register(client)
    assign = client.post(
        "/v1/admin/subscriptions/assign",
        headers=admin_key,
        json={"userId": "alice", "tier": "pro", "reason": "beta partner"},
    )
    assert assign.status_code == 200
    assert assign.json()["tier"] == "pro"
    assert assign.json()["admin_marker"] is True

    decision = client.post(
        "/v1/entitlements/evaluate",
        json={"userId": "alice", "requirement": {"feature": "csv-import"}},
    )
    assert decision.json()["allowed"] is True

    report = client.get("/v1/admin/subscriptions/alice/report", headers=admin_key)
    assert report.json()["history"][0]["actor"] == "admin:ops-1"

    distribution = client.get("/v1/admin/tiers/distribution", headers=admin_key).json()
    assert distribution["total"] == 1

    audit = client.get("/v1/admin/audit", headers=admin_key, params={"userId": "alice"}).json()
    assert [e["action"] for e in audit["entries"]] == ["assign_tier"]

    cancel = client.post(
        "/v1/admin/subscriptions/cancel",
        headers=admin_key,
        json={"userId": "alice", "reason": "trial over"},
    )
    assert cancel.json()["status"] == "cancelled"


def test_admin_sweep(client, admin_key):
    resp = client.post("/v1/admin/lifecycle/sweep", headers=admin_key, json={"limit": 10})
    assert resp.status_code == 200
    assert resp.json()["examined"] == 0

    audit = client.get("/v1/admin/audit", headers=admin_key).json()
    assert audit["entries"][0]["action"] == "lifecycle_sweep"
    assert audit["entries"][0]["payload"] == {"limit": 10, "transitions": 0}


def test_billing_checkout_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    _register(client)
    resp = client.post(
        "/v1/billing/checkout",
        json={"userId": "alice", "tier": "pro", "successUrl": "https://a", "cancelUrl": "https://b"},
    )
    assert resp.status_code == 503


def test_billing_checkout_and_webhook(client, mock_billing_provider, admin_key):
    _register(client)
    mock_billing_provider.ensure_customer.return_value = "cus_1"
    mock_billing_provider.create_checkout_session.return_value = CheckoutSession(session_id="cs_1", url="https://pay")

    checkout = client.post(
        "/v1/billing/checkout",
        json={"userId": "alice", "tier": "pro", "successUrl": "https://a", "cancelUrl": "https://b"},
    )
    assert checkout.status_code == 200
    assert checkout.json()["subscription"]["status"] == "pending"

    mock_billing_provider.handle_webhook.return_value = BillingWebhookResult(
        event_id="evt_1",
        event_type="checkout.session.completed",
        lifecycle_event="checkout_confirmed",
        user_id="alice",
        payment_reference="cs_1",
        tier="pro",
        period_end=None,
    )
    webhook = client.post("/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    assert webhook.status_code == 200
    assert webhook.json()["received"] is True
    assert webhook.json()["status"] == "applied"

    replay = client.post("/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    assert replay.json()["status"] == "duplicate"

    events = client.get("/v1/admin/payment-events", headers=admin_key, params={"userId": "alice"}).json()["events"]
    assert [(e["event_type"], e["payment_reference"]) for e in events] == [("checkout_confirmed", "cs_1")]
    assert client.get("/v1/admin/payment-events", params={"userId": "alice"}).status_code == 403


def test_plans_listing(client):
    plans = client.get("/v1/billing/plans").json()["plans"]
    assert [p["tier"] for p in plans] == ["free", "premium", "pro"]


def test_health(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ok", "db": True}


def test_require_entitlement_gates_route():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)

    @test_app.post("/reports/export", dependencies=[Depends(require_entitlement({"feature": "monthly-flows", "quantity": 5}))])
    def export():
        return {"ok": True}

    client = TestClient(test_app)
    create_user("alice")

    assert client.post("/reports/export", headers={"X-User-Id": "alice"}).status_code == 200
    assert client.post("/reports/export", headers={"X-User-Id": "alice"}).status_code == 200

    denied = client.post("/reports/export", headers={"X-User-Id": "alice"})
    assert denied.status_code == 403
    body = denied.json()
    assert body["error"]["code"] == "entitlement_denied"
    assert body["error"]["reason"] == "quota-exhausted"
    assert body["error"]["remaining"] == 0
