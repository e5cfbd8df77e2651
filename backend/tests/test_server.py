"""HTTP-level tests for the FastAPI app (dependencies overridden, lifespan not started)."""

from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient

from api.server import app, get_checkout_intake
from pipeline.agents.agent1_checkout_intake import CheckoutIntake
from pipeline.agents.agent2_payment_gateway import PaymentGateway, get_payment_gateway
from service_config import get_config

from conftest import (
    LONG_APOLLO_URL,
    FakeJobLauncher,
    checkout_session,
    encode_event,
    sign_payload,
    stripe_event,
)


@pytest.fixture
def client(config, staging, ledger, launcher, notifier):
    gateway = PaymentGateway(
        config=config, staging=staging, ledger=ledger, launcher=launcher, notifier=notifier
    )
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_checkout_intake] = lambda: CheckoutIntake(config=config, staging=staging)
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def _post_event(client: TestClient, event: dict, signature: str = None):
    payload = encode_event(event)
    return client.post(
        "/api/stripe-webhook",
        content=payload,
        headers={
            "content-type": "application/json",
            "stripe-signature": signature if signature is not None else sign_payload(payload),
        },
    )


class TestHealthAndConfig:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["job_trigger_configured"] is True
        assert body["notification_configured"] is True
        assert "X-Request-ID" in response.headers

    def test_public_config_has_no_secrets(self, client, config):
        response = client.get("/api/config")

        assert response.status_code == 200
        body = response.json()
        assert body["APOLLO_ACTOR_ID"] == config.apollo_actor_id
        assert body["DEFAULT_SETTINGS"]["minLeads"] == 500
        assert body["FEATURES"]["emailNotifications"] is True
        for secret in (config.apify_token, config.stripe_secret_key,
                       config.stripe_webhook_secret, config.email_webhook_url):
            assert secret not in response.text


class TestCheckoutEndpoint:
    def test_creates_session(self, client, monkeypatch):
        monkeypatch.setattr(
            stripe.checkout.Session,
            "create",
            lambda **kwargs: SimpleNamespace(id="cs_test_42", url="https://checkout.stripe.com/c/pay/cs_test_42"),
        )

        response = client.post("/api/create-checkout-session", json={
            "leads": 1000,
            "apolloUrl": LONG_APOLLO_URL,
            "email": "buyer@example.com",
            "cleanOutput": True,
        })

        assert response.status_code == 200
        assert response.json() == {
            "url": "https://checkout.stripe.com/c/pay/cs_test_42",
            "sessionId": "cs_test_42",
        }

    def test_invalid_order_returns_error_message(self, client):
        response = client.post("/api/create-checkout-session", json={
            "leads": 100,
            "apolloUrl": LONG_APOLLO_URL,
            "email": "buyer@example.com",
        })

        assert response.status_code == 400
        assert response.json() == {"error": "Minimum order is 500 leads ($2.50)"}

    def test_stripe_rate_limit_maps_to_429(self, client, monkeypatch):
        def fake_create(**kwargs):
            raise stripe.RateLimitError("slow down")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        response = client.post("/api/create-checkout-session", json={
            "leads": 1000,
            "apolloUrl": LONG_APOLLO_URL,
            "email": "buyer@example.com",
        })

        assert response.status_code == 429
        assert "error" in response.json()


class TestWebhookEndpoint:
    def test_valid_event_is_fulfilled(self, client, launcher):
        response = _post_event(client, stripe_event(checkout_session()))

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["status"] == "finalized"
        assert len(launcher.calls) == 1

    def test_bad_signature_is_400_and_triggers_nothing(self, client, launcher):
        response = _post_event(client, stripe_event(checkout_session()), signature="t=1,v1=bad")

        assert response.status_code == 400
        assert response.json()["error"].startswith("Webhook signature verification failed")
        assert launcher.calls == []

    def test_missing_signature_is_400(self, client):
        payload = encode_event(stripe_event(checkout_session()))

        response = client.post("/api/stripe-webhook", content=payload)

        assert response.status_code == 400

    def test_duplicate_delivery_is_acknowledged_once(self, client, launcher, notifier):
        first = _post_event(client, stripe_event(checkout_session()))
        second = _post_event(client, stripe_event(checkout_session()))

        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "deduplicated"
        assert len(launcher.calls) == 1
        assert len(notifier.sent) == 1

    def test_unrecoverable_order_is_still_acknowledged(self, client, launcher):
        response = _post_event(client, stripe_event(checkout_session(metadata={})))

        assert response.status_code == 200
        assert response.json()["status"] == "errored"
        assert launcher.calls == []

    def test_trigger_failure_returns_500_for_redelivery(self, config, staging, ledger, notifier):
        gateway = PaymentGateway(
            config=config,
            staging=staging,
            ledger=ledger,
            launcher=FakeJobLauncher(fail=True),
            notifier=notifier,
        )
        app.dependency_overrides[get_payment_gateway] = lambda: gateway
        try:
            response = _post_event(TestClient(app), stripe_event(checkout_session()))
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert "error" in response.json()

    def test_get_on_webhook_is_405(self, client):
        assert client.get("/api/stripe-webhook").status_code == 405
