"""Shared fixtures for the checkout-to-delivery pipeline tests.

Provides:
- A ServiceConfig pointing both stores at a per-test tmp directory
- File-backed staging store and ledger
- Fake job launcher / notifier that record calls
- Stripe-style webhook signing and event builders
"""

import asyncio
import hashlib
import hmac
import json
import time
from typing import Optional

import pytest

from pipeline.agents.agent3_delivery_agent import INotificationChannel, IScrapeJobLauncher
from pipeline.errors import JobTriggerError, NotificationError
from pipeline.metadata_codec import MetadataEnvelope
from schemas.event_definitions import FailureReport, NotificationPayload, ScrapeJobRequest
from service_config import ServiceConfig
from storage.order_store import FileIdempotencyLedger, FileOrderStagingStore

WEBHOOK_SECRET = "whsec_test_secret"

LONG_APOLLO_URL = (
    "https://app.apollo.io/#/people?finderViewId=5b8050d050a3893c382e9360"
    "&page=1&sortAscending=false&sortByField=recommendations_score"
    + "".join(f"&organizationIndustryTagIds[]=5567cd4773696439b10b{i:04d}" for i in range(40))
    + "&personTitles[]=chief%20executive%20officer&personLocations[]=United%20States"
)


# ============================================================================
# Fakes
# ============================================================================


class FakeJobLauncher(IScrapeJobLauncher):
    """Records every trigger; optionally fails or yields to the event loop."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.calls: list[ScrapeJobRequest] = []

    async def trigger(self, job: ScrapeJobRequest) -> Optional[str]:
        self.calls.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise JobTriggerError("Apify actor call failed: 502 Bad Gateway", status_code=502)
        return f"run_{len(self.calls)}"


class FakeNotifier(INotificationChannel):
    def __init__(self, configured: bool = True, fail: bool = False):
        self._configured = configured
        self.fail = fail
        self.sent: list[NotificationPayload] = []
        self.failures: list[FailureReport] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def notify(self, payload: NotificationPayload) -> bool:
        self.sent.append(payload)
        if self.fail:
            raise NotificationError("email webhook unreachable")
        return True

    async def report_failure(self, report: FailureReport) -> bool:
        self.failures.append(report)
        return True


# ============================================================================
# Config & stores
# ============================================================================


@pytest.fixture
def config(tmp_path) -> ServiceConfig:
    return ServiceConfig(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        apify_token="apify_api_test",
        apollo_actor_id="code_crafter/apollo-io-scraper",
        email_webhook_url="https://hooks.example.com/email",
        pending_orders_dir=str(tmp_path / "apollo-urls"),
        processed_sessions_dir=str(tmp_path / "processed-sessions"),
        sweep_enabled=False,
    )


@pytest.fixture
def staging(config) -> FileOrderStagingStore:
    return FileOrderStagingStore(config.pending_orders_dir)


@pytest.fixture
def ledger(config) -> FileIdempotencyLedger:
    return FileIdempotencyLedger(config.processed_sessions_dir, config.claim_ttl_seconds)


@pytest.fixture
def launcher() -> FakeJobLauncher:
    return FakeJobLauncher()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


# ============================================================================
# Stripe event helpers
# ============================================================================


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<body>")."""
    ts = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.{payload.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_session(
    session_id: str = "cs_test_a1B2c3",
    url: str = LONG_APOLLO_URL,
    email: str = "buyer@example.com",
    leads: int = 1000,
    clean_output: bool = True,
    metadata: Optional[dict] = None,
) -> dict:
    if metadata is None:
        metadata = MetadataEnvelope.build(
            url=url,
            email=email,
            leads=leads,
            clean_output=clean_output,
            timestamp="2026-10-18T12:00:00+00:00",
            order_id="apollo_1760788800000_abc123xyz",
            max_field_length=450,
        ).to_dict()
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": round(leads * 0.5),
        "customer_email": email,
        "payment_status": "paid",
        "metadata": metadata,
    }


def stripe_event(obj: dict, event_type: str = "checkout.session.completed", event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")
