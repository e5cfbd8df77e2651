"""Tests for the Apify launcher, email notifier and result forwarder (httpx mocked)."""

import json
from dataclasses import replace

import httpx
import pytest

from pipeline.agents.agent3_delivery_agent import ApifyJobLauncher, EmailWebhookNotifier, ResultForwarder
from pipeline.errors import JobTriggerError, ResultDeliveryError
from schemas.event_definitions import FailureReport, NotificationPayload, ScrapeJobRequest

from conftest import LONG_APOLLO_URL


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _job() -> ScrapeJobRequest:
    return ScrapeJobRequest(
        destination_url=LONG_APOLLO_URL,
        requested_volume=1000,
        file_name="Q7K2ZD",
        contact_address="buyer@example.com",
        output_cleaning_requested=True,
    )


class TestApifyJobLauncher:
    @pytest.mark.asyncio
    async def test_posts_actor_input_and_returns_run_id(self, config):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"data": {"id": "run_abc", "status": "READY"}})

        async with _client(handler) as client:
            run_id = await ApifyJobLauncher(config, client=client).trigger(_job())

        assert run_id == "run_abc"
        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == "https://api.apify.com/v2/acts/code_crafter%2Fapollo-io-scraper/runs"
        assert request.headers["Authorization"] == "Bearer apify_api_test"
        assert request.headers["User-Agent"] == "Apollo-Scraper-Webhook/1.0"
        assert json.loads(request.content) == {
            "url": LONG_APOLLO_URL,
            "totalRecords": 1000,
            "fileName": "Q7K2ZD",
            "email": "buyer@example.com",
            "cleanOutput": True,
        }

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status(self, config):
        def handler(request):
            return httpx.Response(402, json={"error": {"message": "Not enough credits"}})

        async with _client(handler) as client:
            with pytest.raises(JobTriggerError) as exc_info:
                await ApifyJobLauncher(config, client=client).trigger(_job())

        assert exc_info.value.status_code == 402

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(JobTriggerError, match="Apify request failed"):
                await ApifyJobLauncher(config, client=client).trigger(_job())

    @pytest.mark.asyncio
    async def test_missing_token_raises_without_request(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={})

        async with _client(handler) as client:
            launcher = ApifyJobLauncher(replace(config, apify_token=""), client=client)
            with pytest.raises(JobTriggerError, match="not configured"):
                await launcher.trigger(_job())

        assert seen == []

    @pytest.mark.asyncio
    async def test_run_id_absent_is_not_an_error(self, config):
        async with _client(lambda request: httpx.Response(200, text="ok")) as client:
            assert await ApifyJobLauncher(config, client=client).trigger(_job()) is None


class TestEmailWebhookNotifier:
    @pytest.mark.asyncio
    async def test_posts_notification_payload(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        payload = NotificationPayload(
            contact_address="buyer@example.com",
            requested_volume=1000,
            destination_url=LONG_APOLLO_URL,
            file_name="Q7K2ZD",
        )
        async with _client(handler) as client:
            assert await EmailWebhookNotifier(config, client=client).notify(payload) is True

        body = json.loads(seen[0].content)
        assert str(seen[0].url) == config.email_webhook_url
        assert body["email"] == "buyer@example.com"
        assert body["leadCount"] == 1000
        assert body["apolloUrl"] == LONG_APOLLO_URL
        assert body["service"] == "apollo-scraper"
        assert body["source"] == "stripe-payment"
        assert body["fileName"] == "Q7K2ZD"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_unconfigured_skips_without_request(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        async with _client(handler) as client:
            notifier = EmailWebhookNotifier(replace(config, email_webhook_url=""), client=client)
            assert notifier.configured is False
            assert await notifier.report_failure(FailureReport(session_id="cs_1", reason="x")) is False

        assert seen == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 500, 503])
    async def test_rejection_returns_false(self, config, status):
        async with _client(lambda request: httpx.Response(status)) as client:
            report = FailureReport(session_id="cs_1", reason="Missing required metadata")
            assert await EmailWebhookNotifier(config, client=client).report_failure(report) is False

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self, config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        payload = NotificationPayload(
            contact_address="buyer@example.com",
            requested_volume=500,
            destination_url="https://app.apollo.io/#/people",
            file_name="ABC123",
        )
        async with _client(handler) as client:
            assert await EmailWebhookNotifier(config, client=client).notify(payload) is False


class TestResultForwarder:
    @pytest.mark.asyncio
    async def test_forwards_cleaned_records(self, config):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        items = [{"name": "Ada", "title": None, "phones": ["", None]}, {"name": "Grace", "org": {"id": ""}}]
        async with _client(handler) as client:
            status = await ResultForwarder(config, client=client).forward(
                "https://hooks.example.com/results",
                items,
                metadata={"fileName": "Q7K2ZD", "apolloUrl": LONG_APOLLO_URL},
                clean_output=True,
            )

        assert status == 202
        body = seen[0]
        assert body["data"] == [{"name": "Ada"}, {"name": "Grace"}]
        assert body["metadata"]["totalRecords"] == 2
        assert body["metadata"]["fileName"] == "Q7K2ZD"
        assert "timestamp" in body["metadata"]

    @pytest.mark.asyncio
    async def test_raw_records_forwarded_when_cleaning_off(self, config):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        items = [{"name": "Ada", "title": None}]
        async with _client(handler) as client:
            await ResultForwarder(config, client=client).forward("https://hooks.example.com/r", items)

        assert seen[0]["data"] == [{"name": "Ada", "title": None}]

    @pytest.mark.asyncio
    async def test_downstream_failure_raises(self, config):
        async with _client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(ResultDeliveryError):
                await ResultForwarder(config, client=client).forward("https://hooks.example.com/r", [])
