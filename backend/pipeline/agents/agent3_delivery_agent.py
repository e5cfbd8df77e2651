"""
Agent 3: Delivery Agent
=======================
Outbound side of fulfillment:
- ApifyJobLauncher: starts one Apollo scraper actor run per paid order
- EmailWebhookNotifier: tells the customer (via the email webhook) that the
  scrape is running, and reports unrecoverable orders to operators
- ResultForwarder: posts finished, optionally cleaned, results downstream

The launcher raises JobTriggerError; the notifier never raises. A notification
failure must not undo a scrape that has already been paid for and started.

pip install httpx pydantic structlog
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from pipeline.errors import JobTriggerError, ResultDeliveryError
from pipeline.result_normalizer import normalize_records
from schemas.event_definitions import FailureReport, NotificationPayload, ScrapeJobRequest
from service_config import ServiceConfig, get_config


def _short_url(url: str, limit: int = 100) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


# =============================================================================
# INTERFACES
# =============================================================================

class IScrapeJobLauncher(ABC):
    """Starts an external scraping job. Does not wait for it to finish."""

    @abstractmethod
    async def trigger(self, job: ScrapeJobRequest) -> Optional[str]:
        """Returns the run id if the provider reported one."""
        pass


class INotificationChannel(ABC):
    """Optional customer/operator notification channel."""

    @property
    @abstractmethod
    def configured(self) -> bool:
        pass

    @abstractmethod
    async def notify(self, payload: NotificationPayload) -> bool:
        pass

    @abstractmethod
    async def report_failure(self, report: FailureReport) -> bool:
        pass


# =============================================================================
# APIFY JOB LAUNCHER
# =============================================================================

class ApifyJobLauncher(IScrapeJobLauncher):
    """Triggers the Apollo scraper actor through the Apify REST API."""

    USER_AGENT = "Apollo-Scraper-Webhook/1.0"

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._logger = structlog.get_logger().bind(component="apify_launcher")

    @property
    def runs_url(self) -> str:
        actor = quote(self.config.apollo_actor_id, safe="")
        return f"{self.config.apify_base_url}/acts/{actor}/runs"

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        return await client.post(
            self.runs_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.config.apify_token}",
                "Accept": "application/json",
                "User-Agent": self.USER_AGENT,
            },
            timeout=self.config.job_trigger_timeout,
        )

    async def trigger(self, job: ScrapeJobRequest) -> Optional[str]:
        if not self.config.job_trigger_configured:
            raise JobTriggerError("Apify token or actor id not configured")

        payload = job.to_payload()
        self._logger.info("scrape_job_requested",
                          actor_id=self.config.apollo_actor_id,
                          url=_short_url(job.destination_url),
                          url_length=len(job.destination_url),
                          total_records=job.requested_volume,
                          file_name=job.file_name,
                          clean_output=job.output_cleaning_requested)

        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload)
        except httpx.HTTPError as e:
            self._logger.error("scrape_job_transport_error",
                               error=str(e),
                               error_type=type(e).__name__)
            raise JobTriggerError(f"Apify request failed: {e}") from e

        if not response.is_success:
            self._logger.error("scrape_job_rejected",
                               status_code=response.status_code,
                               body=response.text[:500])
            raise JobTriggerError(
                f"Apify actor call failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError:
            result = {}
        data = result.get("data") if isinstance(result, dict) else None
        run_id = (
            (data or {}).get("id")
            or (result.get("id") if isinstance(result, dict) else None)
            or (result.get("runId") if isinstance(result, dict) else None)
        )

        self._logger.info("scrape_job_triggered", run_id=run_id, file_name=job.file_name)
        return run_id


# =============================================================================
# EMAIL WEBHOOK NOTIFIER
# =============================================================================

class EmailWebhookNotifier(INotificationChannel):
    """Posts to EMAIL_WEBHOOK_URL. Missing URL means notifications are off."""

    USER_AGENT = "Apollo-Scraper-Email/1.0"

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._logger = structlog.get_logger().bind(component="email_notifier")

    @property
    def configured(self) -> bool:
        return self.config.notifications_enabled

    async def _send(self, body: dict, kind: str) -> bool:
        if not self.configured:
            self._logger.info("notification_skipped", kind=kind, reason="not_configured")
            return False

        kwargs = {
            "json": body,
            "headers": {"User-Agent": self.USER_AGENT},
            "timeout": self.config.notification_timeout,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.config.email_webhook_url, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.config.email_webhook_url, **kwargs)
        except httpx.HTTPError as e:
            self._logger.error("notification_failed",
                               kind=kind,
                               error=str(e),
                               error_type=type(e).__name__)
            return False

        if not response.is_success:
            self._logger.error("notification_rejected",
                               kind=kind,
                               status_code=response.status_code,
                               body=response.text[:500])
            return False

        self._logger.info("notification_sent", kind=kind, status_code=response.status_code)
        return True

    async def notify(self, payload: NotificationPayload) -> bool:
        return await self._send(payload.to_payload(), kind="order_started")

    async def report_failure(self, report: FailureReport) -> bool:
        return await self._send(report.to_payload(), kind="fulfillment_failed")


# =============================================================================
# RESULT FORWARDER
# =============================================================================

class ResultForwarder:
    """Sends scraped records to a downstream webhook as {data, metadata}."""

    USER_AGENT = "Apify-Apollo-Scraper-Automated/1.0"

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._logger = structlog.get_logger().bind(component="result_forwarder")

    async def forward(
        self,
        webhook_url: str,
        items: list[dict],
        metadata: Optional[dict[str, Any]] = None,
        clean_output: bool = False,
    ) -> int:
        """Returns the HTTP status of the downstream response."""
        data = normalize_records(items) if clean_output else items
        body = {
            "data": data,
            "metadata": {
                "totalRecords": len(data),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **(metadata or {}),
            },
        }

        kwargs = {
            "json": body,
            "headers": {"User-Agent": self.USER_AGENT},
            "timeout": self.config.result_forward_timeout,
        }
        try:
            if self._client is not None:
                response = await self._client.post(webhook_url, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(webhook_url, **kwargs)
        except httpx.HTTPError as e:
            self._logger.error("result_forward_failed", error=str(e))
            raise ResultDeliveryError(f"Webhook delivery failed: {e}") from e

        if not response.is_success:
            self._logger.error("result_forward_rejected",
                               status_code=response.status_code,
                               body=response.text[:500])
            raise ResultDeliveryError(
                f"Webhook delivery failed: {response.status_code} {response.reason_phrase}"
            )

        self._logger.info("results_forwarded",
                          records=len(data),
                          cleaned=clean_output,
                          status_code=response.status_code)
        return response.status_code


# =============================================================================
# SINGLETONS
# =============================================================================

_launcher: Optional[IScrapeJobLauncher] = None
_notifier: Optional[INotificationChannel] = None


def get_job_launcher() -> IScrapeJobLauncher:
    """Get or create the singleton Apify launcher."""
    global _launcher
    if _launcher is None:
        _launcher = ApifyJobLauncher()
    return _launcher


def get_notifier() -> INotificationChannel:
    """Get or create the singleton notifier."""
    global _notifier
    if _notifier is None:
        _notifier = EmailWebhookNotifier()
    return _notifier
