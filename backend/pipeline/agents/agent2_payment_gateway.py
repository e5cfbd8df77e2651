"""
Agent 2: Payment Gateway
========================
Turns a verified Stripe "checkout.session.completed" event into exactly one
Apollo scraper run:

    Received → Verified → Deduplicated
                        → Recovering → Recovered → Triggering → Notifying → Finalized
    (any step after Verified may end in Errored)

- Signature verified over the raw request bytes BEFORE any parsing
- Webhook Router: one handler per Stripe event type, unknown types ignored
- Idempotency: permanent ledger marker + claim taken before triggering
- Recovery: staging store first, chunked metadata envelope as fallback
- Notification failures are logged and never roll back a started scrape

pip install stripe pydantic structlog
"""

import asyncio
import json
import uuid
from collections import defaultdict
from typing import Any, Callable, Optional

import stripe
import structlog

from pipeline.agents.agent3_delivery_agent import (
    INotificationChannel,
    IScrapeJobLauncher,
    get_job_launcher,
    get_notifier,
)
from pipeline.errors import JobTriggerError, RecoveryError, StorageError, VerificationError
from pipeline.metadata_codec import MetadataEnvelope
from schemas.event_definitions import (
    FailureReport,
    FulfillmentResult,
    FulfillmentState,
    NotificationPayload,
    PendingOrder,
    RecoverySource,
    ScrapeJobRequest,
    generate_file_name,
)
from service_config import ServiceConfig, get_config
from storage.order_store import (
    IIdempotencyLedger,
    IOrderStagingStore,
    get_ledger,
    get_staging_store,
)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


# =============================================================================
# PAYMENT EVENT VERIFIER
# =============================================================================

class PaymentEventVerifier:
    """
    Stripe webhook authentication.

    The signature covers the exact request bytes, so verification must run
    on the untouched body; re-serializing a parsed event breaks it.
    """

    def __init__(self, secret: str, tolerance: int = 300):
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> dict:
        if not self._secret:
            raise VerificationError("Webhook secret not configured")
        if not signature:
            raise VerificationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerificationError("Request body is not UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as e:
            raise VerificationError(f"Signature verification failed: {e}") from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise VerificationError("Malformed event body") from e
        if not isinstance(event, dict) or not event.get("type"):
            raise VerificationError("Event has no type")
        return event


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Any]


class WebhookRouter:
    """Maps Stripe event types to handlers. Unknown types route to nothing."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("type", "unknown")
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("event_ignored", event_type=event_type, correlation_id=correlation_id)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# FULFILLMENT ORCHESTRATOR
# =============================================================================

class FulfillmentOrchestrator:
    """
    Recovers a paid order, starts its scrape, notifies the customer and
    finalizes bookkeeping. One instance serves all sessions; per-session
    work is serialized in-process and claimed on disk across processes.
    """

    def __init__(
        self,
        staging: IOrderStagingStore,
        ledger: IIdempotencyLedger,
        launcher: IScrapeJobLauncher,
        notifier: INotificationChannel,
    ):
        self.staging = staging
        self.ledger = ledger
        self.launcher = launcher
        self.notifier = notifier

        self._session_locks: dict[str, asyncio.Lock] = {}
        self._session_lock_users: dict[str, int] = defaultdict(int)
        self._session_locks_mutex = asyncio.Lock()
        self._base_logger = structlog.get_logger().bind(component="fulfillment")

    async def _get_session_lock(self, session_id: str) -> asyncio.Lock:
        async with self._session_locks_mutex:
            if session_id not in self._session_locks:
                self._session_locks[session_id] = asyncio.Lock()
            self._session_lock_users[session_id] += 1
            return self._session_locks[session_id]

    async def _drop_session_lock(self, session_id: str) -> None:
        # Forget the lock only once no delivery is holding or waiting on it
        async with self._session_locks_mutex:
            self._session_lock_users[session_id] -= 1
            if self._session_lock_users[session_id] <= 0:
                del self._session_lock_users[session_id]
                self._session_locks.pop(session_id, None)

    def _enter(self, log, state: FulfillmentState) -> None:
        log.info("fulfillment_state", state=state.value)

    async def fulfill(self, session: dict, correlation_id: str) -> FulfillmentResult:
        """
        Process one checkout.session.completed payload.

        Returns a result for Deduplicated, Finalized and reported recovery
        failures. Raises JobTriggerError / StorageError when the gateway
        should redeliver.
        """
        session_id = session.get("id")
        log = self._base_logger.bind(correlation_id=correlation_id, session_id=session_id)

        if not session_id:
            log.error("session_id_missing")
            return FulfillmentResult(
                session_id="",
                state=FulfillmentState.ERRORED,
                error="checkout session has no id",
            )

        self._enter(log, FulfillmentState.VERIFIED)
        lock = await self._get_session_lock(session_id)
        try:
            async with lock:
                return await self._fulfill_locked(session, session_id, log)
        finally:
            await self._drop_session_lock(session_id)

    def _deduplicated(self, session_id: str, reason: str, log) -> FulfillmentResult:
        log.info("fulfillment_deduplicated", reason=reason)
        self._enter(log, FulfillmentState.DEDUPLICATED)
        return FulfillmentResult(session_id=session_id, state=FulfillmentState.DEDUPLICATED)

    async def _fulfill_locked(self, session: dict, session_id: str, log) -> FulfillmentResult:
        if await self.ledger.is_processed(session_id):
            return self._deduplicated(session_id, "already_processed", log)

        if not await self.ledger.try_claim(session_id):
            return self._deduplicated(session_id, "in_flight_elsewhere", log)

        # Claim held from here on: release it on every path that does not finalize.
        # Another worker may have finalized between the first check and the claim.
        try:
            finished_elsewhere = await self.ledger.is_processed(session_id)
        except StorageError:
            await self._release_claim(session_id, log)
            raise
        if finished_elsewhere:
            await self._release_claim(session_id, log)
            return self._deduplicated(session_id, "finalized_before_claim", log)

        self._enter(log, FulfillmentState.RECOVERING)
        try:
            order, source = await self._recover(session_id, session, log)
        except RecoveryError as e:
            await self._release_claim(session_id, log)
            log.error("order_recovery_failed", error=str(e))
            await self._report_failure(session_id, str(e), log)
            self._enter(log, FulfillmentState.ERRORED)
            return FulfillmentResult(
                session_id=session_id,
                state=FulfillmentState.ERRORED,
                error=str(e),
            )
        except StorageError:
            await self._release_claim(session_id, log)
            self._enter(log, FulfillmentState.ERRORED)
            raise
        self._enter(log, FulfillmentState.RECOVERED)

        file_name = generate_file_name()
        log.info("payment_received",
                 email=order.contact_address,
                 leads=order.requested_volume,
                 file_name=file_name,
                 amount=(session.get("amount_total") or 0) / 100,
                 url_length=len(order.destination_url),
                 recovered_from=source.value)

        self._enter(log, FulfillmentState.TRIGGERING)
        try:
            run_id = await self.launcher.trigger(ScrapeJobRequest.for_order(order, file_name))
        except JobTriggerError as e:
            await self._release_claim(session_id, log)
            log.error("scrape_trigger_failed", error=str(e), status_code=e.status_code)
            self._enter(log, FulfillmentState.ERRORED)
            raise

        self._enter(log, FulfillmentState.NOTIFYING)
        notified = await self._notify(order, file_name, log)

        await self._finalize(session_id, log)
        self._enter(log, FulfillmentState.FINALIZED)
        log.info("fulfillment_complete", run_id=run_id, file_name=file_name, notified=notified)

        return FulfillmentResult(
            session_id=session_id,
            state=FulfillmentState.FINALIZED,
            run_id=run_id,
            file_name=file_name,
            recovered_from=source,
            notified=notified,
        )

    async def _recover(self, session_id: str, session: dict, log) -> tuple[PendingOrder, RecoverySource]:
        order = await self.staging.get(session_id)
        if order is not None:
            log.info("order_recovered", source=RecoverySource.STAGING.value)
            return order, RecoverySource.STAGING

        log.warning("staged_order_missing", fallback="metadata")
        envelope = MetadataEnvelope(session.get("metadata") or {})
        leads = envelope.get(MetadataEnvelope.LEADS)
        email = envelope.get(MetadataEnvelope.EMAIL)
        if not leads or not email:
            raise RecoveryError("Missing required metadata (leads/email)", session_id=session_id)

        url, lossless = envelope.recover_url()
        if not url:
            raise RecoveryError("No search URL in metadata", session_id=session_id)

        try:
            order = PendingOrder(
                destination_url=url,
                contact_address=email,
                requested_volume=int(leads),
                output_cleaning_requested=envelope.get(MetadataEnvelope.CLEAN_OUTPUT) == "true",
            )
        except ValueError as e:
            raise RecoveryError(f"Invalid order metadata: {e}", session_id=session_id) from e

        source = RecoverySource.METADATA if lossless else RecoverySource.METADATA_TRUNCATED
        if not lossless:
            log.warning("order_recovered_truncated", url_length=len(url))
        else:
            log.info("order_recovered", source=source.value, url_length=len(url))
        return order, source

    async def _notify(self, order: PendingOrder, file_name: str, log) -> bool:
        if not self.notifier.configured:
            log.info("notification_skipped", reason="not_configured")
            return False
        payload = NotificationPayload(
            contact_address=order.contact_address,
            requested_volume=order.requested_volume,
            destination_url=order.destination_url,
            file_name=file_name,
        )
        try:
            return await self.notifier.notify(payload)
        except Exception as e:
            log.error("notification_error", error=str(e), error_type=type(e).__name__)
            return False

    async def _report_failure(self, session_id: str, reason: str, log) -> None:
        if not self.notifier.configured:
            return
        try:
            await self.notifier.report_failure(FailureReport(session_id=session_id, reason=reason))
        except Exception as e:
            log.error("failure_report_error", error=str(e), error_type=type(e).__name__)

    async def _finalize(self, session_id: str, log) -> None:
        # Ledger first: once written, redeliveries are no-ops even if cleanup below fails
        try:
            await self.ledger.mark_processed(session_id)
        except StorageError as e:
            # Claim is kept so redeliveries within the claim TTL stay blocked
            log.error("finalize_ledger_failed", error=str(e))
            raise

        try:
            await self.staging.delete(session_id)
        except StorageError as e:
            log.warning("finalize_cleanup_failed", error=str(e))

        await self._release_claim(session_id, log)

    async def _release_claim(self, session_id: str, log) -> None:
        try:
            await self.ledger.release_claim(session_id)
        except StorageError as e:
            log.warning("claim_release_failed", error=str(e))


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class PaymentGateway:
    """
    Entry point for Stripe webhooks.

    Example:
        gateway = PaymentGateway()
        response = await gateway.process_webhook(raw_body, request.headers["stripe-signature"])
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        staging: Optional[IOrderStagingStore] = None,
        ledger: Optional[IIdempotencyLedger] = None,
        launcher: Optional[IScrapeJobLauncher] = None,
        notifier: Optional[INotificationChannel] = None,
    ):
        self.config = config or get_config()
        self.verifier = PaymentEventVerifier(
            self.config.stripe_webhook_secret,
            self.config.stripe_webhook_tolerance,
        )
        self.orchestrator = FulfillmentOrchestrator(
            staging=staging or get_staging_store(),
            ledger=ledger or get_ledger(),
            launcher=launcher or get_job_launcher(),
            notifier=notifier or get_notifier(),
        )

        self.router = WebhookRouter()
        self._register_handlers()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            agent="payment_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify, then dispatch by event type.
        Raises VerificationError before any side effect.
        """
        log = self._get_logger()
        try:
            event = self.verifier.verify(payload, signature)
        except VerificationError as e:
            log.warning("webhook_signature_invalid", error=str(e))
            raise

        event_type = event["type"]
        stripe_event_id = event.get("id", "unknown")
        correlation_id = stripe_event_id if stripe_event_id != "unknown" else str(uuid.uuid4())

        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, stripe_event_id=stripe_event_id)

        result = await self.router.route(event, correlation_id)

        response: dict[str, Any] = {"received": True, "event_type": event_type}
        if isinstance(result, FulfillmentResult):
            response["status"] = result.state.value
            if result.file_name:
                response["file_name"] = result.file_name
        elif result is None:
            response["status"] = "ignored"
        else:
            response["status"] = "logged"
        return response

    # =========================================================================
    # WEBHOOK HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        @self.router.register(CHECKOUT_COMPLETED)
        async def handle_checkout_completed(event: dict, correlation_id: str):
            session = (event.get("data") or {}).get("object") or {}
            return await self.orchestrator.fulfill(session, correlation_id)

        @self.router.register(PAYMENT_SUCCEEDED)
        async def handle_payment_succeeded(event: dict, correlation_id: str):
            intent = (event.get("data") or {}).get("object") or {}
            self._get_logger(correlation_id).info(
                "payment_intent_succeeded",
                payment_intent_id=intent.get("id"),
                amount=(intent.get("amount") or 0) / 100,
            )
            return {"status": "logged"}

        @self.router.register(PAYMENT_FAILED)
        async def handle_payment_failed(event: dict, correlation_id: str):
            intent = (event.get("data") or {}).get("object") or {}
            error = intent.get("last_payment_error") or {}
            self._get_logger(correlation_id).warning(
                "payment_failed",
                payment_intent_id=intent.get("id"),
                error_code=error.get("code"),
                decline_code=error.get("decline_code"),
            )
            return {"status": "logged"}


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Get or create the singleton payment gateway."""
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway
