"""
Agent 1: Checkout Intake
========================
Validates a lead order, prices it, and opens a Stripe Checkout Session.

The full Apollo search URL routinely exceeds Stripe's 500-character metadata
limit, so the order is staged on disk under the new session id, and a chunked
copy rides along in the session metadata for when the staged file is gone.

pip install stripe pydantic structlog
"""

import random
import string
import time
from dataclasses import dataclass
from typing import Any, Optional

import stripe
import structlog

from pipeline.errors import CheckoutValidationError, StorageError
from pipeline.metadata_codec import MetadataEnvelope
from schemas.event_definitions import PendingOrder, utcnow
from service_config import ServiceConfig, get_config
from storage.order_store import IOrderStagingStore, get_staging_store

logger = structlog.get_logger().bind(agent="checkout_intake")

SERVICE_TAG = "apollo-scraper"

_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class CheckoutResult:
    url: str
    session_id: str
    amount_cents: int
    order_id: str


def generate_order_id() -> str:
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"apollo_{int(time.time() * 1000)}_{suffix}"


def as_lead_count(value: Any) -> Optional[int]:
    """Whole-number lead count from a JSON number (1000 or 1000.0); None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _stripe_error_status(error: stripe.StripeError) -> tuple[int, str]:
    """User-facing status and message for a Stripe failure."""
    if isinstance(error, stripe.CardError):
        return 400, "Your card was declined."
    if isinstance(error, stripe.RateLimitError):
        return 429, "Too many requests made to the API too quickly."
    if isinstance(error, stripe.InvalidRequestError):
        return 400, "Invalid parameters were supplied to Stripe."
    if isinstance(error, stripe.AuthenticationError):
        return 500, "Authentication with Stripe failed."
    if isinstance(error, stripe.APIConnectionError):
        return 500, "A network error occurred."
    if isinstance(error, stripe.APIError):
        return 500, "An error occurred with Stripe API."
    return 500, "An unexpected error occurred."


class CheckoutIntake:
    """Creates checkout sessions for lead orders."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        staging: Optional[IOrderStagingStore] = None,
    ):
        self.config = config or get_config()
        self.staging = staging or get_staging_store()

    # =========================================================================
    # VALIDATION & PRICING
    # =========================================================================

    def price(self, leads: int) -> int:
        """Order total in cents."""
        return round(leads * self.config.price_per_lead_cents)

    def validate(self, leads: Any, apollo_url: Optional[str], email: Optional[str]) -> int:
        """Returns the amount in cents, or raises CheckoutValidationError."""
        cfg = self.config
        min_dollars = cfg.min_amount_cents / 100
        max_dollars = cfg.max_amount_cents / 100

        leads = as_lead_count(leads)
        if leads is None or leads < cfg.min_leads:
            raise CheckoutValidationError(
                f"Minimum order is {cfg.min_leads:,} leads (${min_dollars:.2f})"
            )
        if leads > cfg.max_leads:
            raise CheckoutValidationError(
                f"Maximum order is {cfg.max_leads:,} leads (${max_dollars:,.0f})"
            )
        if not apollo_url or "apollo.io" not in apollo_url:
            raise CheckoutValidationError("Please provide a valid Apollo.io search URL")
        if not email or "@" not in email:
            raise CheckoutValidationError("Please provide a valid email address")

        amount = self.price(leads)
        if amount < cfg.min_amount_cents:
            raise CheckoutValidationError(f"Minimum order amount is ${min_dollars:.2f}")
        if amount > cfg.max_amount_cents:
            raise CheckoutValidationError(
                f"Maximum order is {cfg.max_leads:,} leads (${max_dollars:,.0f})"
            )
        return amount

    def build_envelope(self, order: PendingOrder, order_id: str) -> MetadataEnvelope:
        envelope = MetadataEnvelope.build(
            url=order.destination_url,
            email=order.contact_address,
            leads=order.requested_volume,
            clean_output=order.output_cleaning_requested,
            timestamp=order.created_at.isoformat(),
            order_id=order_id,
            max_field_length=self.config.metadata_field_length,
        )
        # +1 for the service tag added to the payment intent copy
        if len(envelope) + 1 > self.config.metadata_max_keys:
            raise CheckoutValidationError("Apollo search URL is too long to process")
        return envelope

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    async def create_checkout(
        self,
        *,
        leads: Any,
        apollo_url: Optional[str],
        email: Optional[str],
        clean_output: bool = False,
        base_url: Optional[str] = None,
    ) -> CheckoutResult:
        amount = self.validate(leads, apollo_url, email)
        leads = as_lead_count(leads)

        order = PendingOrder(
            destination_url=apollo_url,
            contact_address=email,
            requested_volume=leads,
            output_cleaning_requested=bool(clean_output),
            created_at=utcnow(),
        )
        order_id = generate_order_id()
        envelope = self.build_envelope(order, order_id)
        metadata = envelope.to_dict()

        base_url = (base_url or self.config.public_base_url or "http://localhost:3000").rstrip("/")

        logger.info("checkout_initiated",
                    order_id=order_id,
                    leads=leads,
                    amount=amount,
                    url_length=len(apollo_url),
                    chunk_count=metadata[MetadataEnvelope.CHUNK_COUNT])

        try:
            session = stripe.checkout.Session.create(
                api_key=self.config.stripe_secret_key,
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": "Apollo Scraper Leads",
                            "description": f"Purchase of {leads:,} leads at $0.005 per lead",
                        },
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                mode="payment",
                success_url=f"{base_url}/lead-scraper/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base_url}/lead-scraper/payment-cancelled",
                customer_email=email,
                metadata=metadata,
                payment_intent_data={"metadata": {**metadata, "service": SERVICE_TAG}},
                billing_address_collection="auto",
                phone_number_collection={"enabled": True},
                custom_text={
                    "submit": {
                        "message": "Your leads will be processed and delivered to your "
                                   "email address within minutes after payment."
                    }
                },
            )
        except stripe.StripeError as e:
            status_code, message = _stripe_error_status(e)
            logger.error("checkout_failed",
                         order_id=order_id,
                         error=str(e),
                         error_type=type(e).__name__)
            raise CheckoutValidationError(message, status_code=status_code) from e

        try:
            await self.staging.put(session.id, order)
        except StorageError as e:
            # The metadata envelope still carries the full order
            logger.error("order_staging_failed", session_id=session.id, error=str(e))

        logger.info("checkout_created", stripe_session_id=session.id, order_id=order_id)
        return CheckoutResult(
            url=session.url,
            session_id=session.id,
            amount_cents=amount,
            order_id=order_id,
        )
