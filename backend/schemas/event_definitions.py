# schemas/event_definitions.py
# ============================================================================
# APOLLO LEAD SCRAPER CHECKOUT — ORDER & FULFILLMENT SCHEMAS
# ============================================================================
# Purpose: Type-safe models shared by checkout intake, the payment gateway
# and the delivery agent.
#
# Wire names (apolloUrl, leads, cleanOutput, ...) are kept as field aliases
# because they are what the staging files, the Stripe metadata envelope, the
# Apify actor input and the email webhook all speak.
# ============================================================================

import secrets
import string
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


FILE_NAME_ALPHABET = string.ascii_uppercase + string.digits
FILE_NAME_LENGTH = 6


def generate_file_name(length: int = FILE_NAME_LENGTH) -> str:
    """Random export file-name token, e.g. 'Q7K2ZD'."""
    return "".join(secrets.choice(FILE_NAME_ALPHABET) for _ in range(length))


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class FulfillmentState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    DEDUPLICATED = "deduplicated"
    RECOVERING = "recovering"
    RECOVERED = "recovered"
    TRIGGERING = "triggering"
    NOTIFYING = "notifying"
    FINALIZED = "finalized"
    ERRORED = "errored"


class RecoverySource(str, Enum):
    STAGING = "staging"
    METADATA = "metadata"
    METADATA_TRUNCATED = "metadata_truncated"


# ============================================================================
# SECTION 2: ORDERS
# ============================================================================

class PendingOrder(BaseModel):
    """Full order details staged between checkout and payment confirmation."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    destination_url: str = Field(alias="apolloUrl", min_length=1)
    contact_address: str = Field(alias="email")
    requested_volume: int = Field(alias="leads", gt=0)
    output_cleaning_requested: bool = Field(default=False, alias="cleanOutput")
    created_at: datetime = Field(default_factory=utcnow, alias="timestamp")

    @field_validator("contact_address")
    @classmethod
    def _require_at_sign(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("contact address must contain '@'")
        return v

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FulfillmentRecord(BaseModel):
    """Ledger entry: a session whose payment has already been fulfilled."""
    session_id: str = Field(alias="sessionId")
    processed_at: datetime = Field(default_factory=utcnow, alias="processedAt")

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# SECTION 3: OUTBOUND PAYLOADS
# ============================================================================

class ScrapeJobRequest(BaseModel):
    """Input for a single Apify actor run."""
    model_config = ConfigDict(populate_by_name=True)

    destination_url: str = Field(alias="url")
    requested_volume: int = Field(alias="totalRecords", gt=0)
    file_name: str = Field(alias="fileName")
    contact_address: str = Field(alias="email")
    output_cleaning_requested: bool = Field(default=False, alias="cleanOutput")

    @classmethod
    def for_order(cls, order: PendingOrder, file_name: str) -> "ScrapeJobRequest":
        return cls(
            destination_url=order.destination_url,
            requested_volume=order.requested_volume,
            file_name=file_name,
            contact_address=order.contact_address,
            output_cleaning_requested=order.output_cleaning_requested,
        )

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class NotificationPayload(BaseModel):
    """Body posted to the email webhook once a scrape has been started."""
    model_config = ConfigDict(populate_by_name=True)

    contact_address: str = Field(alias="email")
    requested_volume: int = Field(alias="leadCount")
    destination_url: str = Field(alias="apolloUrl")
    timestamp: datetime = Field(default_factory=utcnow)
    service: str = "apollo-scraper"
    file_name: str = Field(alias="fileName")
    source: str = "stripe-payment"

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FailureReport(BaseModel):
    """Operator-facing report sent to the notification channel."""
    model_config = ConfigDict(populate_by_name=True)

    event: str = "fulfillment_failed"
    session_id: str = Field(alias="sessionId")
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)
    service: str = "apollo-scraper"
    source: str = "stripe-payment"

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# SECTION 4: RESULTS
# ============================================================================

class FulfillmentResult(BaseModel):
    """Outcome of processing one payment-completed event."""
    session_id: str
    state: FulfillmentState
    run_id: Optional[str] = None
    file_name: Optional[str] = None
    recovered_from: Optional[RecoverySource] = None
    notified: bool = False
    error: Optional[str] = None
