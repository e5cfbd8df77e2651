"""
Fulfillment Errors
==================
Exception taxonomy for the checkout-to-delivery pipeline.

Once a payment succeeds, every failure here is operator-visible only; the
payer's error surface is limited to CheckoutValidationError.
"""

from typing import Optional


class FulfillmentError(Exception):
    """Base class for pipeline errors. Carries optional structured context."""

    def __init__(self, message: str, *, session_id: Optional[str] = None, context: Optional[dict] = None):
        super().__init__(message)
        self.session_id = session_id
        self.context = context or {}


class VerificationError(FulfillmentError):
    """Payment event signature missing, invalid, or body malformed."""


class DecodeError(FulfillmentError):
    """Chunked metadata could not be reconstructed losslessly."""


class RecoveryError(FulfillmentError):
    """Neither the staging store nor the metadata envelope yielded the order."""


class JobTriggerError(FulfillmentError):
    """The external scraping job could not be started."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class NotificationError(FulfillmentError):
    """Notification channel call failed. Never fatal."""


class StorageError(FulfillmentError):
    """Staging store or ledger read/write failure."""


class ResultDeliveryError(FulfillmentError):
    """Scraped results could not be forwarded downstream."""


class CheckoutValidationError(ValueError):
    """User-facing checkout validation failure."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
