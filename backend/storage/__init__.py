# storage/__init__.py
# ============================================================================
# APOLLO LEAD SCRAPER CHECKOUT — STORAGE MODULE
# ============================================================================
# Pending-order staging and the fulfillment idempotency ledger
# ============================================================================

from storage.order_store import (
    IOrderStagingStore,
    IIdempotencyLedger,
    FileOrderStagingStore,
    FileIdempotencyLedger,
    get_staging_store,
    get_ledger,
)

__all__ = [
    "IOrderStagingStore",
    "IIdempotencyLedger",
    "FileOrderStagingStore",
    "FileIdempotencyLedger",
    "get_staging_store",
    "get_ledger",
]
