"""
Order Sweeper
=============
Background task that removes pending orders whose payment never arrived
(abandoned checkouts) and claim markers left behind by crashed deliveries.

Fulfilled-session markers in the ledger are never swept.
"""

import asyncio
from datetime import timedelta
from typing import Optional

import structlog

from pipeline.errors import StorageError
from service_config import ServiceConfig, get_config
from storage.order_store import IIdempotencyLedger, IOrderStagingStore, get_ledger, get_staging_store

logger = structlog.get_logger().bind(component="order_sweeper")


async def sweep_once(
    staging: IOrderStagingStore,
    ledger: IIdempotencyLedger,
    order_ttl: timedelta,
) -> dict:
    """Run one sweep. Returns counts of removed orders and claims."""
    orders_removed = await staging.purge_expired(order_ttl)
    claims_removed = await ledger.purge_stale_claims()

    if orders_removed or claims_removed:
        logger.warning("sweep_removed",
                       orders=orders_removed,
                       claims=claims_removed,
                       order_ttl_hours=order_ttl.total_seconds() / 3600)
    return {"orders": orders_removed, "claims": claims_removed}


async def sweeper_loop(
    config: Optional[ServiceConfig] = None,
    staging: Optional[IOrderStagingStore] = None,
    ledger: Optional[IIdempotencyLedger] = None,
):
    """Runs sweep_once every SWEEP_INTERVAL_SECONDS until cancelled."""
    config = config or get_config()
    staging = staging or get_staging_store()
    ledger = ledger or get_ledger()
    order_ttl = timedelta(hours=config.order_ttl_hours)

    logger.info("sweeper_started",
                interval=config.sweep_interval_seconds,
                order_ttl_hours=config.order_ttl_hours,
                enabled=config.sweep_enabled)

    if not config.sweep_enabled:
        logger.info("sweeper_disabled")
        return

    while True:
        try:
            await sweep_once(staging, ledger, order_ttl)
        except StorageError as e:
            logger.error("sweep_failed", error=str(e))

        await asyncio.sleep(config.sweep_interval_seconds)
