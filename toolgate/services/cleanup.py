"""
Expired State Sweeper.

Pending authorizations, authorization codes, refresh tokens and cached
balances all carry a TTL. Reads already ignore expired entries; this pass
reclaims the storage so expired rows do not accumulate. When given the
payment gate it also reconciles payments left `processing` by a transfer
whose outcome the ledger never reported.
"""

import asyncio

from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics
from toolgate.services.payment_gate import PaymentGate
from toolgate.stores.kv import KeyValueStore

logger = get_logger(__name__)


class ExpiredStateSweeper:
    """Periodic TTL cleanup for the key-value store."""

    def __init__(self, store: KeyValueStore, payments: PaymentGate | None = None) -> None:
        self.store = store
        self.payments = payments

    async def run_once(self) -> int:
        purged = await self.store.purge_expired()
        if purged:
            metrics.expired_entries_purged_total.inc(purged)
            logger.info("expired_entries_purged", count=purged)
        if self.payments is not None:
            reconciled = await self.payments.reconcile_stale()
            if reconciled:
                logger.info("processing_payments_reconciled", count=reconciled)
        return purged

    async def run_forever(self, interval_seconds: float) -> None:
        """Sweep every interval_seconds until cancelled."""
        logger.info("expired_state_sweeper_started", interval_seconds=interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                # Keep sweeping; the next pass retries whatever this one missed.
                metrics.record_error(type(e).__name__, "purge_expired")
                logger.error("expired_state_sweep_failed", error=str(e), exc_info=True)
            await asyncio.sleep(interval_seconds)
