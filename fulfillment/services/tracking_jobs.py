"""
Background tracking sync

Polls FedEx for every shipped order whose tracking is stale and merges the
scans through ShipmentOrchestrator. Each order is refreshed in its own
session so one failure never aborts the batch.
"""
import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, and_, or_

from fulfillment.core.config import settings
from fulfillment.core.database import get_db_session
from fulfillment.core.exceptions import CarrierError
from fulfillment.models import Order, OrderStatus
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator

logger = logging.getLogger(__name__)

# Statuses that still receive carrier scans
ACTIVE_TRACKING_STATUSES = [
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
]

FAILURE_ALERT_THRESHOLD = 3


class TrackingSyncRunner:
    """
    Runs the tracking sync loop.
    """

    def __init__(self, session_factory=get_db_session, client=None, track_client=None):
        self._session_factory = session_factory
        self._client = client
        self._track_client = track_client
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._consecutive_failures: Dict[int, int] = {}

    async def start(self):
        if self._running:
            logger.warning("Tracking sync already running")
            return

        self._running = True
        logger.info("Starting tracking sync job")
        self._tasks = [asyncio.create_task(self._tracking_sync_loop())]

    async def stop(self):
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Tracking sync job stopped")

    async def _tracking_sync_loop(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Tracking sync job error: {e}")

            await asyncio.sleep(settings.TRACKING_SYNC_INTERVAL_SECONDS)

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run a single sync cycle; returns updated/failed counts."""
        async with self._session_factory() as db:
            order_ids = await self._get_orders_for_tracking(db, now)

        if not order_ids:
            logger.debug("No orders need tracking update")
            return {"updated": 0, "failed": 0}

        logger.info(f"Syncing tracking for {len(order_ids)} orders")
        results = await asyncio.gather(
            *(self._refresh_order(order_id) for order_id in order_ids),
            return_exceptions=True,
        )

        updated = 0
        failed = 0
        for order_id, result in zip(order_ids, results):
            if isinstance(result, BaseException):
                failed += 1
                self._handle_tracking_failure(order_id, result)
            else:
                updated += 1
                self._consecutive_failures.pop(order_id, None)

        logger.info(f"Tracking sync complete: {updated} updated, {failed} failed")
        return {"updated": updated, "failed": failed}

    async def _get_orders_for_tracking(self, db, now: Optional[datetime] = None) -> List[int]:
        now = now or datetime.now(timezone.utc)
        stale_cutoff = now - timedelta(minutes=settings.TRACKING_STALE_MINUTES)

        result = await db.execute(
            select(Order.id)
            .where(
                and_(
                    Order.order_status.in_(ACTIVE_TRACKING_STATUSES),
                    Order.tracking_number.isnot(None),
                    or_(
                        Order.last_tracking_update.is_(None),
                        Order.last_tracking_update < stale_cutoff,
                    ),
                )
            )
            .order_by(Order.last_tracking_update.asc().nullsfirst())
            .limit(settings.TRACKING_SYNC_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def _refresh_order(self, order_id: int) -> None:
        async with self._session_factory() as db:
            orchestrator = ShipmentOrchestrator(db, client=self._client, track_client=self._track_client)
            await orchestrator.refresh_tracking(order_id)

    def _handle_tracking_failure(self, order_id: int, error: BaseException):
        self._consecutive_failures[order_id] = self._consecutive_failures.get(order_id, 0) + 1
        failures = self._consecutive_failures[order_id]

        if isinstance(error, CarrierError):
            logger.warning(f"Tracking update failed for order {order_id}: {error.code} {error.message}")
        else:
            logger.error(f"Tracking update error for order {order_id}: {error}")

        if failures >= FAILURE_ALERT_THRESHOLD:
            logger.error(f"Tracking sync failed {failures} times in a row for order {order_id}")


tracking_sync_runner = TrackingSyncRunner()
