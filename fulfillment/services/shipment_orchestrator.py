"""
ShipmentOrchestrator - order side of carrier operations

Every guard runs against the stored order before any carrier call. Carrier
calls happen with no open transaction on the order; their results are
written back in a fresh transaction that re-reads the row FOR UPDATE. A
carrier failure therefore leaves the order exactly as it was, and the
operation can be retried by an operator.

Tracking merges for one order are serialized by a per-order asyncio.Lock so
overlapping refreshes (manual + background sync) cannot interleave writes.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import (
    ConflictError,
    DuplicatePickupError,
    DuplicateShipmentError,
    NotFoundError,
)
from fulfillment.models import Order, OrderStatus, PaymentStatus
from fulfillment.models.order import TERMINAL_STATUSES, can_transition, parse_status
from fulfillment.services.fedex.client import CarrierClient, get_carrier_client, get_track_client
from fulfillment.services.fedex.pickup import PickupScheduler
from fulfillment.services.fedex.shipment_creator import ShipmentCreator
from fulfillment.services.fedex.status_mapper import StatusMapper
from fulfillment.services.fedex.tracking import TrackingPoller
from fulfillment.services.fedex.types import PickupWindow, ShipmentOptions, TrackingSnapshot

logger = logging.getLogger(__name__)

SHIPPABLE_STATUSES = {OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value}

_order_locks: Dict[int, asyncio.Lock] = {}
_order_lock_users: Dict[int, int] = {}
_shipments_in_flight = set()


@asynccontextmanager
async def order_lock(order_id: int):
    """
    Process-wide lock serializing tracking merges for one order.

    The registry entry is dropped when its last holder or waiter leaves.
    """
    lock = _order_locks.get(order_id)
    if lock is None:
        lock = _order_locks[order_id] = asyncio.Lock()
    _order_lock_users[order_id] = _order_lock_users.get(order_id, 0) + 1
    try:
        async with lock:
            yield lock
    finally:
        _order_lock_users[order_id] -= 1
        if not _order_lock_users[order_id]:
            del _order_lock_users[order_id]
            _order_locks.pop(order_id, None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        client: Optional[CarrierClient] = None,
        track_client: Optional[CarrierClient] = None,
    ):
        self.db = db
        client = client or get_carrier_client()
        self.creator = ShipmentCreator(client)
        self.pickups = PickupScheduler(client)
        self.poller = TrackingPoller(track_client or get_track_client())

    # ==================== Loading ====================

    async def _get_order(self, order_id: int, for_update: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if for_update:
            # Re-read the row, not the identity-map copy
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def _end_read(self) -> None:
        # Close the read transaction before talking to the carrier
        await self.db.commit()

    async def _save(self, order: Order, action: str) -> None:
        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to persist {action} for order {order.order_number}: {e}")
            raise

    # ==================== Payment ====================

    async def confirm_payment(self, order_id: int, payment_id: Optional[str] = None) -> Order:
        """Mark paid and promote pending -> confirmed. Idempotent."""
        order = await self._get_order(order_id, for_update=True)

        if order.payment_status == PaymentStatus.PAID.value:
            logger.info(f"Payment already confirmed for {order.order_number}")
            return order
        if order.order_status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise ConflictError(
                f"Order {order.order_number} is {order.order_status}",
                code="ORDER_NOT_PAYABLE",
            )

        now = _utcnow()
        order.payment_status = PaymentStatus.PAID.value
        if payment_id:
            order.payment_id = payment_id
        order.paid_at = now
        if order.order_status == OrderStatus.PENDING.value:
            order.set_status(OrderStatus.CONFIRMED, note="Payment confirmed", now=now)
        order.add_timeline_entry("Payment confirmed", status=order.order_status, timestamp=now)

        await self._save(order, "payment confirmation")
        logger.info(f"Payment confirmed for {order.order_number}")
        return order

    # ==================== Shipments ====================

    async def create_shipment(self, order_id: int, options: Optional[ShipmentOptions] = None) -> Order:
        order = await self._get_order(order_id)

        if order.tracking_number or order_id in _shipments_in_flight:
            raise DuplicateShipmentError(
                f"Shipment already exists for order {order.order_number}",
                details={"tracking_number": order.tracking_number},
            )
        if order.order_status not in SHIPPABLE_STATUSES:
            raise ConflictError(
                f"Order {order.order_number} cannot ship from status {order.order_status}",
                code="ORDER_NOT_SHIPPABLE",
                details={"order_status": order.order_status},
            )
        if order.payment_status != PaymentStatus.PAID.value:
            raise ConflictError(
                f"Order {order.order_number} is not paid",
                code="ORDER_NOT_PAID",
                details={"payment_status": order.payment_status},
            )

        options = options or ShipmentOptions()
        _shipments_in_flight.add(order_id)
        try:
            await self._end_read()
            result = await self.creator.create(order, options)

            order = await self._get_order(order_id, for_update=True)
            if order.tracking_number:
                # Lost a race with another process; void the label we just bought
                logger.error(
                    f"Order {order.order_number} already has tracking {order.tracking_number}; "
                    f"voiding duplicate label {result.tracking_number}"
                )
                await self.db.rollback()
                await self._void_label(result.tracking_number)
                raise DuplicateShipmentError(
                    f"Shipment already exists for order {order.order_number}",
                    details={"tracking_number": order.tracking_number},
                )

            now = _utcnow()
            order.tracking_number = result.tracking_number
            order.label_url = result.label_url
            order.carrier_shipment_id = result.shipment_id
            order.service_type = result.service_type
            order.package_weight = result.weight
            order.package_dimensions = result.dimensions
            order.insured_value = result.insured_value
            order.shipping_charge = {
                "amount": str(result.total_charge) if result.total_charge is not None else None,
                "currency": result.currency,
            }
            order.tracking_history = []
            order.last_tracking_update = None
            order.set_status(OrderStatus.SHIPPED, note=f"FedEx {result.service_type}", now=now)
            order.add_timeline_entry(
                f"Shipment created with FedEx. Tracking: {result.tracking_number}",
                status=OrderStatus.SHIPPED.value,
                timestamp=now,
            )
            await self._save(order, f"shipment {result.tracking_number}")
        finally:
            _shipments_in_flight.discard(order_id)

        logger.info(f"Shipment {order.tracking_number} recorded for {order.order_number}")
        return order

    async def _void_label(self, tracking_number: str) -> None:
        try:
            await self.creator.cancel(tracking_number)
        except Exception as e:
            logger.error(f"Failed to void duplicate label {tracking_number}: {e}")

    async def cancel_shipment(self, order_id: int) -> Order:
        """Void a label that has not moved yet and return the order to processing."""
        order = await self._get_order(order_id)

        if not order.tracking_number:
            raise ConflictError(f"Order {order.order_number} has no shipment", code="NO_SHIPMENT")
        if order.order_status != OrderStatus.SHIPPED.value or order.tracking_history:
            raise ConflictError(
                f"Shipment {order.tracking_number} is already in transit",
                code="SHIPMENT_IN_TRANSIT",
                details={"order_status": order.order_status},
            )

        tracking_number = order.tracking_number
        await self._end_read()
        await self.creator.cancel(tracking_number)

        order = await self._get_order(order_id, for_update=True)
        order.clear_carrier_shipment()
        order.set_status(OrderStatus.PROCESSING, note=f"Shipment {tracking_number} cancelled", override=True)
        order.add_timeline_entry(f"FedEx shipment {tracking_number} cancelled", status=OrderStatus.PROCESSING.value)
        await self._save(order, "shipment cancellation")
        return order

    # ==================== Tracking ====================

    async def refresh_tracking(self, order_id: int) -> Order:
        order = await self._get_order(order_id)
        if not order.tracking_number:
            raise ConflictError(f"Order {order.order_number} has no tracking number", code="NO_TRACKING_NUMBER")

        await self._end_read()
        snapshot = await self.poller.track(order.tracking_number)

        async with order_lock(order_id):
            order = await self._get_order(order_id, for_update=True)
            if order.tracking_number != snapshot.tracking_number:
                logger.info(f"Shipment on {order.order_number} changed during refresh; discarding scans")
                await self.db.rollback()
                return order
            self.apply_snapshot(order, snapshot)
            await self._save(order, "tracking refresh")
        return order

    def apply_snapshot(self, order: Order, snapshot: TrackingSnapshot, now: Optional[datetime] = None) -> int:
        """Merge a tracking snapshot into the order; returns scans added."""
        now = now or _utcnow()
        added = order.merge_tracking_events(e.to_history_entry() for e in snapshot.events)

        current = snapshot.current_status
        order.carrier_status = current.code
        order.estimated_delivery = snapshot.estimated_delivery_ends or snapshot.estimated_delivery_begins
        order.last_tracking_update = now

        mapped = StatusMapper.map(current.code)
        if mapped.value != order.order_status:
            if can_transition(order.order_status, mapped):
                order.set_status(mapped, note=f"FedEx: {current.description}", now=now)
                self._timeline_for_status(order, mapped, snapshot)
            else:
                logger.info(
                    f"Ignoring stale FedEx status {current.code} for {order.order_number} "
                    f"(order is {order.order_status})"
                )

        if order.actual_delivery is None and order.order_status == OrderStatus.DELIVERED.value:
            order.actual_delivery = snapshot.actual_delivery or current.timestamp or now

        if snapshot.has_exception:
            order.add_timeline_entry(
                f"Delivery exception: {current.description}",
                status=order.order_status,
                location=current.location,
                timestamp=current.timestamp,
            )

        if added:
            logger.info(f"Merged {added} FedEx scans into {order.order_number}")
        return added

    @staticmethod
    def _timeline_for_status(order: Order, status: OrderStatus, snapshot: TrackingSnapshot) -> None:
        current = snapshot.current_status
        if status == OrderStatus.OUT_FOR_DELIVERY:
            order.add_timeline_entry(
                "Out for delivery",
                status=status.value,
                location=current.location,
                timestamp=current.timestamp,
            )
        elif status == OrderStatus.DELIVERED:
            message = "Delivered"
            if snapshot.signed_by:
                message = f"Delivered - signed by {snapshot.signed_by}"
            order.add_timeline_entry(
                message,
                status=status.value,
                location=current.location,
                timestamp=snapshot.actual_delivery or current.timestamp,
            )

    # ==================== Pickups ====================

    async def schedule_pickup(self, order_id: int, window: PickupWindow) -> Order:
        order = await self._get_order(order_id)
        if not order.tracking_number:
            raise ConflictError(
                f"Order {order.order_number} needs a shipment before a pickup",
                code="NO_TRACKING_NUMBER",
            )
        if order.pickup_confirmation:
            raise DuplicatePickupError(
                f"Pickup already scheduled for order {order.order_number}",
                details={"pickup_confirmation": order.pickup_confirmation},
            )

        await self._end_read()
        confirmation = await self.pickups.schedule(order, window)

        order = await self._get_order(order_id, for_update=True)
        if order.pickup_confirmation:
            logger.error(
                f"Order {order.order_number} got a second pickup {confirmation} "
                f"(existing {order.pickup_confirmation})"
            )
            await self.db.rollback()
            raise DuplicatePickupError(
                f"Pickup already scheduled for order {order.order_number}",
                details={"pickup_confirmation": order.pickup_confirmation, "duplicate": confirmation},
            )

        order.pickup_confirmation = confirmation
        order.pickup_date = window.date
        order.pickup_location = window.location
        order.add_timeline_entry(
            f"FedEx pickup scheduled for {window.date}. Confirmation: {confirmation}",
            status=order.order_status,
        )
        await self._save(order, f"pickup {confirmation}")
        return order

    async def cancel_pickup(self, order_id: int) -> Order:
        order = await self._get_order(order_id)
        if not order.pickup_confirmation:
            raise ConflictError(f"Order {order.order_number} has no scheduled pickup", code="NO_PICKUP")

        confirmation = order.pickup_confirmation
        await self._end_read()
        await self.pickups.cancel(order)

        order = await self._get_order(order_id, for_update=True)
        order.pickup_confirmation = None
        order.pickup_date = None
        order.pickup_location = None
        order.add_timeline_entry(f"FedEx pickup {confirmation} cancelled", status=order.order_status)
        await self._save(order, "pickup cancellation")
        return order

    # ==================== Admin ====================

    async def add_timeline_entry(
        self,
        order_id: int,
        message: str,
        status: Optional[str] = None,
        location: Optional[str] = None,
        override: bool = False,
    ) -> Order:
        """
        Administrative timeline edit; an explicit status moves the order.

        Without `override`, an unpaid order cannot be moved into fulfillment;
        confirm_payment is the only path out of pending.
        """
        new_status = parse_status(status) if status else None
        order = await self._get_order(order_id, for_update=True)
        if new_status is not None:
            if (
                not override
                and order.payment_status != PaymentStatus.PAID.value
                and new_status != OrderStatus.PENDING
                and new_status not in TERMINAL_STATUSES
            ):
                raise ConflictError(
                    f"Order {order.order_number} is not paid",
                    code="ORDER_NOT_PAID",
                    details={"requested": new_status.value},
                )
            status = new_status.value
            order.set_status(new_status, note=message, override=override)
        order.add_timeline_entry(message, status=status or order.order_status, location=location)
        await self._save(order, "timeline entry")
        return order
