"""
Courier booking, tracking and dispatch orchestration.

CourierClient does the HTTP work; this service owns the database side:
booking attempts, the retry queue, dispatch rows and order updates.
"""
import asyncio
import dataclasses
import logging
import re
import uuid
from datetime import timedelta
from typing import Optional, List, Dict, Any, Tuple

import httpx
from sqlalchemy import select, func, and_, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import CourierError, NotFoundError, OrderStatusError, ServiceError
from app.core.utils import utcnow
from app.models.dispatch import (
    Courier,
    CourierAuthType,
    Dispatch,
    DispatchStatus,
    CourierBookingAttempt,
    CourierBookingQueue,
    BookingAttemptStatus,
    BookingQueueStatus,
)
from app.models.order import Order, OrderStatus
from app.services.activity_log_service import ActivityLogService
from app.services.courier_clients import (
    CourierClient,
    BookingAddress,
    BookingItem,
    BookingRequest,
    BookingResult,
)
from app.services.order_status_service import OrderStatusService
from app.services.returns_service import validate_scan_entry, order_number_clause


logger = logging.getLogger(__name__)


COURIER_TAG_PREFIX = "Ecomnet - "
ORDER_UPDATE_BACKOFF_SECONDS = (1, 2, 4)
BOOKABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.BOOKED.value)
SCAN_TOKEN = re.compile(r"[A-Za-z0-9\-#]+")


def courier_tag(courier_name: str) -> str:
    return f"{COURIER_TAG_PREFIX}Assigned to {courier_name}"


def replace_courier_tag(tags: Optional[List[str]], courier_name: Optional[str]) -> List[str]:
    """Drop previous courier assignment tags and add the new one."""
    kept = [t for t in (tags or []) if not t.startswith(COURIER_TAG_PREFIX)]
    if courier_name:
        kept.append(courier_tag(courier_name))
    return kept


def as_courier_error(error: ServiceError, courier_code: str) -> CourierError:
    if isinstance(error, CourierError):
        return error
    return CourierError(
        error.message,
        error_code=error.error_code,
        status_code=error.status_code,
        details=error.details,
        courier=courier_code,
    )


def parse_scan_token(raw: str) -> str:
    """Barcode scanners can append noise; keep the first alphanumeric token."""
    match = SCAN_TOKEN.search(raw or "")
    return match.group(0).lstrip("#") if match else ""


class CourierService:
    """Courier registry, bookings and shipment tracking."""

    def __init__(self, db: AsyncSession, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self.transport = transport
        self.activity = ActivityLogService(db)
        self.status_service = OrderStatusService(db)

    def client_for(self, courier: Courier) -> CourierClient:
        return CourierClient(courier, transport=self.transport)

    # ==================== REGISTRY ====================

    async def list_couriers(self, active_only: bool = False) -> List[Courier]:
        stmt = select(Courier)
        if active_only:
            stmt = stmt.where(Courier.is_active == True)
        result = await self.db.execute(stmt.order_by(Courier.name.asc()))
        return list(result.scalars().all())

    async def get_courier(self, courier_id: uuid.UUID) -> Courier:
        courier = await self.db.get(Courier, courier_id)
        if not courier:
            raise NotFoundError("Courier not found", error_code="COURIER_NOT_FOUND")
        return courier

    async def get_courier_by_code(self, code: str) -> Optional[Courier]:
        result = await self.db.execute(
            select(Courier).where(func.upper(Courier.code) == code.upper()).limit(1)
        )
        return result.scalar_one_or_none()

    async def create_courier(self, data: Dict[str, Any], user_id: Optional[uuid.UUID] = None) -> Courier:
        code = data["code"].upper()
        if await self.get_courier_by_code(code):
            raise CourierError(f"Courier with code {code} already exists", error_code="COURIER_EXISTS", status_code=409)

        courier = Courier(**{**data, "code": code})
        self.db.add(courier)
        await self.db.flush()
        await self.activity.log("courier_created", "courier", courier.id, user_id, {"code": code})
        return courier

    async def update_courier(self, courier_id: uuid.UUID, data: Dict[str, Any], user_id: Optional[uuid.UUID] = None) -> Courier:
        courier = await self.get_courier(courier_id)
        if "code" in data and data["code"]:
            data["code"] = data["code"].upper()
        for field, value in data.items():
            setattr(courier, field, value)
        courier.updated_at = utcnow()
        await self.db.flush()
        await self.activity.log("courier_updated", "courier", courier.id, user_id, {"fields": sorted(data.keys())})
        return courier

    async def delete_courier(self, courier_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> None:
        """Soft delete; historical dispatches keep pointing at the row."""
        courier = await self.get_courier(courier_id)
        courier.is_active = False
        courier.updated_at = utcnow()
        await self.db.flush()
        await self.activity.log("courier_deactivated", "courier", courier.id, user_id, {"code": courier.code})

    # ==================== BOOKING ====================

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        order = (await self.db.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")
        return order

    def _ensure_bookable(self, order: Order, courier: Courier) -> None:
        """Checked before the courier is called so no parcel is booked for a closed order."""
        if order.status not in BOOKABLE_STATUSES:
            raise CourierError(
                f"Cannot book a {order.status} order",
                error_code="ORDER_NOT_BOOKABLE",
                status_code=409,
                details={"order_number": order.order_number, "current_status": order.status},
                courier=courier.code,
            )

    async def _record_attempt(
        self,
        order: Order,
        courier: Courier,
        status: str,
        request: BookingRequest,
        user_id: Optional[uuid.UUID] = None,
        result: Optional[BookingResult] = None,
        error: Optional[CourierError] = None,
        attempt_number: int = 1,
    ) -> CourierBookingAttempt:
        attempt = CourierBookingAttempt(
            order_id=order.id,
            courier_id=courier.id,
            courier_code=courier.code,
            booking_request=dataclasses.asdict(request),
            booking_response=(result.raw_response if result else (error.details if error else None)),
            status=status,
            tracking_id=result.tracking_id if result else None,
            label_url=result.label_url if result else None,
            error_code=error.error_code if error else None,
            error_message=error.message if error else None,
            user_id=user_id,
            attempt_number=attempt_number,
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def _queue_retry(self, order: Order, courier: Courier, error: CourierError) -> CourierBookingQueue:
        existing = (await self.db.execute(
            select(CourierBookingQueue).where(
                CourierBookingQueue.order_id == order.id,
                CourierBookingQueue.courier_id == courier.id,
                CourierBookingQueue.status.in_([BookingQueueStatus.PENDING.value, BookingQueueStatus.RETRYING.value]),
            ).limit(1)
        )).scalar_one_or_none()
        if existing:
            existing.last_error_code = error.error_code
            existing.last_error_message = error.message
            await self.db.flush()
            return existing

        item = CourierBookingQueue(
            order_id=order.id,
            courier_id=courier.id,
            retry_count=0,
            max_retries=settings.COURIER_QUEUE_MAX_RETRIES,
            next_retry_at=utcnow() + timedelta(minutes=settings.COURIER_RETRY_BACKOFF_MINUTES[0]),
            last_error_code=error.error_code,
            last_error_message=error.message,
            status=BookingQueueStatus.PENDING.value,
        )
        self.db.add(item)
        await self.db.flush()
        logger.info("Queued booking retry for order %s with %s", order.order_number, courier.code)
        return item

    async def _mark_order_booked(
        self,
        order: Order,
        courier: Courier,
        tracking_id: str,
        user_id: Optional[uuid.UUID],
    ) -> None:
        """Apply the booking to the order inside a savepoint, retrying transient DB errors."""
        last_error: Optional[SQLAlchemyError] = None
        for attempt, backoff in enumerate(ORDER_UPDATE_BACKOFF_SECONDS, start=1):
            try:
                async with self.db.begin_nested():
                    if order.status != OrderStatus.BOOKED.value:
                        await self.status_service.update_order_status(
                            order.id,
                            OrderStatus.BOOKED.value,
                            user_id=user_id,
                            courier=courier.code,
                            tracking_id=tracking_id,
                        )
                    order.tracking_id = tracking_id
                    order.courier = courier.code
                    order.booked_at = utcnow()
                    order.booked_by = user_id
                    order.tags = replace_courier_tag(order.tags, courier.name)
                    order.updated_at = utcnow()
                return
            except SQLAlchemyError as e:
                last_error = e
                logger.warning("Order update after booking failed (attempt %d): %s", attempt, e)
                if attempt < len(ORDER_UPDATE_BACKOFF_SECONDS):
                    await asyncio.sleep(backoff)

        raise CourierError(
            "Courier booked but the order could not be updated",
            error_code="ORDER_UPDATE_FAILED",
            status_code=500,
            details={"tracking_id": tracking_id, "error": str(last_error)},
            courier=courier.code,
        )

    async def _upsert_dispatch(
        self,
        order: Order,
        courier: Courier,
        result: BookingResult,
        user_id: Optional[uuid.UUID],
    ) -> Dispatch:
        dispatch = (await self.db.execute(
            select(Dispatch).where(Dispatch.order_id == order.id).limit(1)
        )).scalar_one_or_none()
        if not dispatch:
            dispatch = Dispatch(order_id=order.id)
            self.db.add(dispatch)

        dispatch.courier_id = courier.id
        dispatch.courier = courier.code
        dispatch.tracking_id = result.tracking_id
        dispatch.status = DispatchStatus.BOOKED.value
        dispatch.dispatch_date = utcnow()
        dispatch.dispatched_by = user_id
        dispatch.courier_booking_id = result.booking_id
        dispatch.courier_response = result.raw_response
        dispatch.label_url = result.label_url
        dispatch.label_data = result.label_data
        dispatch.label_format = result.label_format
        await self.db.flush()
        return dispatch

    async def _perform_booking(
        self,
        order: Order,
        courier: Courier,
        request: BookingRequest,
        user_id: Optional[uuid.UUID],
        attempt_number: int = 1,
    ) -> Dict[str, Any]:
        """Call the courier and apply a successful booking. Raises CourierError on failure."""
        result = await self.client_for(courier).book(request)

        if not result.has_label:
            # Tracking id exists at the courier but without a label the parcel cannot ship
            await self._record_attempt(
                order, courier, BookingAttemptStatus.PARTIAL.value, request, user_id,
                result=result,
                error=CourierError("Courier booking succeeded but no label was returned", error_code="BOOKING_NO_LABEL"),
                attempt_number=attempt_number,
            )
            logger.warning("Booking %s for order %s returned no label", result.tracking_id, order.order_number)
            return {
                "success": False,
                "error": "Courier booking succeeded but no label was returned",
                "error_code": "BOOKING_NO_LABEL",
                "tracking_id": result.tracking_id,
                "courier": courier.code,
            }

        await self._mark_order_booked(order, courier, result.tracking_id, user_id)
        dispatch = await self._upsert_dispatch(order, courier, result, user_id)
        await self._record_attempt(
            order, courier, BookingAttemptStatus.SUCCESS.value, request, user_id,
            result=result, attempt_number=attempt_number,
        )
        await self.activity.log(
            action="order_dispatched",
            entity_type="order",
            entity_id=order.id,
            user_id=user_id,
            details={
                "courier": courier.code,
                "tracking_id": result.tracking_id,
                "order_number": order.order_number,
                "mock": result.is_mock,
            },
        )

        if order.shopify_order_id:
            from app.services.sync_queue_service import SyncQueueService
            await SyncQueueService(self.db).enqueue_order_update(order)

        logger.info("Booked order %s with %s: %s", order.order_number, courier.code, result.tracking_id)
        return {
            "success": True,
            "tracking_id": result.tracking_id,
            "label_url": result.label_url,
            "label_data": result.label_data,
            "label_format": result.label_format,
            "dispatch_id": str(dispatch.id),
            "courier": courier.code,
            "is_mock": result.is_mock,
        }

    async def book_courier(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        pickup_address: BookingAddress,
        delivery_address: BookingAddress,
        weight: float = 1.0,
        pieces: int = 1,
        cod_amount: float = 0,
        special_instructions: str = "",
        items: Optional[List[BookingItem]] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Book an order with a courier.

        Failures come back as ``{success: False, error, error_code, retryable,
        status_code}`` so the failed attempt (and retry queue entry) commit
        with the request instead of being rolled back.
        """
        order = await self._get_order(order_id)
        courier = await self.get_courier(courier_id)
        if not courier.is_active:
            raise CourierError(f"Courier {courier.code} is inactive", error_code="COURIER_INACTIVE", courier=courier.code)
        self._ensure_bookable(order, courier)

        request = BookingRequest(
            order_number=order.order_number,
            pickup_address=pickup_address,
            delivery_address=delivery_address,
            weight=weight,
            pieces=pieces,
            cod_amount=cod_amount,
            special_instructions=special_instructions,
            items=items or [],
        )

        try:
            async with self.db.begin_nested():
                return await self._perform_booking(order, courier, request, user_id)
        except ServiceError as exc:
            e = as_courier_error(exc, courier.code)
            # the savepoint rollback expires rows it touched
            await self.db.refresh(order)
            logger.error("Booking order %s with %s failed [%s]: %s", order.order_number, courier.code, e.error_code, e.message)
            await self._record_attempt(
                order, courier, BookingAttemptStatus.FAILED.value, request, user_id, error=e,
            )
            queued = False
            if e.is_retryable:
                await self._queue_retry(order, courier, e)
                queued = True
            return {
                "success": False,
                "error": e.message,
                "error_code": e.error_code,
                "details": e.details,
                "retryable": e.is_retryable,
                "queued_for_retry": queued,
                "status_code": e.status_code,
                "courier": courier.code,
            }

    def _request_from_order(self, order: Order) -> BookingRequest:
        items = [BookingItem(name=i.item_name, quantity=i.quantity) for i in order.order_items]
        pieces = sum(i.quantity for i in items) or 1
        return BookingRequest(
            order_number=order.order_number,
            pickup_address=BookingAddress(
                name=settings.PICKUP_NAME,
                phone=settings.PICKUP_PHONE,
                address=settings.PICKUP_ADDRESS,
                city=settings.PICKUP_CITY,
            ),
            delivery_address=BookingAddress(
                name=order.customer_name,
                phone=order.customer_phone or "",
                address=order.customer_address or "",
                city=order.city or "",
            ),
            weight=float(pieces),
            pieces=pieces,
            cod_amount=float(order.total_amount or 0),
            items=items,
        )

    async def retry_failed_bookings(self) -> Dict[str, Any]:
        """Re-run due bookings from the retry queue."""
        now = utcnow()
        result = await self.db.execute(
            select(CourierBookingQueue).where(
                CourierBookingQueue.status.in_([BookingQueueStatus.PENDING.value, BookingQueueStatus.RETRYING.value]),
                CourierBookingQueue.next_retry_at <= now,
                CourierBookingQueue.retry_count < CourierBookingQueue.max_retries,
            ).order_by(CourierBookingQueue.next_retry_at.asc())
        )
        items = list(result.scalars().all())

        succeeded = 0
        failed = 0
        backoff = settings.COURIER_RETRY_BACKOFF_MINUTES

        for item in items:
            item.status = BookingQueueStatus.RETRYING.value
            item.retry_count += 1
            order = (await self.db.execute(select(Order).where(Order.id == item.order_id))).scalar_one_or_none()
            courier = await self.db.get(Courier, item.courier_id)
            if not order or not courier:
                item.status = BookingQueueStatus.FAILED.value
                item.last_error_code = "ORDER_NOT_FOUND" if not order else "COURIER_NOT_FOUND"
                item.last_error_message = "Referenced record no longer exists"
                failed += 1
                continue

            if order.status not in BOOKABLE_STATUSES:
                item.status = BookingQueueStatus.FAILED.value
                item.last_error_code = "ORDER_NOT_BOOKABLE"
                item.last_error_message = f"Order is {order.status}"
                failed += 1
                logger.info("Dropped booking retry for %s order %s", order.status, order.order_number)
                continue

            request = self._request_from_order(order)
            try:
                # one savepoint per item so a failure never undoes earlier bookings in the batch
                async with self.db.begin_nested():
                    outcome = await self._perform_booking(order, courier, request, None, attempt_number=item.retry_count + 1)
                if outcome["success"]:
                    item.status = BookingQueueStatus.SUCCESS.value
                    succeeded += 1
                    continue
                error = CourierError(outcome["error"], error_code=outcome["error_code"], courier=courier.code)
            except ServiceError as exc:
                error = as_courier_error(exc, courier.code)
                await self.db.refresh(order)
                await self._record_attempt(
                    order, courier, BookingAttemptStatus.FAILED.value, request, error=error,
                    attempt_number=item.retry_count + 1,
                )

            item.last_error_code = error.error_code
            item.last_error_message = error.message
            if item.retry_count >= item.max_retries or not error.is_retryable:
                item.status = BookingQueueStatus.FAILED.value
            else:
                item.status = BookingQueueStatus.PENDING.value
                delay = backoff[min(item.retry_count, len(backoff) - 1)]
                item.next_retry_at = utcnow() + timedelta(minutes=delay)
            failed += 1
            logger.warning("Booking retry for order %s failed [%s]", order.order_number, error.error_code)

        await self.db.flush()
        logger.info("Booking retry run: %d succeeded, %d failed of %d", succeeded, failed, len(items))
        return {"processed": len(items), "succeeded": succeeded, "failed": failed}

    async def bulk_book(
        self,
        order_ids: List[uuid.UUID],
        courier_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Book several orders with one courier using the configured pickup
        address and the order's own delivery details.

        Each order is booked on its own; one failure does not stop the rest.
        """
        courier = await self.get_courier(courier_id)
        if not courier.is_active:
            raise CourierError(f"Courier {courier.code} is inactive", error_code="COURIER_INACTIVE", courier=courier.code)

        results: List[Dict[str, Any]] = []
        for order_id in dict.fromkeys(order_ids):
            entry: Dict[str, Any] = {"order_id": str(order_id), "order_number": None}
            try:
                order = await self._get_order(order_id)
                entry["order_number"] = order.order_number
                request = self._request_from_order(order)
                outcome = await self.book_courier(
                    order_id=order.id,
                    courier_id=courier.id,
                    pickup_address=request.pickup_address,
                    delivery_address=request.delivery_address,
                    weight=request.weight,
                    pieces=request.pieces,
                    cod_amount=request.cod_amount,
                    items=request.items,
                    user_id=user_id,
                )
            except ServiceError as e:
                outcome = {"success": False, "error": e.message, "error_code": e.error_code}
            entry.update({
                "success": outcome["success"],
                "tracking_id": outcome.get("tracking_id"),
                "label_url": outcome.get("label_url"),
                "label_format": outcome.get("label_format"),
                "error": outcome.get("error"),
                "error_code": outcome.get("error_code"),
                "queued_for_retry": outcome.get("queued_for_retry"),
            })
            results.append(entry)

        success_count = sum(1 for r in results if r["success"])
        failed_count = len(results) - success_count
        logger.info("Bulk booking with %s: %d booked, %d failed", courier.code, success_count, failed_count)
        return {
            "success": failed_count == 0,
            "total": len(results),
            "success_count": success_count,
            "failed_count": failed_count,
            "results": results,
        }

    # ==================== TRACKING ====================

    async def _courier_for_code(self, courier_code: str) -> Courier:
        courier = await self.get_courier_by_code(courier_code)
        if courier:
            return courier
        # Built-in clients only need the code; the row is never added to the session
        return Courier(
            name=courier_code.upper(),
            code=courier_code.upper(),
            auth_type=CourierAuthType.BEARER_TOKEN.value,
            auth_config={},
            label_format="pdf",
        )

    async def track_shipment(self, tracking_id: str, courier_code: str) -> Dict[str, Any]:
        courier = await self._courier_for_code(courier_code)
        info = await self.client_for(courier).track(tracking_id)

        now = utcnow()
        dispatches = (await self.db.execute(
            select(Dispatch).where(Dispatch.tracking_id == tracking_id)
        )).scalars().all()
        for dispatch in dispatches:
            dispatch.status = info.status
            dispatch.last_tracking_update = now
            dispatch.courier_response = info.raw
        await self.db.flush()

        return {
            "tracking_id": info.tracking_id,
            "status": info.status,
            "current_location": info.current_location,
            "status_history": info.status_history,
            "estimated_delivery": info.estimated_delivery,
            "courier": courier.code,
        }

    async def scheduled_tracking_update(self, limit: int = 200) -> Dict[str, Any]:
        """Poll couriers for dispatched orders and move delivered/returned ones on."""
        enabled = [c.upper() for c in settings.COURIER_API_ENABLED_CODES]
        result = await self.db.execute(
            select(Order).where(
                and_(
                    Order.status == OrderStatus.DISPATCHED.value,
                    Order.tracking_id.isnot(None),
                    func.upper(Order.courier).in_(enabled),
                )
            ).order_by(Order.dispatched_at.asc()).limit(limit)
        )
        orders = list(result.scalars().all())

        updated = 0
        errors: List[str] = []
        for order in orders:
            try:
                tracking = await self.track_shipment(order.tracking_id, order.courier)
                if tracking["status"] in (OrderStatus.DELIVERED.value, OrderStatus.RETURNED.value):
                    await self.status_service.update_order_status(order.id, tracking["status"])
                    updated += 1
            except (CourierError, OrderStatusError) as e:
                errors.append(f"{order.order_number}: {e.message}")
                logger.warning("Tracking update for %s failed: %s", order.order_number, e.message)

        logger.info("Tracking update: %d checked, %d updated, %d errors", len(orders), updated, len(errors))
        return {"checked": len(orders), "updated": updated, "errors": errors}

    async def bulk_track(self, tracking_ids: List[str], courier_code: Optional[str] = None) -> Dict[str, Any]:
        """
        Track several parcels. Without ``courier_code`` each tracking id is
        matched to its courier through the dispatch rows.
        """
        tracking_ids = list(dict.fromkeys(t.strip() for t in tracking_ids if t and t.strip()))
        couriers: Dict[str, Optional[str]] = {}
        if courier_code:
            couriers = {t: courier_code for t in tracking_ids}
        else:
            rows = (await self.db.execute(
                select(Dispatch.tracking_id, Dispatch.courier).where(Dispatch.tracking_id.in_(tracking_ids))
            )).all()
            found = {tracking_id: courier for tracking_id, courier in rows if courier}
            couriers = {t: found.get(t) for t in tracking_ids}

        results: List[Dict[str, Any]] = []
        for tracking_id in tracking_ids:
            code = couriers.get(tracking_id)
            if not code:
                results.append({
                    "tracking_id": tracking_id,
                    "status": "failed",
                    "error": "No dispatch found for this tracking id",
                    "error_code": "DISPATCH_NOT_FOUND",
                })
                continue
            try:
                data = await self.track_shipment(tracking_id, code)
                results.append({"tracking_id": tracking_id, "status": "success", "courier": data["courier"], "data": data})
            except ServiceError as e:
                logger.warning("Bulk tracking %s with %s failed [%s]", tracking_id, code, e.error_code)
                results.append({
                    "tracking_id": tracking_id,
                    "status": "failed",
                    "courier": code.upper(),
                    "error": e.message,
                    "error_code": e.error_code,
                })

        successful = sum(1 for r in results if r["status"] == "success")
        return {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }

    # ==================== CANCELLATION ====================

    async def cancel_booking(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Cancel the courier booking and return the order to pending.

        The courier call is best effort; a failure there is reported but the
        local booking is still removed.
        """
        order = await self._get_order(order_id)
        if order.status in (OrderStatus.DELIVERED.value, OrderStatus.RETURNED.value):
            raise CourierError(
                f"Cannot cancel booking for a {order.status} order",
                error_code="CANNOT_CANCEL",
                status_code=409,
            )
        if not order.tracking_id:
            raise CourierError("Order has no courier booking", error_code="NO_BOOKING", status_code=409)

        tracking_id = order.tracking_id
        courier_code = order.courier
        courier_result: Dict[str, Any] = {}
        if courier_code:
            courier = await self._courier_for_code(courier_code)
            try:
                courier_result = await self.client_for(courier).cancel(tracking_id, reason)
            except CourierError as e:
                logger.warning("Courier cancellation of %s failed: %s", tracking_id, e.message)
                courier_result = {"cancelled": False, "error": e.message, "error_code": e.error_code}

        await self.db.execute(delete(Dispatch).where(Dispatch.order_id == order.id))

        if order.status != OrderStatus.PENDING.value:
            await self.status_service.update_order_status(
                order.id, OrderStatus.PENDING.value, user_id=user_id, notes=reason, force=True,
            )
        order.tracking_id = None
        order.courier = None
        order.booked_at = None
        order.booked_by = None
        order.tags = replace_courier_tag(order.tags, None)
        order.updated_at = utcnow()

        await self.activity.log(
            action="booking_cancelled",
            entity_type="order",
            entity_id=order.id,
            user_id=user_id,
            details={
                "tracking_id": tracking_id,
                "courier": courier_code,
                "reason": reason,
                "courier_result": courier_result,
            },
        )
        await self.db.flush()
        return {"success": True, "order_id": str(order.id), "tracking_id": tracking_id, "courier_result": courier_result}

    # ==================== SCANNER ====================

    async def rapid_dispatch(
        self,
        entry: str,
        user_id: uuid.UUID,
        courier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Scanner flow: hand a parcel to the courier by tracking id or order number.

        Raises:
            ReturnProcessingError: INVALID_FORMAT
            CourierError: NOT_FOUND, ALREADY_DISPATCHED, ORDER_CANCELLED
        """
        token = parse_scan_token(entry)
        validate_scan_entry(token)

        order = (await self.db.execute(
            select(Order).where((Order.tracking_id == token) | order_number_clause(token)).limit(1)
        )).scalar_one_or_none()
        if not order:
            raise CourierError(
                "Order not found in database",
                error_code="NOT_FOUND",
                status_code=404,
                details={"searched_entry": token},
            )

        if order.status in (OrderStatus.DISPATCHED.value, OrderStatus.DELIVERED.value, OrderStatus.RETURNED.value):
            raise CourierError(
                f"Order already {order.status}",
                error_code="ALREADY_DISPATCHED",
                status_code=409,
                details={"order_number": order.order_number, "status": order.status},
            )
        if order.status == OrderStatus.CANCELLED.value:
            raise CourierError(
                "Order is cancelled",
                error_code="ORDER_CANCELLED",
                status_code=409,
                details={"order_number": order.order_number},
            )

        match_type = "tracking_id" if order.tracking_id == token else "order_number"
        # Handing the parcel over is physical proof; unbooked orders skip ahead
        await self.status_service.update_order_status(
            order.id,
            OrderStatus.DISPATCHED.value,
            user_id=user_id,
            courier=courier or order.courier,
            tracking_id=order.tracking_id,
            force=order.status != OrderStatus.BOOKED.value,
        )

        return {
            "success": True,
            "order": {
                "id": str(order.id),
                "order_number": order.order_number,
                "customer_name": order.customer_name,
                "status": order.status,
                "courier": order.courier,
            },
            "tracking_id": order.tracking_id,
            "match_type": match_type,
        }

    # ==================== QUERIES ====================

    async def get_dispatches(
        self,
        status: Optional[str] = None,
        courier: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Dispatch], int]:
        filters = []
        if status:
            filters.append(Dispatch.status == status)
        if courier:
            filters.append(func.upper(Dispatch.courier) == courier.upper())

        stmt = select(Dispatch)
        count_stmt = select(func.count(Dispatch.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.order_by(Dispatch.dispatch_date.desc()).offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_booking_attempts(self, order_id: uuid.UUID) -> List[CourierBookingAttempt]:
        result = await self.db.execute(
            select(CourierBookingAttempt)
            .where(CourierBookingAttempt.order_id == order_id)
            .order_by(CourierBookingAttempt.created_at.desc())
        )
        return list(result.scalars().all())
