# reservation_engine/application/booking_service.py

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.application.inventory_lock_service import InventoryLockService
from reservation_engine.domain.exceptions import (
    BookingCreationError,
    BookingNotFoundError,
    CacheUnavailableError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    InventoryAlreadyLockedError,
    ItemNotFoundError,
    PaymentOrderNotFoundError,
    RefundNotAllowedError,
    ReservationEngineError,
)
from reservation_engine.domain.inventory import ItemType, LockError
from reservation_engine.domain.state_machine import BookingStateMachine, BookingStatus, PaymentStatus
from reservation_engine.infrastructure.db.models import Booking, PaymentOrder, Refund
from reservation_engine.infrastructure.db.session import session_scope
from reservation_engine.infrastructure.gateway.razorpay_gateway import RazorpayGateway
from reservation_engine.infrastructure.repositories.booking_repository import BookingRepository
from reservation_engine.infrastructure.repositories.inventory_repository import InventoryRepository
from reservation_engine.infrastructure.repositories.payment_repository import (
    PaymentRepository,
    RefundRepository,
)


logger = logging.getLogger(__name__)

_LOCK_REJECTIONS = {
    LockError.ALREADY_LOCKED: (InventoryAlreadyLockedError, "Item is currently reserved by another booking"),
    LockError.INSUFFICIENT_INVENTORY: (InsufficientInventoryError, "Insufficient inventory"),
    LockError.ITEM_NOT_FOUND: (ItemNotFoundError, "Item not found"),
}


def to_paise(amount: Decimal | int | float | str) -> int:
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_booking_reference() -> str:
    return "BK" + secrets.token_hex(4).upper()


@dataclass(frozen=True)
class BookingCreated:
    booking: Booking
    payment: PaymentOrder
    order: dict
    lock_id: str
    key_id: str


@dataclass(frozen=True)
class TransitionOutcome:
    booking: Booking
    changed: bool


class BookingService:
    """Application service coordinating the booking workflow."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lock_service: InventoryLockService,
        gateway: RazorpayGateway,
        currency: str = "INR",
    ):
        self.session_factory = session_factory
        self.lock_service = lock_service
        self.gateway = gateway
        self.currency = currency

    # -----------------------------
    # creation
    # -----------------------------
    def create_booking(
        self,
        user_id: str,
        item_type: ItemType,
        item_id: str,
        quantity: int,
        total_price: Decimal,
        guest_info: dict,
        special_requests: str | None = None,
    ) -> BookingCreated:
        item_type = ItemType(item_type)
        amount_paise = to_paise(total_price)
        key_id = self.gateway.key_id

        logger.info(
            "Starting booking creation. user_id=%s item=%s:%s quantity=%s",
            user_id,
            item_type.value,
            item_id,
            quantity,
        )

        acquisition = self.lock_service.acquire(item_type, item_id, quantity)
        if not acquisition.ok:
            error_cls, message = _LOCK_REJECTIONS[acquisition.error]
            raise error_cls(message)

        lock_id = acquisition.lock_id
        booking_id = None
        try:
            with session_scope(self.session_factory) as db:
                booking = BookingRepository(db).create_booking(
                    user_id=user_id,
                    item_type=item_type,
                    item_id=item_id,
                    quantity=quantity,
                    amount_paise=amount_paise,
                    currency=self.currency,
                    lock_id=lock_id,
                    booking_reference=generate_booking_reference(),
                    guest_info=guest_info,
                    special_requests=special_requests,
                )
            booking_id = booking.id

            receipt = f"booking_{booking.id}"
            order = self.gateway.create_order(
                amount_paise=amount_paise,
                currency=self.currency,
                receipt=receipt,
                notes={
                    "booking_id": booking.id,
                    "user_id": user_id,
                    "item_type": item_type.value,
                    "item_id": item_id,
                    "lock_id": lock_id,
                },
            )

            with session_scope(self.session_factory) as db:
                payment = PaymentRepository(db).create_payment_order(
                    order_id=order["id"],
                    booking_id=booking.id,
                    user_id=user_id,
                    amount_paise=amount_paise,
                    currency=self.currency,
                    receipt=receipt,
                    lock_id=lock_id,
                )
        except Exception as exc:
            self._compensate(item_type, item_id, lock_id, booking_id)
            if isinstance(exc, ReservationEngineError):
                raise
            raise BookingCreationError("Booking could not be created") from exc

        logger.info(
            "Booking created. booking_id=%s reference=%s order_id=%s lock_id=%s",
            booking.id,
            booking.booking_reference,
            payment.id,
            lock_id,
        )
        return BookingCreated(
            booking=booking,
            payment=payment,
            order=order,
            lock_id=lock_id,
            key_id=key_id,
        )

    def _compensate(
        self,
        item_type: ItemType,
        item_id: str,
        lock_id: str,
        booking_id: str | None,
    ) -> None:
        try:
            self.lock_service.release(item_type, item_id, lock_id)
        except CacheUnavailableError:
            logger.exception("Lock release failed during compensation; TTL will reclaim it. lock_id=%s", lock_id)

        if booking_id is None:
            return

        try:
            with session_scope(self.session_factory) as db:
                booking = BookingRepository(db).lock_by_id(booking_id)
                if booking and booking.status == BookingStatus.PENDING:
                    booking.status = BookingStatus.PAYMENT_FAILED
                    booking.lock_id = None
        except SQLAlchemyError:
            logger.exception("Orphaned pending booking left for review. booking_id=%s", booking_id)

    # -----------------------------
    # lookups
    # -----------------------------
    def get_booking(self, booking_id: str, user_id: str | None = None) -> Booking:
        with session_scope(self.session_factory) as db:
            booking = BookingRepository(db).get_by_id(booking_id)
        if booking is None or (user_id is not None and booking.user_id != user_id):
            raise BookingNotFoundError("Booking not found")
        return booking

    def get_payment_for_order(self, order_id: str) -> PaymentOrder:
        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).get_by_order_id(order_id)
        if payment is None:
            raise PaymentOrderNotFoundError(f"Payment order {order_id} not found")
        return payment

    # -----------------------------
    # transitions
    # -----------------------------
    def confirm_booking(self, booking_id: str, user_id: str) -> Booking:
        self.get_booking(booking_id, user_id)
        outcome = self.apply_confirmation(booking_id)
        if not outcome.changed:
            raise_not_pending(outcome.booking, BookingStatus.CONFIRMED)
        return outcome.booking

    def apply_confirmation(self, booking_id: str) -> TransitionOutcome:
        """
        pending -> confirmed. The authoritative quantity is consumed in the
        same transaction; the cache lock is committed afterwards.

        The booking keeps its lock_id until that commit succeeds, so calling
        this again for an already-confirmed booking finishes a commit that
        an earlier cache failure interrupted. It is then reported unchanged.
        """
        shortfall = 0
        with session_scope(self.session_factory) as db:
            booking = self._locked_booking(db, booking_id)
            changed = booking.status != BookingStatus.CONFIRMED
            if changed:
                BookingStateMachine.validate_transition(booking.status, BookingStatus.CONFIRMED)
                booking.status = BookingStatus.CONFIRMED
                booking.confirmed_at = datetime.now(timezone.utc)
                shortfall = InventoryRepository(db).consume(booking.item_type, booking.item_id, booking.quantity)
            lock_id = booking.lock_id

        if shortfall:
            logger.error(
                "Confirmed booking exceeds authoritative inventory. booking_id=%s shortfall=%s",
                booking.id,
                shortfall,
            )
        if lock_id:
            self.lock_service.commit(booking.item_type, booking.item_id, lock_id)
            booking = self._clear_lock_id(booking.id, lock_id)

        if changed:
            logger.info("Booking confirmed. booking_id=%s", booking.id)
        return TransitionOutcome(booking=booking, changed=changed)

    def apply_payment_failure(self, booking_id: str) -> TransitionOutcome:
        """pending -> payment_failed, releasing the lock the same way confirmation commits it."""
        with session_scope(self.session_factory) as db:
            booking = self._locked_booking(db, booking_id)
            changed = booking.status != BookingStatus.PAYMENT_FAILED
            if changed:
                BookingStateMachine.validate_transition(booking.status, BookingStatus.PAYMENT_FAILED)
                booking.status = BookingStatus.PAYMENT_FAILED
            lock_id = booking.lock_id

        if lock_id:
            self.lock_service.release(booking.item_type, booking.item_id, lock_id)
            booking = self._clear_lock_id(booking.id, lock_id)

        if changed:
            logger.info("Booking payment failed. booking_id=%s", booking.id)
        return TransitionOutcome(booking=booking, changed=changed)

    def cancel_booking(self, booking_id: str, user_id: str | None, reason: str) -> Booking:
        with session_scope(self.session_factory) as db:
            booking = self._locked_booking(db, booking_id)
            if user_id is not None and booking.user_id != user_id:
                raise BookingNotFoundError("Booking not found")

            previous_status = booking.status
            BookingStateMachine.validate_transition(previous_status, BookingStatus.CANCELLED)
            lock_id = booking.lock_id
            booking.status = BookingStatus.CANCELLED
            booking.cancellation_reason = reason
            if previous_status == BookingStatus.CONFIRMED:
                InventoryRepository(db).restore(booking.item_type, booking.item_id, booking.quantity)

        if lock_id:
            if previous_status == BookingStatus.CONFIRMED:
                # Quantity already left the counter at confirmation.
                self.lock_service.commit(booking.item_type, booking.item_id, lock_id)
            else:
                self.lock_service.release(booking.item_type, booking.item_id, lock_id)
            booking = self._clear_lock_id(booking.id, lock_id)
        if previous_status == BookingStatus.CONFIRMED:
            self.lock_service.restock(booking.item_type, booking.item_id, booking.quantity)

        logger.info(
            "Booking cancelled. booking_id=%s previous_status=%s reason=%s",
            booking.id,
            previous_status.value,
            reason,
        )
        return booking

    def extend_lock(self, booking_id: str, user_id: str) -> bool:
        booking = self.get_booking(booking_id, user_id)
        if booking.status != BookingStatus.PENDING or not booking.lock_id:
            raise_not_pending(booking, BookingStatus.PENDING)
        return self.lock_service.extend(booking.item_type, booking.item_id, booking.lock_id)

    # -----------------------------
    # refunds
    # -----------------------------
    def refund_booking(
        self,
        booking_id: str,
        user_id: str,
        reason: str,
        amount: Decimal | None = None,
    ) -> Refund:
        booking = self.get_booking(booking_id, user_id)
        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).get_by_booking_id(booking.id)
            if payment is None:
                raise PaymentOrderNotFoundError("Payment not found")
            refunded = sum(r.amount_paise for r in RefundRepository(db).list_for_payment(payment.id))
        if payment.status != PaymentStatus.CAPTURED or not payment.gateway_payment_id:
            raise RefundNotAllowedError("Payment is not captured")

        refundable = payment.amount_paise - refunded
        amount_paise = to_paise(amount) if amount is not None else refundable
        if not 0 < amount_paise <= refundable:
            raise RefundNotAllowedError("Refund amount exceeds the refundable balance")

        gateway_refund = self.gateway.refund(
            payment.gateway_payment_id,
            amount_paise,
            notes={"reason": reason, "booking_id": booking.id, "user_id": user_id},
        )

        full_refund = amount_paise == refundable
        try:
            with session_scope(self.session_factory) as db:
                refund = RefundRepository(db).create_refund(
                    gateway_refund_id=gateway_refund["id"],
                    payment_order_id=payment.id,
                    booking_id=booking.id,
                    user_id=user_id,
                    amount_paise=int(gateway_refund.get("amount", amount_paise)),
                    currency=gateway_refund.get("currency", payment.currency),
                    status=gateway_refund.get("status", "pending"),
                    reason=reason,
                )
                if full_refund:
                    locked = PaymentRepository(db).lock_by_order_id(payment.id)
                    locked.status = PaymentStatus.REFUNDED
        except SQLAlchemyError:
            # The refund.created webhook backfills the row from the gateway entity.
            logger.exception(
                "Refund issued but not recorded. refund_id=%s payment_id=%s booking_id=%s amount_paise=%s",
                gateway_refund["id"],
                payment.gateway_payment_id,
                booking.id,
                amount_paise,
            )
            raise

        if full_refund and booking.status != BookingStatus.CANCELLED:
            self.cancel_booking(booking.id, user_id, reason)

        logger.info(
            "Refund created. refund_id=%s booking_id=%s amount_paise=%s full=%s",
            refund.gateway_refund_id,
            booking.id,
            refund.amount_paise,
            full_refund,
        )
        return refund

    def _clear_lock_id(self, booking_id: str, lock_id: str) -> Booking:
        with session_scope(self.session_factory) as db:
            booking = self._locked_booking(db, booking_id)
            if booking.lock_id == lock_id:
                booking.lock_id = None
        return booking

    @staticmethod
    def _locked_booking(db: Session, booking_id: str) -> Booking:
        booking = BookingRepository(db).lock_by_id(booking_id)
        if booking is None:
            raise BookingNotFoundError("Booking not found")
        return booking


def raise_not_pending(booking: Booking, to_status: BookingStatus) -> None:
    raise InvalidStateTransitionError(
        from_state=booking.status.value,
        to_state=to_status.value,
    )
