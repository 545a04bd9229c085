# reservation_engine/infrastructure/repositories/booking_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from reservation_engine.domain.inventory import ItemType
from reservation_engine.domain.state_machine import BookingStatus
from reservation_engine.infrastructure.db.models import Booking


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def create_booking(
        self,
        user_id: str,
        item_type: ItemType,
        item_id: str,
        quantity: int,
        amount_paise: int,
        currency: str,
        lock_id: str,
        booking_reference: str,
        guest_info: dict,
        special_requests: str | None = None,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            item_type=item_type,
            item_id=item_id,
            quantity=quantity,
            amount_paise=amount_paise,
            currency=currency,
            lock_id=lock_id,
            booking_reference=booking_reference,
            guest_info=guest_info,
            special_requests=special_requests,
            status=BookingStatus.PENDING,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

