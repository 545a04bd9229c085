# reservation_engine/infrastructure/repositories/payment_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.db.models import PaymentOrder, Refund


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_order_id(self, order_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.id == order_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_order_id(self, order_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.id == order_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.gateway_payment_id == gateway_payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_booking_id(self, booking_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.booking_id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_payment_order(
        self,
        order_id: str,
        booking_id: str,
        user_id: str,
        amount_paise: int,
        currency: str,
        receipt: str,
        lock_id: str | None,
    ) -> PaymentOrder:
        payment = PaymentOrder(
            id=order_id,
            booking_id=booking_id,
            user_id=user_id,
            amount_paise=amount_paise,
            currency=currency,
            receipt=receipt,
            lock_id=lock_id,
            status=PaymentStatus.CREATED,
        )
        self.db.add(payment)
        self.db.flush()
        return payment


class RefundRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_gateway_refund_id(self, gateway_refund_id: str) -> Refund | None:
        stmt = select(Refund).where(Refund.gateway_refund_id == gateway_refund_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_payment(self, payment_order_id: str) -> list[Refund]:
        stmt = (
            select(Refund)
            .where(Refund.payment_order_id == payment_order_id)
            .order_by(Refund.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_refund(
        self,
        gateway_refund_id: str,
        payment_order_id: str,
        booking_id: str,
        user_id: str,
        amount_paise: int,
        currency: str,
        status: str,
        reason: str | None,
    ) -> Refund:
        refund = Refund(
            gateway_refund_id=gateway_refund_id,
            payment_order_id=payment_order_id,
            booking_id=booking_id,
            user_id=user_id,
            amount_paise=amount_paise,
            currency=currency,
            status=status,
            reason=reason,
        )
        self.db.add(refund)
        self.db.flush()
        return refund
