# reservation_engine/application/notification_service.py

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.infrastructure.db.models import Booking
from reservation_engine.infrastructure.db.session import session_scope
from reservation_engine.infrastructure.repositories.notification_repository import (
    NotificationOutboxRepository,
)


logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    PAYMENT_FAILURE = "payment_failure"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


CHANNELS_BY_KIND: dict[NotificationKind, tuple[Channel, ...]] = {
    NotificationKind.BOOKING_CONFIRMATION: (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP),
    NotificationKind.PAYMENT_FAILURE: (Channel.SMS, Channel.WHATSAPP),
}


@dataclass(frozen=True)
class NotificationMessage:
    notification_id: str
    kind: NotificationKind
    booking_id: str
    booking_reference: str
    user_id: str
    item_type: str
    item_id: str
    quantity: int
    amount_paise: int
    currency: str
    recipient: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "kind": self.kind.value,
            "booking_id": self.booking_id,
            "booking_reference": self.booking_reference,
            "user_id": self.user_id,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "amount_paise": self.amount_paise,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class NotificationResult:
    channel: Channel
    success: bool
    attempts: int
    message_id: str | None = None
    error: str | None = None


class NotificationSender(Protocol):
    """Transport for one channel. Returns a provider message id or raises."""

    def send(self, channel: Channel, message: NotificationMessage) -> str | None: ...


class LoggingNotificationSender:
    def send(self, channel: Channel, message: NotificationMessage) -> str | None:
        logger.info(
            "Notification dispatched. channel=%s kind=%s booking_reference=%s",
            channel.value,
            message.kind.value,
            message.booking_reference,
        )
        return message.notification_id


class NotificationService:
    """
    Fire-and-forget dispatch. Each (booking, kind) pair is written to the
    outbox once; a second request for the same pair is dropped, so replayed
    webhooks never notify twice. Failures are logged, never raised.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        sender: NotificationSender,
        max_retries: int = 3,
        retry_delays: tuple[float, ...] = (1.0, 5.0, 15.0),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.sender = sender
        self.max_retries = max_retries
        self.retry_delays = retry_delays or (0.0,)
        self._sleep = sleep

    def notify(self, kind: NotificationKind, booking: Booking) -> list[NotificationResult] | None:
        try:
            return self._notify(kind, booking)
        except Exception:
            logger.exception(
                "Notification dispatch failed. kind=%s booking_id=%s",
                kind.value,
                booking.id,
            )
            return None

    def _notify(self, kind: NotificationKind, booking: Booking) -> list[NotificationResult] | None:
        dedupe_key = f"booking:{booking.id}:{kind.value}"
        message = NotificationMessage(
            notification_id=f"{kind.value}_{booking.id}",
            kind=kind,
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            user_id=booking.user_id,
            item_type=booking.item_type.value,
            item_id=booking.item_id,
            quantity=booking.quantity,
            amount_paise=booking.amount_paise,
            currency=booking.currency,
            recipient=dict(booking.guest_info or {}),
        )

        try:
            with session_scope(self.session_factory) as db:
                entry = NotificationOutboxRepository(db).add_once(
                    booking_id=booking.id,
                    kind=kind.value,
                    payload=message.to_payload(),
                    dedupe_key=dedupe_key,
                )
                entry_id = entry.id if entry else None
        except IntegrityError:
            entry_id = None

        if entry_id is None:
            logger.info("Duplicate notification suppressed. dedupe_key=%s", dedupe_key)
            return None

        results = [
            self.send_with_retry(channel, message)
            for channel in CHANNELS_BY_KIND[kind]
        ]

        delivered = all(result.success for result in results)
        errors = [f"{r.channel.value}: {r.error}" for r in results if not r.success]
        with session_scope(self.session_factory) as db:
            outbox = NotificationOutboxRepository(db)
            entry = outbox.get_by_id(entry_id)
            outbox.record_result(
                entry,
                delivered=delivered,
                attempts=sum(result.attempts for result in results),
                last_error="; ".join(errors) or None,
            )

        logger.info(
            "Notification completed. kind=%s booking_id=%s delivered=%s failed_channels=%s",
            kind.value,
            booking.id,
            delivered,
            len(errors),
        )
        return results

    def send_with_retry(self, channel: Channel, message: NotificationMessage) -> NotificationResult:
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                message_id = self.sender.send(channel, message)
                return NotificationResult(
                    channel=channel,
                    success=True,
                    attempts=attempt + 1,
                    message_id=message_id,
                )
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Notification send failed. notification_id=%s channel=%s attempt=%s/%s error=%s",
                    message.notification_id,
                    channel.value,
                    attempt + 1,
                    self.max_retries + 1,
                    last_error,
                )
                if attempt < self.max_retries:
                    self._sleep(self._delay(attempt))

        logger.error(
            "Notification failed after all retries. notification_id=%s channel=%s",
            message.notification_id,
            channel.value,
        )
        return NotificationResult(
            channel=channel,
            success=False,
            attempts=self.max_retries + 1,
            error=last_error,
        )

    def list_outbox(self, status: str, limit: int) -> list:
        with session_scope(self.session_factory) as db:
            return NotificationOutboxRepository(db).list_by_status(status, limit)

    def _delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
