# reservation_engine/application/webhook_service.py

import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.notification_service import NotificationKind, NotificationService
from reservation_engine.domain.exceptions import (
    CacheUnavailableError,
    InvalidStateTransitionError,
    LateCaptureError,
    NonRetryableWebhookError,
    PaymentAmountMismatchError,
    PaymentOrderNotFoundError,
    WebhookNotResumableError,
    WebhookPayloadError,
    WebhookProcessingFailedError,
    WebhookRecordNotFoundError,
    WebhookSignatureError,
)
from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.cache.redis_cache import Cache
from reservation_engine.infrastructure.db.session import session_scope
from reservation_engine.infrastructure.gateway.razorpay_gateway import RazorpayGateway
from reservation_engine.infrastructure.repositories.payment_repository import (
    PaymentRepository,
    RefundRepository,
)


logger = logging.getLogger(__name__)

RETRY_KEY_PREFIX = "webhook_retry"
FAILED_KEY_PREFIX = "webhook_failed"

Handler = Callable[[dict], Any]


def retry_key(webhook_id: str) -> str:
    return f"{RETRY_KEY_PREFIX}:{webhook_id}"


def failed_key(webhook_id: str) -> str:
    return f"{FAILED_KEY_PREFIX}:{webhook_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookRetryService:
    """
    Bounded in-request retry around a webhook handler.

    Retry state is written to the cache before every backoff so a crash
    mid-retry leaves a record that can be inspected and resumed. A
    delivery that exhausts its attempts gets a terminal failed record and
    is never retried again.
    """

    def __init__(
        self,
        cache: Cache,
        max_retries: int = 3,
        retry_delays: tuple[float, ...] = (1.0, 5.0, 15.0),
        retry_ttl_seconds: int = 3600,
        failed_ttl_seconds: int = 86400,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.max_retries = max_retries
        self.retry_delays = retry_delays or (0.0,)
        self.retry_ttl_seconds = retry_ttl_seconds
        self.failed_ttl_seconds = failed_ttl_seconds
        self._sleep = sleep
        self._clock = clock

    def process_with_retry(
        self,
        webhook_id: str,
        event_type: str,
        payload: dict,
        handler: Handler,
        start_attempt: int = 0,
    ) -> Any:
        last_error = None
        attempts = start_attempt

        for attempt in range(start_attempt, self.max_retries + 1):
            attempts = attempt + 1
            try:
                result = handler(payload)
            except NonRetryableWebhookError as exc:
                last_error = str(exc)
                logger.error(
                    "Webhook handler failed permanently. webhook_id=%s event=%s error=%s",
                    webhook_id,
                    event_type,
                    last_error,
                )
                break
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Webhook handler failed. webhook_id=%s event=%s attempt=%s/%s error=%s",
                    webhook_id,
                    event_type,
                    attempts,
                    self.max_retries + 1,
                    last_error,
                )
                if attempt < self.max_retries:
                    delay = self._delay(attempt)
                    self._save_retry_record(webhook_id, event_type, payload, attempts, last_error, delay)
                    self._sleep(delay)
                continue

            self._discard(retry_key(webhook_id))
            if attempts > 1:
                logger.info(
                    "Webhook processed after retry. webhook_id=%s event=%s attempts=%s",
                    webhook_id,
                    event_type,
                    attempts,
                )
            return result

        self._record_failure(webhook_id, event_type, payload, attempts, last_error)
        raise WebhookProcessingFailedError(webhook_id, attempts, last_error or "no attempts left")

    def get_retry_record(self, webhook_id: str) -> dict | None:
        return self.cache.get(retry_key(webhook_id))

    def get_failed_record(self, webhook_id: str) -> dict | None:
        return self.cache.get(failed_key(webhook_id))

    def get_status(self, webhook_id: str) -> dict:
        return {
            "webhook_id": webhook_id,
            "retry": self.get_retry_record(webhook_id),
            "failed": self.get_failed_record(webhook_id),
        }

    def _save_retry_record(
        self,
        webhook_id: str,
        event_type: str,
        payload: dict,
        attempts: int,
        last_error: str,
        delay: float,
    ) -> None:
        record = {
            "event_type": event_type,
            "payload": payload,
            "attempt": attempts,
            "last_error": last_error,
            "next_retry_at": (self._clock() + timedelta(seconds=delay)).isoformat(),
            "state": "retrying",
        }
        try:
            self.cache.set(retry_key(webhook_id), record, ttl_seconds=self.retry_ttl_seconds)
        except CacheUnavailableError:
            logger.exception("Could not persist webhook retry state. webhook_id=%s", webhook_id)

    def _record_failure(
        self,
        webhook_id: str,
        event_type: str,
        payload: dict,
        attempts: int,
        last_error: str | None,
    ) -> None:
        logger.error(
            "Webhook failed and needs manual review. webhook_id=%s event=%s attempts=%s error=%s",
            webhook_id,
            event_type,
            attempts,
            last_error,
        )
        record = {
            "event_type": event_type,
            "payload": payload,
            "error": last_error,
            "failed_at": self._clock().isoformat(),
            "attempts": attempts,
            "state": "failed",
        }
        try:
            self.cache.set(failed_key(webhook_id), record, ttl_seconds=self.failed_ttl_seconds)
        except CacheUnavailableError:
            logger.exception("Could not persist failed webhook record. webhook_id=%s", webhook_id)
        self._discard(retry_key(webhook_id))

    def _discard(self, key: str) -> None:
        try:
            self.cache.delete(key)
        except CacheUnavailableError:
            logger.exception("Could not delete webhook record. key=%s", key)

    def _delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    envelope: dict


@dataclass(frozen=True)
class WebhookAck:
    success: bool
    processing_id: str
    timestamp: datetime
    webhook_id: str | None = None
    event_type: str | None = None

    def to_response(self) -> dict:
        return {
            "success": self.success,
            "processingId": self.processing_id,
            "timestamp": self.timestamp.isoformat(),
        }


# Entity each recognised event carries under payload.<name>.entity
EVENT_ENTITIES: dict[str, str] = {
    "payment.captured": "payment",
    "payment.failed": "payment",
    "payment.authorized": "payment",
    "refund.created": "refund",
    "order.paid": "order",
}


def parse_event(raw_body: bytes) -> WebhookEvent:
    try:
        envelope = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("Body is not valid JSON") from exc

    if not isinstance(envelope, dict):
        raise WebhookPayloadError("Event envelope must be an object")

    event_type = envelope.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookPayloadError("Missing event type")
    if not isinstance(envelope.get("payload"), dict):
        raise WebhookPayloadError("Missing payload")

    entity_name = EVENT_ENTITIES.get(event_type)
    if entity_name:
        entity_of(envelope, entity_name)

    return WebhookEvent(event_type=event_type, envelope=envelope)


def entity_of(envelope: dict, name: str) -> dict:
    container = envelope.get("payload", {}).get(name)
    entity = container.get("entity") if isinstance(container, dict) else None
    if not isinstance(entity, dict) or not entity.get("id"):
        raise WebhookPayloadError(f"Missing {name} entity")
    return entity


class WebhookReconciliationService:
    """
    Applies gateway events to payment and booking state.

    Every handler may run more than once for the same gateway event;
    a replay converges on the state the first delivery produced and
    never notifies twice.
    """

    def __init__(
        self,
        gateway: RazorpayGateway,
        booking_service: BookingService,
        notifications: NotificationService,
        retry_service: WebhookRetryService,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.booking_service = booking_service
        self.session_factory = booking_service.session_factory
        self.notifications = notifications
        self.retry_service = retry_service
        self._clock = clock
        self._handlers: dict[str, Handler] = {
            "payment.captured": self._on_payment_captured,
            "payment.failed": self._on_payment_failed,
            "refund.created": self._on_refund_created,
            "payment.authorized": self._on_logged_only,
            "order.paid": self._on_logged_only,
        }

    def handle_webhook(
        self,
        signature: str | None,
        raw_body: bytes,
        event_id: str | None = None,
    ) -> WebhookAck:
        processing_id = self._processing_id()

        try:
            self.gateway.verify_webhook_signature(raw_body, signature)
        except WebhookSignatureError as exc:
            logger.warning(
                "Rejected webhook with bad signature. processing_id=%s reason=%s",
                processing_id,
                exc,
            )
            raise

        try:
            event = parse_event(raw_body)
        except WebhookPayloadError as exc:
            logger.warning(
                "Rejected malformed webhook. processing_id=%s reason=%s",
                processing_id,
                exc,
            )
            raise

        webhook_id = event_id or processing_id
        logger.info(
            "Webhook received. processing_id=%s webhook_id=%s event=%s",
            processing_id,
            webhook_id,
            event.event_type,
        )
        return self._dispatch(processing_id, webhook_id, event.event_type, event.envelope)

    def resume(self, webhook_id: str) -> WebhookAck:
        """Re-runs a delivery whose retry record outlived the request that created it."""

        record = self.retry_service.get_retry_record(webhook_id)
        if record is None:
            if self.retry_service.get_failed_record(webhook_id):
                raise WebhookNotResumableError(f"Webhook {webhook_id} already failed; review manually")
            raise WebhookRecordNotFoundError(f"No retry record for webhook {webhook_id}")

        logger.info(
            "Resuming webhook. webhook_id=%s event=%s attempts_so_far=%s",
            webhook_id,
            record["event_type"],
            record["attempt"],
        )
        return self._dispatch(
            self._processing_id(),
            webhook_id,
            record["event_type"],
            record["payload"],
            start_attempt=int(record["attempt"]),
        )

    def get_retry_status(self, webhook_id: str) -> dict:
        return self.retry_service.get_status(webhook_id)

    def _dispatch(
        self,
        processing_id: str,
        webhook_id: str,
        event_type: str,
        envelope: dict,
        start_attempt: int = 0,
    ) -> WebhookAck:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled webhook event acknowledged. webhook_id=%s event=%s", webhook_id, event_type)
            return self._ack(True, processing_id, webhook_id, event_type)

        try:
            self.retry_service.process_with_retry(
                webhook_id,
                event_type,
                envelope,
                handler,
                start_attempt=start_attempt,
            )
        except WebhookProcessingFailedError:
            # The gateway still gets its ack; the failed record holds the details.
            return self._ack(False, processing_id, webhook_id, event_type)

        return self._ack(True, processing_id, webhook_id, event_type)

    # -----------------------------
    # handlers
    # -----------------------------
    def _on_payment_captured(self, envelope: dict) -> None:
        entity = entity_of(envelope, "payment")
        order_id = entity.get("order_id")
        payment_id = entity["id"]
        amount = entity.get("amount")

        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).lock_by_order_id(order_id)
            if payment is None:
                raise PaymentOrderNotFoundError(f"Payment order {order_id} not found")
            if amount is not None and int(amount) != payment.amount_paise:
                raise PaymentAmountMismatchError(order_id, payment.amount_paise, int(amount))

            if payment.status != PaymentStatus.REFUNDED:
                payment.status = PaymentStatus.CAPTURED
                payment.gateway_payment_id = payment_id
                payment.error_code = None
                payment.error_description = None
            booking_id = payment.booking_id

        try:
            outcome = self.booking_service.apply_confirmation(booking_id)
        except InvalidStateTransitionError as exc:
            booking = self.booking_service.get_booking(booking_id)
            if booking.confirmed_at is not None:
                logger.info(
                    "Capture replayed for a booking confirmed earlier. order_id=%s booking_id=%s status=%s",
                    order_id,
                    booking_id,
                    booking.status.value,
                )
                return
            raise LateCaptureError(order_id, booking_id, payment_id, exc.from_state) from exc

        if not outcome.changed:
            logger.info("Duplicate capture. order_id=%s booking_id=%s", order_id, booking_id)
        # Repeats are dropped by the outbox dedupe key.
        self.notifications.notify(NotificationKind.BOOKING_CONFIRMATION, outcome.booking)

    def _on_payment_failed(self, envelope: dict) -> None:
        entity = entity_of(envelope, "payment")
        order_id = entity.get("order_id")

        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).lock_by_order_id(order_id)
            if payment is None:
                raise PaymentOrderNotFoundError(f"Payment order {order_id} not found")

            if payment.status == PaymentStatus.CREATED:
                payment.status = PaymentStatus.FAILED
            if payment.status == PaymentStatus.FAILED:
                payment.error_code = entity.get("error_code")
                payment.error_description = entity.get("error_description")
            booking_id = payment.booking_id

        try:
            outcome = self.booking_service.apply_payment_failure(booking_id)
        except InvalidStateTransitionError:
            logger.info("Payment failure ignored; booking no longer pending. booking_id=%s", booking_id)
            return

        self.notifications.notify(NotificationKind.PAYMENT_FAILURE, outcome.booking)

    def _on_refund_created(self, envelope: dict) -> None:
        entity = entity_of(envelope, "refund")

        with session_scope(self.session_factory) as db:
            refunds = RefundRepository(db)
            refund = refunds.get_by_gateway_refund_id(entity["id"])
            if refund is not None:
                refund.status = entity.get("status") or refund.status
                logger.info("Refund status updated. refund_id=%s status=%s", entity["id"], refund.status)
                return

            payment = None
            if entity.get("payment_id"):
                payment = PaymentRepository(db).get_by_gateway_payment_id(entity["payment_id"])
            if payment is None:
                logger.warning("Refund webhook for unknown refund. refund_id=%s", entity["id"])
                return

            # Issued at the gateway but never stored locally.
            notes = entity.get("notes") if isinstance(entity.get("notes"), dict) else {}
            refund = refunds.create_refund(
                gateway_refund_id=entity["id"],
                payment_order_id=payment.id,
                booking_id=payment.booking_id,
                user_id=notes.get("user_id") or payment.user_id,
                amount_paise=int(entity.get("amount") or 0),
                currency=entity.get("currency") or payment.currency,
                status=entity.get("status") or "pending",
                reason=notes.get("reason"),
            )

        logger.warning(
            "Refund recorded from webhook; booking state left for review. refund_id=%s booking_id=%s amount_paise=%s",
            refund.gateway_refund_id,
            refund.booking_id,
            refund.amount_paise,
        )

    def _on_logged_only(self, envelope: dict) -> None:
        entity = entity_of(envelope, EVENT_ENTITIES[envelope["event"]])
        logger.info("Webhook event noted. event=%s entity_id=%s", envelope["event"], entity["id"])

    # -----------------------------
    # helpers
    # -----------------------------
    def _processing_id(self) -> str:
        millis = int(self._clock().timestamp() * 1000)
        return f"webhook_{millis}_{secrets.token_hex(4)}"

    def _ack(
        self,
        success: bool,
        processing_id: str,
        webhook_id: str,
        event_type: str,
    ) -> WebhookAck:
        return WebhookAck(
            success=success,
            processing_id=processing_id,
            timestamp=self._clock(),
            webhook_id=webhook_id,
            event_type=event_type,
        )
