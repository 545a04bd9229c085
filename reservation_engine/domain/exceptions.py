

class ReservationEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the reservation engine.
    """

    code = "RESERVATION_ERROR"


class InvalidStateTransitionError(ReservationEngineError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingRejectedError(ReservationEngineError):
    """Expected inventory rejection. The caller retries the whole booking."""


class InventoryAlreadyLockedError(BookingRejectedError):
    """Raised when another in-flight booking holds the item lock."""

    code = "INVENTORY_LOCKED"


class InsufficientInventoryError(BookingRejectedError):
    """Raised when the remaining quantity cannot cover the request."""

    code = "INSUFFICIENT_INVENTORY"


class ItemNotFoundError(BookingRejectedError):
    """Raised when the item is missing from the authoritative store."""

    code = "ITEM_NOT_FOUND"


class BookingNotFoundError(ReservationEngineError):
    code = "BOOKING_NOT_FOUND"


class PaymentOrderNotFoundError(ReservationEngineError):
    code = "PAYMENT_NOT_FOUND"


class RefundNotAllowedError(ReservationEngineError):
    code = "REFUND_NOT_ALLOWED"


class CacheUnavailableError(ReservationEngineError):
    """Raised when the shared cache cannot be reached. Locking fails closed."""

    code = "CACHE_UNAVAILABLE"


class BookingCreationError(ReservationEngineError):
    """Raised when the store fails after the lock was taken (lock already released)."""

    code = "BOOKING_CREATION_FAILED"


class PaymentGatewayError(ReservationEngineError):
    code = "PAYMENT_GATEWAY_ERROR"


class ConfigurationError(ReservationEngineError):
    code = "CONFIGURATION_ERROR"


class WebhookSignatureError(ReservationEngineError):
    """Missing or forged webhook signature. Never retried."""

    code = "INVALID_SIGNATURE"


class WebhookPayloadError(ReservationEngineError):
    """Malformed webhook envelope. Never retried."""

    code = "INVALID_PAYLOAD"


class NonRetryableWebhookError(ReservationEngineError):
    """Handler failure that retrying cannot fix."""

    code = "WEBHOOK_NOT_RETRYABLE"


class PaymentAmountMismatchError(NonRetryableWebhookError):
    code = "AMOUNT_MISMATCH"

    def __init__(self, order_id: str, expected: int, received: int):
        self.order_id = order_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Captured amount {received} does not match order {order_id} amount {expected}"
        )


class LateCaptureError(NonRetryableWebhookError):
    """Money was captured for a booking that can no longer be confirmed."""

    code = "LATE_CAPTURE"

    def __init__(self, order_id: str, booking_id: str, payment_id: str, booking_status: str):
        self.order_id = order_id
        self.booking_id = booking_id
        self.payment_id = payment_id
        self.booking_status = booking_status
        super().__init__(
            f"Payment {payment_id} captured for order {order_id} but booking {booking_id} "
            f"is {booking_status}; refund or reinstate manually"
        )


class WebhookProcessingFailedError(ReservationEngineError):
    """Raised after every handler attempt failed. Kept internal to the service."""

    code = "WEBHOOK_PROCESSING_FAILED"

    def __init__(self, webhook_id: str, attempts: int, last_error: str):
        self.webhook_id = webhook_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Webhook {webhook_id} failed after {attempts} attempts: {last_error}"
        )


class WebhookRecordNotFoundError(ReservationEngineError):
    code = "WEBHOOK_NOT_FOUND"


class WebhookNotResumableError(ReservationEngineError):
    """Raised when resuming a delivery that already reached the failed record."""

    code = "WEBHOOK_NOT_RESUMABLE"
