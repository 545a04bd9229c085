import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.api.dependencies import (
    get_booking_service,
    get_current_user,
    get_lock_service,
    get_notification_service,
    get_session_factory,
    get_webhook_service,
)
from reservation_engine.api.schemas.schemas import (
    BookingResponse,
    CancelBookingRequest,
    CreateBookingRequest,
    CreateBookingResponse,
    ExtendLockResponse,
    InventoryItemRequest,
    InventoryStatusResponse,
    NotificationOutboxResponse,
    PaymentOrderHandle,
    RefundRequest,
    RefundResponse,
    WebhookStatusResponse,
)
from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.inventory_lock_service import InventoryLockService
from reservation_engine.application.notification_service import NotificationService
from reservation_engine.application.webhook_service import WebhookReconciliationService
from reservation_engine.domain.exceptions import (
    BookingCreationError,
    BookingNotFoundError,
    CacheUnavailableError,
    ConfigurationError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    InventoryAlreadyLockedError,
    ItemNotFoundError,
    PaymentGatewayError,
    PaymentOrderNotFoundError,
    RefundNotAllowedError,
    ReservationEngineError,
    WebhookNotResumableError,
    WebhookPayloadError,
    WebhookRecordNotFoundError,
    WebhookSignatureError,
)
from reservation_engine.domain.inventory import ItemType
from reservation_engine.infrastructure.db.models import Booking
from reservation_engine.infrastructure.db.session import session_scope
from reservation_engine.infrastructure.repositories.inventory_repository import InventoryRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_HTTP_STATUS_BY_ERROR: list[tuple[type[ReservationEngineError], int]] = [
    (InventoryAlreadyLockedError, status.HTTP_409_CONFLICT),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT),
    (ItemNotFoundError, status.HTTP_404_NOT_FOUND),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND),
    (PaymentOrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (WebhookRecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (RefundNotAllowedError, status.HTTP_409_CONFLICT),
    (WebhookNotResumableError, status.HTTP_409_CONFLICT),
    (CacheUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (BookingCreationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PaymentGatewayError, status.HTTP_502_BAD_GATEWAY),
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST),
    (WebhookPayloadError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _http_error(exc: ReservationEngineError) -> HTTPException:
    status_code = next(
        (code for error_cls, code in _HTTP_STATUS_BY_ERROR if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": str(exc)},
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        booking_reference=booking.booking_reference,
        user_id=booking.user_id,
        item_type=booking.item_type,
        item_id=booking.item_id,
        quantity=booking.quantity,
        amount_paise=booking.amount_paise,
        currency=booking.currency,
        status=booking.status.value,
        lock_id=booking.lock_id,
        cancellation_reason=booking.cancellation_reason,
        confirmed_at=booking.confirmed_at,
    )


@router.get("/health")
def health():
    return {"message": "Travel reservation engine is running"}


# -----------------------------
# bookings
# -----------------------------
@router.post(
    "/bookings",
    response_model=CreateBookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: CreateBookingRequest,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    try:
        created = service.create_booking(
            user_id=user_id,
            item_type=request.item_type,
            item_id=request.item_id,
            quantity=request.quantity,
            total_price=request.total_price,
            guest_info=request.guest_info.model_dump(),
            special_requests=request.special_requests,
        )
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc

    return CreateBookingResponse(
        booking=_booking_response(created.booking),
        payment_order=PaymentOrderHandle(
            key_id=created.key_id,
            order_id=created.payment.id,
            amount=created.payment.amount_paise,
            currency=created.payment.currency,
            receipt=created.payment.receipt,
        ),
        lock_id=created.lock_id,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id, user_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/confirm", response_model=BookingResponse)
def confirm_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.confirm_booking(booking_id, user_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    reason = request.reason if request else CancelBookingRequest().reason
    try:
        booking = service.cancel_booking(booking_id, user_id, reason)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/extend-lock", response_model=ExtendLockResponse)
def extend_booking_lock(
    booking_id: str,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    try:
        extended = service.extend_lock(booking_id, user_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return ExtendLockResponse(booking_id=booking_id, extended=extended)


@router.post("/bookings/{booking_id}/refund", response_model=RefundResponse)
def refund_booking(
    booking_id: str,
    request: RefundRequest,
    user_id: str = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    try:
        refund = service.refund_booking(
            booking_id,
            user_id,
            reason=request.reason,
            amount=request.amount,
        )
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc

    return RefundResponse(
        refund_id=refund.gateway_refund_id,
        booking_id=refund.booking_id,
        amount_paise=refund.amount_paise,
        currency=refund.currency,
        status=refund.status,
    )


# -----------------------------
# payment webhooks
# -----------------------------
@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    service: WebhookReconciliationService = Depends(get_webhook_service),
):
    # Signature is computed over the exact bytes the gateway sent.
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    event_id = request.headers.get("x-razorpay-event-id")

    try:
        ack = await run_in_threadpool(service.handle_webhook, signature, raw_body, event_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return ack.to_response()


@router.get("/payments/webhook/status/{webhook_id}", response_model=WebhookStatusResponse)
def webhook_status(
    webhook_id: str,
    service: WebhookReconciliationService = Depends(get_webhook_service),
):
    try:
        record = service.get_retry_status(webhook_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc

    if record["retry"] is None and record["failed"] is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": WebhookRecordNotFoundError.code, "message": "No retry state for webhook"},
        )
    return WebhookStatusResponse(**record)


@router.post("/payments/webhook/{webhook_id}/resume")
def resume_webhook(
    webhook_id: str,
    service: WebhookReconciliationService = Depends(get_webhook_service),
):
    try:
        ack = service.resume(webhook_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc
    return ack.to_response()


# -----------------------------
# notifications
# -----------------------------
@router.get("/notifications/outbox", response_model=list[NotificationOutboxResponse])
def list_notification_outbox(
    status_filter: str = "PENDING",
    limit: int = 50,
    service: NotificationService = Depends(get_notification_service),
):
    safe_limit = max(1, min(limit, 200))
    entries = service.list_outbox(status_filter, safe_limit)
    return [
        NotificationOutboxResponse(
            id=entry.id,
            booking_id=entry.booking_id,
            kind=entry.kind,
            status=entry.status,
            attempts=entry.attempts,
            last_error=entry.last_error,
            created_at=entry.created_at.isoformat(),
        )
        for entry in entries
    ]


# -----------------------------
# inventory
# -----------------------------
@router.post("/inventory/items", response_model=InventoryStatusResponse)
def upsert_inventory_item(
    request: InventoryItemRequest,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    lock_service: InventoryLockService = Depends(get_lock_service),
):
    with session_scope(session_factory) as db:
        item = InventoryRepository(db).create_or_reset(
            request.item_type,
            request.item_id,
            request.total_quantity,
            name=request.name,
        )

    try:
        lock_service.invalidate(request.item_type, request.item_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "Inventory item reset. item=%s:%s total_quantity=%s",
        request.item_type.value,
        request.item_id,
        request.total_quantity,
    )
    return InventoryStatusResponse(
        item_type=item.item_type,
        item_id=item.item_id,
        name=item.name,
        total_quantity=item.total_quantity,
        available_quantity=item.available_quantity,
    )


@router.get("/inventory/{item_type}/{item_id}", response_model=InventoryStatusResponse)
def get_inventory(
    item_type: ItemType,
    item_id: str,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    lock_service: InventoryLockService = Depends(get_lock_service),
):
    with session_scope(session_factory) as db:
        item = InventoryRepository(db).get(item_type, item_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ItemNotFoundError.code, "message": "Inventory not found"},
        )

    try:
        cached_remaining = lock_service.cached_remaining(item_type, item_id)
        lock = lock_service.get_lock(item_type, item_id)
    except ReservationEngineError as exc:
        raise _http_error(exc) from exc

    return InventoryStatusResponse(
        item_type=item.item_type,
        item_id=item.item_id,
        name=item.name,
        total_quantity=item.total_quantity,
        available_quantity=item.available_quantity,
        cached_remaining=cached_remaining,
        active_lock=lock.to_record() if lock else None,
    )
