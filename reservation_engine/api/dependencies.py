# reservation_engine/api/dependencies.py

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.inventory_lock_service import InventoryLockService
from reservation_engine.application.notification_service import (
    LoggingNotificationSender,
    NotificationSender,
    NotificationService,
)
from reservation_engine.application.webhook_service import (
    WebhookReconciliationService,
    WebhookRetryService,
)
from reservation_engine.config import Settings, get_settings
from reservation_engine.infrastructure.cache.redis_cache import Cache, RedisCache
from reservation_engine.infrastructure.db.session import SessionLocal
from reservation_engine.infrastructure.gateway.razorpay_gateway import RazorpayGateway
from reservation_engine.infrastructure.repositories.inventory_repository import SqlInventorySource


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


@lru_cache
def get_cache() -> Cache:
    return RedisCache.from_url(get_settings().redis_url)


@lru_cache
def get_gateway() -> RazorpayGateway:
    settings = get_settings()
    return RazorpayGateway(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
    )


def get_notification_sender() -> NotificationSender:
    return LoggingNotificationSender()


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_REQUIRED", "message": "X-User-Id header is required"},
        )
    return x_user_id


def get_lock_service(
    cache: Cache = Depends(get_cache),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> InventoryLockService:
    return InventoryLockService(
        cache=cache,
        inventory=SqlInventorySource(session_factory),
        lock_ttl_seconds=settings.inventory_lock_ttl_seconds,
        counter_ttl_seconds=settings.counter_ttl_seconds,
    )


def get_booking_service(
    lock_service: InventoryLockService = Depends(get_lock_service),
    gateway: RazorpayGateway = Depends(get_gateway),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> BookingService:
    return BookingService(
        session_factory=session_factory,
        lock_service=lock_service,
        gateway=gateway,
        currency=settings.payment_currency,
    )


def get_notification_service(
    sender: NotificationSender = Depends(get_notification_sender),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> NotificationService:
    return NotificationService(
        session_factory=session_factory,
        sender=sender,
        max_retries=settings.notification_max_retries,
        retry_delays=settings.notification_retry_delays,
    )


def get_webhook_service(
    booking_service: BookingService = Depends(get_booking_service),
    notifications: NotificationService = Depends(get_notification_service),
    gateway: RazorpayGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> WebhookReconciliationService:
    retry_service = WebhookRetryService(
        cache=cache,
        max_retries=settings.webhook_max_retries,
        retry_delays=settings.webhook_retry_delays,
        retry_ttl_seconds=settings.webhook_retry_ttl_seconds,
        failed_ttl_seconds=settings.webhook_failed_ttl_seconds,
    )
    return WebhookReconciliationService(
        gateway=gateway,
        booking_service=booking_service,
        notifications=notifications,
        retry_service=retry_service,
    )
