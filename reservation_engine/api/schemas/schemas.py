from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from reservation_engine.domain.inventory import ItemType


class GuestInfo(BaseModel):
    name: str
    email: str | None = None
    phone: str | None = None


class CreateBookingRequest(BaseModel):
    item_type: ItemType
    item_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    total_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    guest_info: GuestInfo
    special_requests: str | None = None


class BookingResponse(BaseModel):
    id: str
    booking_reference: str
    user_id: str
    item_type: ItemType
    item_id: str
    quantity: int
    amount_paise: int
    currency: str
    status: str
    lock_id: str | None = None
    cancellation_reason: str | None = None
    confirmed_at: datetime | None = None


class PaymentOrderHandle(BaseModel):
    key_id: str
    order_id: str
    amount: int
    currency: str
    receipt: str


class CreateBookingResponse(BaseModel):
    booking: BookingResponse
    payment_order: PaymentOrderHandle
    lock_id: str


class CancelBookingRequest(BaseModel):
    reason: str = Field(default="Cancelled by user", max_length=500)


class ExtendLockResponse(BaseModel):
    booking_id: str
    extended: bool


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(default="Requested by customer", max_length=500)


class RefundResponse(BaseModel):
    refund_id: str
    booking_id: str
    amount_paise: int
    currency: str
    status: str


class WebhookStatusResponse(BaseModel):
    webhook_id: str
    retry: dict | None = None
    failed: dict | None = None


class NotificationOutboxResponse(BaseModel):
    id: str
    booking_id: str
    kind: str
    status: str
    attempts: int
    last_error: str | None = None
    created_at: str


class InventoryItemRequest(BaseModel):
    item_type: ItemType
    item_id: str = Field(min_length=1, max_length=64)
    total_quantity: int = Field(ge=0)
    name: str = ""


class InventoryStatusResponse(BaseModel):
    item_type: ItemType
    item_id: str
    name: str
    total_quantity: int
    available_quantity: int
    cached_remaining: int | None = None
    active_lock: dict | None = None
