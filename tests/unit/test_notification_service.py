# tests/unit/test_notification_service.py

from decimal import Decimal

from reservation_engine.application.notification_service import Channel, NotificationKind
from reservation_engine.domain.inventory import ItemType


def _booking(booking_service, seed_item):
    seed_item(ItemType.TOUR, "T1", 5)
    created = booking_service.create_booking(
        user_id="user-1",
        item_type=ItemType.TOUR,
        item_id="T1",
        quantity=1,
        total_price=Decimal("1000"),
        guest_info={"name": "Ravi Menon", "phone": "+919800000002"},
    )
    return created.booking


def test_confirmation_goes_to_every_channel(notification_service, booking_service, seed_item, sender):
    booking = _booking(booking_service, seed_item)

    results = notification_service.notify(NotificationKind.BOOKING_CONFIRMATION, booking)

    assert [r.channel for r in results] == [Channel.EMAIL, Channel.SMS, Channel.WHATSAPP]
    assert all(r.success for r in results)
    assert sender.sent[0][1].booking_reference == booking.booking_reference

    [entry] = notification_service.list_outbox("SENT", 10)
    assert entry.kind == "booking_confirmation"
    assert entry.attempts == 3


def test_payment_failure_skips_email(notification_service, booking_service, seed_item, sender):
    booking = _booking(booking_service, seed_item)

    notification_service.notify(NotificationKind.PAYMENT_FAILURE, booking)

    assert [channel for channel, _ in sender.sent] == [Channel.SMS, Channel.WHATSAPP]


def test_same_booking_and_kind_is_sent_once(notification_service, booking_service, seed_item, sender):
    booking = _booking(booking_service, seed_item)

    notification_service.notify(NotificationKind.BOOKING_CONFIRMATION, booking)
    second = notification_service.notify(NotificationKind.BOOKING_CONFIRMATION, booking)

    assert second is None
    assert len(sender.sent) == 3


def test_transient_channel_failure_is_retried(notification_service, booking_service, seed_item, sender):
    booking = _booking(booking_service, seed_item)
    sender.failures[Channel.SMS] = 2

    results = notification_service.notify(NotificationKind.PAYMENT_FAILURE, booking)

    sms = results[0]
    assert sms.success
    assert sms.attempts == 3


def test_exhausted_channel_marks_outbox_failed(notification_service, booking_service, seed_item, sender):
    booking = _booking(booking_service, seed_item)
    sender.failures[Channel.WHATSAPP] = 100

    results = notification_service.notify(NotificationKind.PAYMENT_FAILURE, booking)

    whatsapp = results[1]
    assert not whatsapp.success
    assert whatsapp.attempts == notification_service.max_retries + 1

    [entry] = notification_service.list_outbox("FAILED", 10)
    assert "whatsapp" in entry.last_error


def test_dispatch_errors_never_propagate(notification_service, booking_service, seed_item, monkeypatch):
    booking = _booking(booking_service, seed_item)

    def broken(*args, **kwargs):
        raise RuntimeError("outbox table missing")

    monkeypatch.setattr(notification_service, "_notify", broken)

    assert notification_service.notify(NotificationKind.BOOKING_CONFIRMATION, booking) is None
