# tests/conftest.py

import hashlib
import hmac
import json
import os
import threading

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from reservation_engine.api.dependencies import (
    get_cache,
    get_gateway,
    get_notification_sender,
    get_session_factory,
)
from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.inventory_lock_service import InventoryLockService
from reservation_engine.application.notification_service import NotificationService
from reservation_engine.application.webhook_service import (
    WebhookReconciliationService,
    WebhookRetryService,
)
from reservation_engine.config import Settings, get_settings
from reservation_engine.domain.exceptions import CacheUnavailableError, PaymentGatewayError
from reservation_engine.infrastructure.cache.redis_cache import serialize
from reservation_engine.infrastructure.db.models import Base
from reservation_engine.infrastructure.db.session import (
    build_engine,
    build_session_factory,
    session_scope,
)
from reservation_engine.infrastructure.gateway.razorpay_gateway import RazorpayGateway
from reservation_engine.infrastructure.repositories.inventory_repository import (
    InventoryRepository,
    SqlInventorySource,
)
from reservation_engine.main import app


WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------
# FAKES
# ---------------------

class InMemoryCache:
    """Redis stand-in: JSON values, per-key TTL on a manual clock, outage switch."""

    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}
        self._mutex = threading.Lock()
        self.now = 0.0
        self.available = True

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailableError("cache is down")

    def _entry(self, key):
        entry = self._data.get(key)
        if entry and entry[1] is not None and entry[1] <= self.now:
            del self._data[key]
            return None
        return entry

    def get(self, key):
        with self._mutex:
            self._check()
            entry = self._entry(key)
            return json.loads(entry[0]) if entry else None

    def set(self, key, value, ttl_seconds=None, only_if_absent=False):
        with self._mutex:
            self._check()
            if only_if_absent and self._entry(key):
                return False
            expires_at = self.now + ttl_seconds if ttl_seconds else None
            self._data[key] = (serialize(value), expires_at)
            return True

    def delete(self, key):
        with self._mutex:
            self._check()
            return self._data.pop(key, None) is not None

    def delete_if_equals(self, key, expected):
        with self._mutex:
            self._check()
            entry = self._entry(key)
            if entry and entry[0] == serialize(expected):
                del self._data[key]
                return True
            return False

    def replace_if_equals(self, key, expected, value, ttl_seconds):
        with self._mutex:
            self._check()
            entry = self._entry(key)
            if not entry or entry[0] != serialize(expected):
                return False
            self._data[key] = (serialize(value), self.now + ttl_seconds)
            return True

    def expire(self, key, ttl_seconds):
        with self._mutex:
            self._check()
            entry = self._entry(key)
            if not entry:
                return False
            self._data[key] = (entry[0], self.now + ttl_seconds)
            return True

    def ttl(self, key):
        entry = self._entry(key)
        if not entry:
            return None
        return None if entry[1] is None else entry[1] - self.now


class FakeGateway(RazorpayGateway):
    """Order and refund calls stay local; signature checks use the real SDK."""

    def __init__(self, webhook_secret=WEBHOOK_SECRET):
        super().__init__("rzp_test_key", "rzp_test_secret", webhook_secret)
        self.orders: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.fail_orders = False

    def create_order(self, amount_paise, currency, receipt, notes):
        if self.fail_orders:
            raise PaymentGatewayError("Order creation failed: gateway timeout")
        order = {
            "id": f"order_{len(self.orders) + 1:06d}",
            "entity": "order",
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
            "status": "created",
        }
        self.orders[order["id"]] = order
        return order

    def refund(self, payment_id, amount_paise, notes):
        refund = {
            "id": f"rfnd_{len(self.refunds) + 1:06d}",
            "payment_id": payment_id,
            "currency": "INR",
            "status": "pending",
            "notes": notes,
        }
        if amount_paise is not None:
            refund["amount"] = amount_paise
        self.refunds.append(refund)
        return refund


class RecordingSender:
    def __init__(self):
        self.sent = []
        self.failures: dict = {}

    def send(self, channel, message):
        remaining = self.failures.get(channel, 0)
        if remaining:
            self.failures[channel] = remaining - 1
            raise RuntimeError(f"{channel.value} provider unavailable")
        self.sent.append((channel, message))
        return f"msg_{len(self.sent)}"


class StaticInventory:
    def __init__(self, quantities=None):
        self.quantities = dict(quantities or {})

    def available_quantity(self, item_type, item_id):
        return self.quantities.get((item_type.value, item_id))


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _no_sleep(seconds):
    return None


# ---------------------
# FIXTURES
# ---------------------

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret=WEBHOOK_SECRET,
        webhook_retry_delays=(0.0,),
        notification_retry_delays=(0.0,),
    )


@pytest.fixture
def db_engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def seed_item(session_factory):
    def _seed(item_type, item_id, quantity, name=""):
        with session_scope(session_factory) as db:
            InventoryRepository(db).create_or_reset(item_type, item_id, quantity, name=name)

    return _seed


@pytest.fixture
def lock_service(cache, session_factory, settings):
    return InventoryLockService(
        cache=cache,
        inventory=SqlInventorySource(session_factory),
        lock_ttl_seconds=settings.inventory_lock_ttl_seconds,
        counter_ttl_seconds=settings.counter_ttl_seconds,
    )


@pytest.fixture
def booking_service(session_factory, lock_service, gateway):
    return BookingService(
        session_factory=session_factory,
        lock_service=lock_service,
        gateway=gateway,
    )


@pytest.fixture
def notification_service(session_factory, sender, settings):
    return NotificationService(
        session_factory=session_factory,
        sender=sender,
        max_retries=settings.notification_max_retries,
        retry_delays=settings.notification_retry_delays,
        sleep=_no_sleep,
    )


@pytest.fixture
def retry_service(cache, settings):
    return WebhookRetryService(
        cache=cache,
        max_retries=settings.webhook_max_retries,
        retry_delays=settings.webhook_retry_delays,
        sleep=_no_sleep,
    )


@pytest.fixture
def webhook_service(gateway, booking_service, notification_service, retry_service):
    return WebhookReconciliationService(
        gateway=gateway,
        booking_service=booking_service,
        notifications=notification_service,
        retry_service=retry_service,
    )


@pytest.fixture
def make_webhook():
    def _make(event_type, entity_name, entity):
        envelope = {
            "entity": "event",
            "account_id": "acc_test",
            "event": event_type,
            "contains": [entity_name],
            "payload": {entity_name: {"entity": entity}},
            "created_at": 1767225600,
        }
        body = json.dumps(envelope).encode("utf-8")
        return body, sign(body)

    return _make


@pytest.fixture
def client(session_factory, cache, gateway, sender, settings):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_sender] = lambda: sender
    app.dependency_overrides[get_settings] = lambda: settings

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_lock_service(cache):
    def _make(quantities, **kwargs):
        return InventoryLockService(cache=cache, inventory=StaticInventory(quantities), **kwargs)

    return _make
