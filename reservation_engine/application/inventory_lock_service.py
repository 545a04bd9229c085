# reservation_engine/application/inventory_lock_service.py

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol
from uuid import uuid4

from reservation_engine.domain.exceptions import CacheUnavailableError
from reservation_engine.domain.inventory import (
    InventoryLock,
    ItemType,
    LockAcquisition,
    LockError,
    counter_key,
    lock_key,
)
from reservation_engine.infrastructure.cache.redis_cache import Cache


logger = logging.getLogger(__name__)


class InventorySource(Protocol):
    def available_quantity(self, item_type: ItemType, item_id: str) -> int | None: ...


class InventoryLockService:
    """
    Item-level reservation over the shared cache.

    Two entries per item:
      lock:{type}:{id}       the single active reservation (create-if-absent, TTL)
      inventory:{type}:{id}  remaining quantity = authoritative - locked, with a TTL
                             never shorter than the lock's

    The create-if-absent write of the lock entry is the only serialisation
    point. Counter updates are read-modify-write under that lock.
    """

    def __init__(
        self,
        cache: Cache,
        inventory: InventorySource,
        lock_ttl_seconds: int = 1800,
        counter_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ):
        self.cache = cache
        self.inventory = inventory
        self.lock_ttl_seconds = lock_ttl_seconds
        self.counter_ttl_seconds = max(counter_ttl_seconds, lock_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -----------------------------
    # acquire
    # -----------------------------
    def acquire(self, item_type: ItemType, item_id: str, quantity: int) -> LockAcquisition:
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        item_type = ItemType(item_type)
        key = lock_key(item_type, item_id)
        now = self._clock()
        lock = InventoryLock(
            lock_id=str(uuid4()),
            item_type=item_type,
            item_id=item_id,
            quantity_reserved=quantity,
            locked_at=now,
            expires_at=now + timedelta(seconds=self.lock_ttl_seconds),
        )
        record = lock.to_record()

        if not self.cache.set(key, record, ttl_seconds=self.lock_ttl_seconds, only_if_absent=True):
            logger.info("Inventory already locked. item=%s:%s", item_type.value, item_id)
            return LockAcquisition(error=LockError.ALREADY_LOCKED)

        try:
            remaining = self._remaining(item_type, item_id)
            if remaining is None:
                self._drop_lock(key, record)
                logger.info("Inventory item not found. item=%s:%s", item_type.value, item_id)
                return LockAcquisition(error=LockError.ITEM_NOT_FOUND)

            if remaining < quantity:
                self._drop_lock(key, record)
                logger.info(
                    "Insufficient inventory. item=%s:%s requested=%s remaining=%s",
                    item_type.value,
                    item_id,
                    quantity,
                    remaining,
                )
                return LockAcquisition(error=LockError.INSUFFICIENT_INVENTORY, remaining=remaining)

            self.cache.set(
                counter_key(item_type, item_id),
                remaining - quantity,
                ttl_seconds=self.counter_ttl_seconds,
            )
        except Exception:
            self._drop_lock_quietly(key, record)
            raise

        logger.info(
            "Inventory locked. item=%s:%s quantity=%s lock_id=%s",
            item_type.value,
            item_id,
            quantity,
            lock.lock_id,
        )
        return LockAcquisition(lock=lock, remaining=remaining - quantity)

    # -----------------------------
    # release / commit / extend
    # -----------------------------
    def release(self, item_type: ItemType, item_id: str, lock_id: str | None) -> bool:
        """
        Deletes the lock and credits its quantity back to the counter.
        A missing lock or a different holder is a silent no-op.
        """
        lock = self._take(item_type, item_id, lock_id)
        if lock is None:
            return False

        self._credit(lock.item_type, lock.item_id, lock.quantity_reserved)
        logger.info(
            "Inventory released. item=%s:%s quantity=%s lock_id=%s",
            lock.item_type.value,
            lock.item_id,
            lock.quantity_reserved,
            lock.lock_id,
        )
        return True

    def commit(self, item_type: ItemType, item_id: str, lock_id: str | None) -> bool:
        """
        Deletes the lock without crediting the counter. Called once the
        authoritative quantity already reflects the confirmed booking.
        """
        lock = self._take(item_type, item_id, lock_id)
        if lock is None:
            # The reservation expired; its decrement may still sit in the counter.
            self.cache.delete(counter_key(item_type, item_id))
            logger.warning(
                "Committed booking without an active lock. item=%s:%s lock_id=%s",
                ItemType(item_type).value,
                item_id,
                lock_id,
            )
            return False

        logger.info(
            "Inventory committed. item=%s:%s quantity=%s lock_id=%s",
            lock.item_type.value,
            lock.item_id,
            lock.quantity_reserved,
            lock.lock_id,
        )
        return True

    def extend(self, item_type: ItemType, item_id: str, lock_id: str | None) -> bool:
        """
        Pushes the holder's expiry out by a full lock TTL. The stored record
        is swapped only if it is still the one that was read, so a caller
        whose lock was released in between cannot extend the next holder.
        """
        if not lock_id:
            return False

        key = lock_key(item_type, item_id)
        record = self.cache.get(key)
        if not record or record.get("lock_id") != lock_id:
            return False

        lock = InventoryLock.from_record(record)
        refreshed = replace(lock, expires_at=self._clock() + timedelta(seconds=self.lock_ttl_seconds))
        if not self.cache.replace_if_equals(key, record, refreshed.to_record(), self.lock_ttl_seconds):
            return False

        self.cache.expire(counter_key(lock.item_type, item_id), self.counter_ttl_seconds)
        logger.info(
            "Inventory lock extended. item=%s:%s lock_id=%s expires_at=%s",
            lock.item_type.value,
            item_id,
            lock_id,
            refreshed.expires_at.isoformat(),
        )
        return True

    def restock(self, item_type: ItemType, item_id: str, quantity: int) -> None:
        """Credits the counter after a confirmed booking was cancelled."""
        self._credit(ItemType(item_type), item_id, quantity)

    def invalidate(self, item_type: ItemType, item_id: str) -> None:
        self.cache.delete(counter_key(item_type, item_id))

    # -----------------------------
    # inspection
    # -----------------------------
    def get_lock(self, item_type: ItemType, item_id: str) -> InventoryLock | None:
        record = self.cache.get(lock_key(item_type, item_id))
        if not record:
            return None
        return InventoryLock.from_record(record)

    def cached_remaining(self, item_type: ItemType, item_id: str) -> int | None:
        value = self.cache.get(counter_key(item_type, item_id))
        return int(value) if value is not None else None

    # -----------------------------
    # internals
    # -----------------------------
    def _remaining(self, item_type: ItemType, item_id: str) -> int | None:
        cached = self.cached_remaining(item_type, item_id)
        if cached is not None:
            return cached
        return self.inventory.available_quantity(item_type, item_id)

    def _take(self, item_type: ItemType, item_id: str, lock_id: str | None) -> InventoryLock | None:
        if not lock_id:
            return None

        key = lock_key(item_type, item_id)
        record = self.cache.get(key)
        if not record or record.get("lock_id") != lock_id:
            return None

        # Only the caller whose delete wins may touch the counter.
        if not self.cache.delete_if_equals(key, record):
            return None
        return InventoryLock.from_record(record)

    def _credit(self, item_type: ItemType, item_id: str, quantity: int) -> None:
        key = counter_key(item_type, item_id)
        current = self.cache.get(key)
        if current is None:
            # Next acquire reloads from the authoritative store.
            return
        self.cache.set(key, int(current) + quantity, ttl_seconds=self.counter_ttl_seconds)

    def _drop_lock(self, key: str, record: dict) -> None:
        self.cache.delete_if_equals(key, record)

    def _drop_lock_quietly(self, key: str, record: dict) -> None:
        try:
            self._drop_lock(key, record)
        except CacheUnavailableError:
            logger.exception("Could not drop lock after failed acquire; TTL will reclaim it. key=%s", key)
