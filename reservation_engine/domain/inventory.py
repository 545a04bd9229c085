# reservation_engine/domain/inventory.py

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


LOCK_KEY_PREFIX = "lock"
COUNTER_KEY_PREFIX = "inventory"


class ItemType(str, Enum):
    HOTEL = "hotel"
    TOUR = "tour"
    FLIGHT = "flight"


class LockError(str, Enum):
    ALREADY_LOCKED = "already_locked"
    INSUFFICIENT_INVENTORY = "insufficient_inventory"
    ITEM_NOT_FOUND = "item_not_found"


def lock_key(item_type: ItemType, item_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{ItemType(item_type).value}:{item_id}"


def counter_key(item_type: ItemType, item_id: str) -> str:
    return f"{COUNTER_KEY_PREFIX}:{ItemType(item_type).value}:{item_id}"


@dataclass(frozen=True)
class InventoryLock:
    """
    Time-boxed reservation of one item.

    Only a caller presenting the same lock_id may release,
    commit or extend the entry stored under lock_key().
    """

    lock_id: str
    item_type: ItemType
    item_id: str
    quantity_reserved: int
    locked_at: datetime
    expires_at: datetime

    def to_record(self) -> dict:
        return {
            "lock_id": self.lock_id,
            "item_type": self.item_type.value,
            "item_id": self.item_id,
            "quantity_reserved": self.quantity_reserved,
            "locked_at": self.locked_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict) -> "InventoryLock":
        return cls(
            lock_id=record["lock_id"],
            item_type=ItemType(record["item_type"]),
            item_id=record["item_id"],
            quantity_reserved=int(record["quantity_reserved"]),
            locked_at=datetime.fromisoformat(record["locked_at"]),
            expires_at=datetime.fromisoformat(record["expires_at"]),
        )


@dataclass(frozen=True)
class LockAcquisition:
    """Outcome of an acquire attempt: either a lock or an expected rejection."""

    lock: InventoryLock | None = None
    error: LockError | None = None
    remaining: int | None = None

    @property
    def ok(self) -> bool:
        return self.lock is not None

    @property
    def lock_id(self) -> str | None:
        return self.lock.lock_id if self.lock else None
