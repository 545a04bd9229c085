# reservation_engine/infrastructure/repositories/inventory_repository.py

import logging

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy import select

from reservation_engine.domain.inventory import ItemType
from reservation_engine.infrastructure.db.models import InventoryItem
from reservation_engine.infrastructure.db.session import session_scope


logger = logging.getLogger(__name__)


class InventoryRepository:

    def __init__(self, db: Session):
        self.db = db

    def lock_item(self, item_type: ItemType, item_id: str) -> InventoryItem | None:
        """
        SELECT ... FOR UPDATE
        Serialises confirm/cancel adjustments on the same item.
        """

        stmt = (
            select(InventoryItem)
            .where(InventoryItem.item_type == item_type)
            .where(InventoryItem.item_id == item_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, item_type: ItemType, item_id: str) -> InventoryItem | None:
        stmt = (
            select(InventoryItem)
            .where(InventoryItem.item_type == item_type)
            .where(InventoryItem.item_id == item_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_or_reset(
        self,
        item_type: ItemType,
        item_id: str,
        total_quantity: int,
        name: str = "",
    ) -> InventoryItem:
        item = self.get(item_type, item_id)

        if item:
            item.total_quantity = total_quantity
            item.available_quantity = total_quantity
            if name:
                item.name = name
            return item

        item = InventoryItem(
            item_type=item_type,
            item_id=item_id,
            name=name,
            total_quantity=total_quantity,
            available_quantity=total_quantity,
        )
        self.db.add(item)
        return item

    def consume(
        self,
        item_type: ItemType,
        item_id: str,
        quantity: int,
    ) -> int:
        """Subtracts a confirmed quantity and returns how much could not be covered."""

        item = self.lock_item(item_type, item_id)
        if item is None:
            logger.error("Confirmed booking for unknown item %s:%s", item_type.value, item_id)
            return quantity

        covered = min(item.available_quantity, quantity)
        item.available_quantity -= covered
        return quantity - covered

    def restore(
        self,
        item_type: ItemType,
        item_id: str,
        quantity: int,
    ) -> None:

        item = self.lock_item(item_type, item_id)
        if item is None:
            return
        item.available_quantity = min(
            item.total_quantity,
            item.available_quantity + quantity,
        )


class SqlInventorySource:
    """Authoritative-quantity lookup used by the lock service on a counter miss."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def available_quantity(self, item_type: ItemType, item_id: str) -> int | None:
        with session_scope(self.session_factory) as db:
            item = InventoryRepository(db).get(item_type, item_id)
            return item.available_quantity if item else None
