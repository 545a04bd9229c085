from reservation_engine.config import get_settings
from reservation_engine.domain.inventory import ItemType, counter_key
from reservation_engine.infrastructure.cache.redis_cache import RedisCache
from reservation_engine.infrastructure.db.models import Base
from reservation_engine.infrastructure.db.session import SessionLocal, engine
from reservation_engine.infrastructure.repositories.inventory_repository import InventoryRepository


INVENTORY = [
    {"item_type": ItemType.HOTEL, "item_id": "H1", "name": "Taj Lake Palace, Udaipur", "total_quantity": 12},
    {"item_type": ItemType.HOTEL, "item_id": "H2", "name": "Leela Palace, Bengaluru", "total_quantity": 30},
    {"item_type": ItemType.TOUR, "item_id": "T1", "name": "Old Delhi Food Walk", "total_quantity": 15},
    {"item_type": ItemType.TOUR, "item_id": "T2", "name": "Kerala Backwaters Houseboat", "total_quantity": 6},
    {"item_type": ItemType.FLIGHT, "item_id": "AI-101", "name": "Delhi to Mumbai, Air India", "total_quantity": 180},
    {"item_type": ItemType.FLIGHT, "item_id": "6E-204", "name": "Bengaluru to Goa, IndiGo", "total_quantity": 186},
]


def seed_inventory(db) -> None:
    repository = InventoryRepository(db)
    for item in INVENTORY:
        repository.create_or_reset(
            item["item_type"],
            item["item_id"],
            item["total_quantity"],
            name=item["name"],
        )


def clear_counters(cache: RedisCache) -> None:
    # Counters are rebuilt from the reset rows on the next acquire.
    for item in INVENTORY:
        cache.delete(counter_key(item["item_type"], item["item_id"]))


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_inventory(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    clear_counters(RedisCache.from_url(get_settings().redis_url))
    print(f"Seed complete: {len(INVENTORY)} hotels, tours and flights reset.")


if __name__ == "__main__":
    main()
