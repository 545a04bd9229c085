# reservation_engine/infrastructure/repositories/notification_repository.py

import json
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select

from reservation_engine.infrastructure.db.models import NotificationOutbox


class NotificationOutboxRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, entry_id: str) -> NotificationOutbox | None:
        stmt = select(NotificationOutbox).where(NotificationOutbox.id == entry_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_dedupe_key(self, dedupe_key: str) -> NotificationOutbox | None:
        stmt = select(NotificationOutbox).where(NotificationOutbox.dedupe_key == dedupe_key)
        return self.db.execute(stmt).scalar_one_or_none()

    def add_once(
        self,
        booking_id: str,
        kind: str,
        payload: dict,
        dedupe_key: str,
    ) -> NotificationOutbox | None:
        """Returns the new row, or None when the dedupe key was already recorded."""

        if self.get_by_dedupe_key(dedupe_key):
            return None

        entry = NotificationOutbox(
            booking_id=booking_id,
            kind=kind,
            payload=json.dumps(payload, sort_keys=True),
            dedupe_key=dedupe_key,
            status="PENDING",
            attempts=0,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_by_status(self, status: str, limit: int) -> list[NotificationOutbox]:
        stmt = (
            select(NotificationOutbox)
            .where(NotificationOutbox.status == status)
            .order_by(NotificationOutbox.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def record_result(
        self,
        entry: NotificationOutbox,
        delivered: bool,
        attempts: int,
        last_error: str | None,
    ) -> None:
        entry.status = "SENT" if delivered else "FAILED"
        entry.attempts += attempts
        entry.last_error = last_error
        if delivered:
            entry.sent_at = datetime.now(timezone.utc)
