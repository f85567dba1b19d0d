from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.medstock.core.context import Actor
from app.medstock.db.models import TransferHistory
from app.medstock.repos.transfers import TransferRepository
from app.medstock.services.transfer_state import HistoryAction


@dataclass(frozen=True)
class HistoryRecord:
    transfer_id: object
    action: HistoryAction
    to_status: str
    actor: Actor
    from_status: str | None = None
    item_id: object | None = None
    notes: str | None = None
    details: dict | None = None


class TransferHistoryRecorder:
    """Append-only writer of transfer history rows.

    Rows join the caller's transaction; the actor is stored as a snapshot so
    later role changes do not rewrite the trail.
    """

    def __init__(self, db):
        self.db = db
        self.repo = TransferRepository(db)

    def append(self, record: HistoryRecord, *, recorded_at: datetime | None = None) -> TransferHistory:
        entry = TransferHistory(
            transfer_id=record.transfer_id,
            item_id=record.item_id,
            sequence=self.repo.last_history_sequence(record.transfer_id) + 1,
            action=HistoryAction(record.action).value,
            from_status=_status_value(record.from_status),
            to_status=_status_value(record.to_status),
            changed_by_id=record.actor.user_id,
            changed_by=record.actor.snapshot(),
            notes=record.notes,
            details=record.details,
            created_at=recorded_at or datetime.utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry


def _status_value(status) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", status)
