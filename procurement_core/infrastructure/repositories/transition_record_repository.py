from __future__ import annotations

from typing import Any, List, Optional

from procurement_core.domain.contracts import TransitionRecord, to_datetime, to_decimal, utc_now
from procurement_core.infrastructure.repositories.base import (
    BaseRepository,
    row_to_dict,
    to_db_datetime,
    to_json,
    to_payload,
)


class TransitionRecordRepository(BaseRepository):
    """Append-only: records are inserted and read, never updated or deleted."""

    def add(self, db, record: TransitionRecord) -> None:
        db.execute(
            """
            INSERT INTO transition_records (
                id, entity_id, entity_type, transition, from_status, to_status, actor_id, actor_role,
                attempt_id, budget_id, budget_delta, result_snapshot, occurred_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.entity_id,
                record.entity_type,
                record.transition,
                record.from_status,
                record.to_status,
                record.actor_id,
                record.actor_role,
                record.attempt_id,
                record.budget_id,
                str(record.budget_delta),
                to_json(record.result_snapshot),
                to_db_datetime(record.occurred_at),
            ),
        )

    def find_by_attempt(self, db, entity_id: str, attempt_id: str, transition: str) -> Optional[TransitionRecord]:
        row = db.execute(
            """
            SELECT *
            FROM transition_records
            WHERE entity_id = ? AND attempt_id = ? AND transition = ?
            ORDER BY occurred_at, id
            LIMIT 1
            """,
            (entity_id, attempt_id, transition),
        ).fetchone()
        return self._to_record(row) if row else None

    def list_for_entity(self, db, entity_id: str, *, limit: int = 200) -> List[TransitionRecord]:
        rows = db.execute(
            """
            SELECT *
            FROM transition_records
            WHERE entity_id = ?
            ORDER BY occurred_at, id
            LIMIT ?
            """,
            (entity_id, max(0, int(limit))),
        ).fetchall()
        return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row: Any) -> TransitionRecord:
        data = row_to_dict(row)
        return TransitionRecord(
            id=str(data["id"]),
            entity_id=str(data["entity_id"]),
            entity_type=str(data["entity_type"]),
            transition=str(data["transition"]),
            from_status=str(data["from_status"]),
            to_status=str(data["to_status"]),
            actor_id=str(data["actor_id"]),
            actor_role=str(data["actor_role"]),
            attempt_id=str(data["attempt_id"]),
            budget_id=data.get("budget_id"),
            budget_delta=to_decimal(data.get("budget_delta")),
            occurred_at=to_datetime(data.get("occurred_at")) or utc_now(),
            result_snapshot=to_payload(data.get("result_snapshot")),
        )
