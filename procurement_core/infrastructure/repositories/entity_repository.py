from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Tuple

from procurement_core.domain.contracts import EntityRef, LifecycleEntity, Money, to_datetime, utc_now
from procurement_core.infrastructure.repositories.base import (
    BaseRepository,
    row_to_dict,
    to_db_datetime,
    to_json,
    to_payload,
)


_ENTITY_COLUMNS = """
    e.id, e.entity_type, e.status, e.amount, e.currency, e.owner_org_unit_id, e.budget_id,
    e.attributes, e.version, e.created_at, e.updated_at
"""


class EntityRepository(BaseRepository):
    def get_by_id(self, db, entity_id: str) -> Optional[LifecycleEntity]:
        row = db.execute(
            f"""
            SELECT {_ENTITY_COLUMNS}
            FROM lifecycle_entities e
            WHERE e.id = ?
            LIMIT 1
            """,
            (entity_id,),
        ).fetchone()
        if not row:
            return None
        return self._to_entity(row, self._links_for(db, entity_id))

    def list_linked(self, db, target_id: str, entity_type: str | None = None) -> List[LifecycleEntity]:
        query = f"""
            SELECT DISTINCT {_ENTITY_COLUMNS}
            FROM lifecycle_entities e
            JOIN entity_links l ON l.entity_id = e.id
            WHERE l.target_id = ?
        """
        params: list[Any] = [target_id]
        if entity_type:
            query += " AND e.entity_type = ?"
            params.append(entity_type)
        query += " ORDER BY e.created_at, e.id"
        rows = db.execute(query, params).fetchall()
        return [self._to_entity(row, self._links_for(db, row_to_dict(row)["id"])) for row in rows]

    def list_by_status(
        self,
        db,
        entity_type: str,
        status: str,
        *,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[LifecycleEntity]:
        query = f"""
            SELECT {_ENTITY_COLUMNS}
            FROM lifecycle_entities e
            WHERE e.entity_type = ? AND e.status = ?
        """
        params: list[Any] = [entity_type, status]
        if after is not None:
            after_at = to_db_datetime(after[0])
            query += " AND (e.updated_at > ? OR (e.updated_at = ? AND e.id > ?))"
            params.extend([after_at, after_at, after[1]])
        query += " ORDER BY e.updated_at, e.id LIMIT ?"
        params.append(max(0, int(limit)))
        rows = db.execute(query, params).fetchall()
        return [self._to_entity(row, self._links_for(db, row_to_dict(row)["id"])) for row in rows]

    def insert(self, db, entity: LifecycleEntity) -> None:
        db.execute(
            """
            INSERT INTO lifecycle_entities (
                id, entity_type, status, amount, currency, owner_org_unit_id, budget_id,
                attributes, version, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity.id,
                entity.entity_type,
                entity.status,
                str(entity.amount.amount),
                entity.amount.currency,
                entity.owner_org_unit_id,
                entity.budget_id,
                to_json(entity.attributes),
                int(entity.version),
                to_db_datetime(entity.created_at),
                to_db_datetime(entity.updated_at),
            ),
        )
        for position, link in enumerate(entity.links):
            db.execute(
                """
                INSERT INTO entity_links (entity_id, position, target_type, target_id)
                VALUES (?, ?, ?, ?)
                """,
                (entity.id, position, link.entity_type, link.entity_id),
            )

    def update_if_version(self, db, entity: LifecycleEntity, expected_version: int) -> bool:
        # Currency and links are immutable after creation; only lifecycle fields move.
        cursor = db.execute(
            """
            UPDATE lifecycle_entities
            SET status = ?, attributes = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                entity.status,
                to_json(entity.attributes),
                int(entity.version),
                to_db_datetime(entity.updated_at),
                entity.id,
                int(expected_version),
            ),
        )
        return self.rowcount(cursor) == 1

    def _links_for(self, db, entity_id: str) -> tuple[EntityRef, ...]:
        rows = db.execute(
            """
            SELECT target_type, target_id
            FROM entity_links
            WHERE entity_id = ?
            ORDER BY position
            """,
            (entity_id,),
        ).fetchall()
        links = []
        for row in rows:
            data = row_to_dict(row)
            links.append(EntityRef(entity_type=str(data["target_type"]), entity_id=str(data["target_id"])))
        return tuple(links)

    @staticmethod
    def _to_entity(row: Any, links: tuple[EntityRef, ...]) -> LifecycleEntity:
        data = row_to_dict(row)
        created_at = to_datetime(data.get("created_at")) or utc_now()
        return LifecycleEntity(
            id=str(data["id"]),
            entity_type=str(data["entity_type"]),
            status=str(data["status"]),
            amount=Money.of(data.get("amount"), str(data.get("currency") or "")),
            links=links,
            owner_org_unit_id=data.get("owner_org_unit_id"),
            budget_id=data.get("budget_id"),
            version=int(data.get("version") or 1),
            created_at=created_at,
            updated_at=to_datetime(data.get("updated_at")) or created_at,
            attributes=to_payload(data.get("attributes")),
        )
