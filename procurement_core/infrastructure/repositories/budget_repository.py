from __future__ import annotations

from typing import Any, Optional

from procurement_core.domain.contracts import Budget, to_datetime, to_decimal, utc_now
from procurement_core.infrastructure.repositories.base import BaseRepository, row_to_dict, to_db_datetime


class BudgetRepository(BaseRepository):
    def get_by_id(self, db, budget_id: str) -> Optional[Budget]:
        row = db.execute(
            """
            SELECT id, org_unit_id, fiscal_year, total_amount, available_amount, currency,
                   status, version, created_at, updated_at
            FROM budgets
            WHERE id = ?
            LIMIT 1
            """,
            (budget_id,),
        ).fetchone()
        return self._to_budget(row) if row else None

    def insert(self, db, budget: Budget) -> None:
        db.execute(
            """
            INSERT INTO budgets (
                id, org_unit_id, fiscal_year, total_amount, available_amount, currency,
                status, version, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                budget.id,
                budget.org_unit_id,
                budget.fiscal_year,
                str(budget.total_amount),
                str(budget.available_amount),
                budget.currency,
                budget.status,
                int(budget.version),
                to_db_datetime(budget.created_at),
                to_db_datetime(budget.updated_at),
            ),
        )

    def update_if_version(self, db, budget: Budget, expected_version: int) -> bool:
        cursor = db.execute(
            """
            UPDATE budgets
            SET total_amount = ?, available_amount = ?, status = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                str(budget.total_amount),
                str(budget.available_amount),
                budget.status,
                int(budget.version),
                to_db_datetime(budget.updated_at),
                budget.id,
                int(expected_version),
            ),
        )
        return self.rowcount(cursor) == 1

    @staticmethod
    def _to_budget(row: Any) -> Budget:
        data = row_to_dict(row)
        created_at = to_datetime(data.get("created_at")) or utc_now()
        return Budget(
            id=str(data["id"]),
            org_unit_id=data.get("org_unit_id"),
            fiscal_year=str(data.get("fiscal_year") or ""),
            total_amount=to_decimal(data.get("total_amount")),
            available_amount=to_decimal(data.get("available_amount")),
            currency=str(data.get("currency") or ""),
            status=str(data.get("status") or "ACTIVE"),
            version=int(data.get("version") or 1),
            created_at=created_at,
            updated_at=to_datetime(data.get("updated_at")) or created_at,
        )
