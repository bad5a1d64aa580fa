from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from procurement_core.db import Database
from procurement_core.domain.contracts import (
    Budget,
    BudgetWrite,
    EntityWrite,
    LifecycleEntity,
    TransitionRecord,
)
from procurement_core.domain.entity_store import (
    ConcurrencyConflict,
    DuplicateTransitionRecord,
    EntityStore,
)
from procurement_core.infrastructure.repositories.base import is_unique_violation
from procurement_core.infrastructure.repositories.budget_repository import BudgetRepository
from procurement_core.infrastructure.repositories.entity_repository import EntityRepository
from procurement_core.infrastructure.repositories.transition_record_repository import (
    TransitionRecordRepository,
)


_RECORD_CONSTRAINT_MARKERS = ("uq_transition_records_attempt", "transition_records.")
_ENTITY_CONSTRAINT_MARKERS = ("lifecycle_entities_pkey", "lifecycle_entities.id")


class SqlEntityStore(EntityStore):
    def __init__(
        self,
        db: Database,
        *,
        entities: EntityRepository | None = None,
        budgets: BudgetRepository | None = None,
        records: TransitionRecordRepository | None = None,
    ) -> None:
        self.db = db
        self.entities = entities or EntityRepository()
        self.budgets = budgets or BudgetRepository()
        self.records = records or TransitionRecordRepository()

    def get(self, entity_id: str) -> Optional[LifecycleEntity]:
        return self.entities.get_by_id(self.db, entity_id)

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        return self.budgets.get_by_id(self.db, budget_id)

    def list_linked(self, target_id: str, entity_type: str | None = None) -> List[LifecycleEntity]:
        return self.entities.list_linked(self.db, target_id, entity_type)

    def list_by_status(
        self,
        entity_type: str,
        status: str,
        *,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[LifecycleEntity]:
        return self.entities.list_by_status(self.db, entity_type, status, limit=limit, after=after)

    def find_transition_record(
        self,
        entity_id: str,
        attempt_id: str,
        transition: str,
    ) -> Optional[TransitionRecord]:
        return self.records.find_by_attempt(self.db, entity_id, attempt_id, transition)

    def list_transition_records(self, entity_id: str, *, limit: int = 200) -> List[TransitionRecord]:
        return self.records.list_for_entity(self.db, entity_id, limit=limit)

    def commit_atomic(
        self,
        *,
        entity_writes: Sequence[EntityWrite] = (),
        budget_writes: Sequence[BudgetWrite] = (),
        records: Sequence[TransitionRecord] = (),
    ) -> None:
        try:
            with self.db.transaction() as tx:
                for write in budget_writes:
                    if not self.budgets.update_if_version(tx, write.budget, write.expected_version):
                        raise ConcurrencyConflict(
                            f"budget {write.budget.id} changed since version {write.expected_version}",
                            kind="budget",
                            identifier=write.budget.id,
                        )
                for write in entity_writes:
                    if write.expected_version is None:
                        self.entities.insert(tx, write.entity)
                        continue
                    if not self.entities.update_if_version(tx, write.entity, write.expected_version):
                        raise ConcurrencyConflict(
                            f"entity {write.entity.id} changed since version {write.expected_version}",
                            kind="entity",
                            identifier=write.entity.id,
                        )
                for record in records:
                    self.records.add(tx, record)
        except ConcurrencyConflict:
            raise
        except Exception as exc:
            if records and is_unique_violation(exc, _RECORD_CONSTRAINT_MARKERS):
                first = records[0]
                raise DuplicateTransitionRecord(
                    f"transition attempt {first.attempt_id} already recorded",
                    entity_id=first.entity_id,
                    attempt_id=first.attempt_id,
                ) from exc
            inserted = [write.entity.id for write in entity_writes if write.expected_version is None]
            if inserted and is_unique_violation(exc, _ENTITY_CONSTRAINT_MARKERS):
                raise ConcurrencyConflict(
                    f"entity {inserted[0]} already exists",
                    kind="entity",
                    identifier=inserted[0],
                ) from exc
            raise

    def insert_entity(self, entity: LifecycleEntity) -> None:
        self.commit_atomic(entity_writes=[EntityWrite(entity=entity, expected_version=None)])

    def insert_budget(self, budget: Budget) -> None:
        with self.db.transaction() as tx:
            self.budgets.insert(tx, budget)
