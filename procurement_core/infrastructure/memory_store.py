from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional, Sequence, Tuple

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


class InMemoryEntityStore(EntityStore):
    """Process-local store with the same atomicity and version rules as the SQL one."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._entities: Dict[str, LifecycleEntity] = {}
        self._budgets: Dict[str, Budget] = {}
        self._records: List[TransitionRecord] = []
        self._record_keys: set[Tuple[str, str, str, str]] = set()

    def get(self, entity_id: str) -> Optional[LifecycleEntity]:
        with self._lock:
            return self._entities.get(entity_id)

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        with self._lock:
            return self._budgets.get(budget_id)

    def list_linked(self, target_id: str, entity_type: str | None = None) -> List[LifecycleEntity]:
        with self._lock:
            matches = [
                entity
                for entity in self._entities.values()
                if target_id in entity.linked_ids()
                and (entity_type is None or entity.entity_type == entity_type)
            ]
        return sorted(matches, key=lambda item: (item.created_at, item.id))

    def list_by_status(
        self,
        entity_type: str,
        status: str,
        *,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[LifecycleEntity]:
        with self._lock:
            matches = [
                entity
                for entity in self._entities.values()
                if entity.entity_type == entity_type and entity.status == status
            ]
        if after is not None:
            matches = [entity for entity in matches if (entity.updated_at, entity.id) > after]
        matches.sort(key=lambda item: (item.updated_at, item.id))
        return matches[: max(0, int(limit))]

    def find_transition_record(
        self,
        entity_id: str,
        attempt_id: str,
        transition: str,
    ) -> Optional[TransitionRecord]:
        with self._lock:
            for record in self._records:
                if (
                    record.entity_id == entity_id
                    and record.attempt_id == attempt_id
                    and record.transition == transition
                ):
                    return record
        return None

    def list_transition_records(self, entity_id: str, *, limit: int = 200) -> List[TransitionRecord]:
        with self._lock:
            matches = [record for record in self._records if record.entity_id == entity_id]
        return matches[: max(0, int(limit))]

    def commit_atomic(
        self,
        *,
        entity_writes: Sequence[EntityWrite] = (),
        budget_writes: Sequence[BudgetWrite] = (),
        records: Sequence[TransitionRecord] = (),
    ) -> None:
        with self._lock:
            # Validate everything first so a failure leaves no partial state.
            for write in budget_writes:
                current = self._budgets.get(write.budget.id)
                if current is None or current.version != write.expected_version:
                    raise ConcurrencyConflict(
                        f"budget {write.budget.id} changed since version {write.expected_version}",
                        kind="budget",
                        identifier=write.budget.id,
                    )
            for write in entity_writes:
                current = self._entities.get(write.entity.id)
                if write.expected_version is None:
                    if current is not None:
                        raise ConcurrencyConflict(
                            f"entity {write.entity.id} already exists",
                            kind="entity",
                            identifier=write.entity.id,
                        )
                    continue
                if current is None or current.version != write.expected_version:
                    raise ConcurrencyConflict(
                        f"entity {write.entity.id} changed since version {write.expected_version}",
                        kind="entity",
                        identifier=write.entity.id,
                    )
            pending_keys: set[Tuple[str, str, str, str]] = set()
            for record in records:
                key = _record_key(record)
                if key in self._record_keys or key in pending_keys:
                    raise DuplicateTransitionRecord(
                        f"transition attempt {record.attempt_id} already recorded",
                        entity_id=record.entity_id,
                        attempt_id=record.attempt_id,
                    )
                pending_keys.add(key)

            for write in budget_writes:
                self._budgets[write.budget.id] = write.budget
            for write in entity_writes:
                self._entities[write.entity.id] = write.entity
            self._records.extend(records)
            self._record_keys.update(pending_keys)

    def insert_entity(self, entity: LifecycleEntity) -> None:
        self.commit_atomic(entity_writes=[EntityWrite(entity=entity, expected_version=None)])

    def insert_budget(self, budget: Budget) -> None:
        with self._lock:
            if budget.id in self._budgets:
                raise ValueError(f"budget {budget.id} already exists")
            self._budgets[budget.id] = budget


def _record_key(record: TransitionRecord) -> Tuple[str, str, str, str]:
    return (record.entity_id, record.from_status, record.to_status, record.attempt_id)
