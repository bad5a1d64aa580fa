from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from procurement_core.domain.contracts import (
    Budget,
    BudgetWrite,
    EntityWrite,
    LifecycleEntity,
    TransitionRecord,
)


class ConcurrencyConflict(RuntimeError):
    """A version check failed at commit time; nothing was written."""

    def __init__(self, message: str, *, kind: str, identifier: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.identifier = identifier


class DuplicateTransitionRecord(RuntimeError):
    """A record with the same (entity_id, from_status, to_status, attempt_id) already exists."""

    def __init__(self, message: str, *, entity_id: str, attempt_id: str) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.attempt_id = attempt_id


class EntityStore(ABC):
    @abstractmethod
    def get(self, entity_id: str) -> Optional[LifecycleEntity]:
        raise NotImplementedError

    @abstractmethod
    def get_budget(self, budget_id: str) -> Optional[Budget]:
        raise NotImplementedError

    @abstractmethod
    def list_linked(self, target_id: str, entity_type: str | None = None) -> List[LifecycleEntity]:
        """Entities whose links reference ``target_id``."""
        raise NotImplementedError

    @abstractmethod
    def list_by_status(
        self,
        entity_type: str,
        status: str,
        *,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[LifecycleEntity]:
        """Entities in ``status`` ordered by ``(updated_at, id)``, starting after the ``after`` key."""
        raise NotImplementedError

    @abstractmethod
    def find_transition_record(
        self,
        entity_id: str,
        attempt_id: str,
        transition: str,
    ) -> Optional[TransitionRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_transition_records(self, entity_id: str, *, limit: int = 200) -> List[TransitionRecord]:
        raise NotImplementedError

    @abstractmethod
    def commit_atomic(
        self,
        *,
        entity_writes: Sequence[EntityWrite] = (),
        budget_writes: Sequence[BudgetWrite] = (),
        records: Sequence[TransitionRecord] = (),
    ) -> None:
        """Apply every write or none.

        Raises ``ConcurrencyConflict`` when any expected version is stale and
        ``DuplicateTransitionRecord`` when a record key is already taken.
        """
        raise NotImplementedError

    @abstractmethod
    def insert_entity(self, entity: LifecycleEntity) -> None:
        raise NotImplementedError

    @abstractmethod
    def insert_budget(self, budget: Budget) -> None:
        raise NotImplementedError
