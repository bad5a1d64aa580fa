from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from procurement_core.core.event_bus import (
    BudgetDepleted,
    DocumentDerived,
    DomainEvent,
    EntityTransitioned,
    EventBus,
    get_event_bus,
)
from procurement_core.domain import status_registry
from procurement_core.domain.contracts import (
    ZERO,
    Actor,
    EntityWrite,
    LifecycleEntity,
    TransitionRecord,
    TransitionResult,
    utc_now,
)
from procurement_core.domain.entity_store import ConcurrencyConflict, DuplicateTransitionRecord, EntityStore
from procurement_core.errors import (
    AppError,
    ConcurrentModificationError,
    IllegalTransitionError,
    PermissionError as AppPermissionError,
    ValidationError,
    not_found,
)
from procurement_core.lifecycle.budget_ledger import BudgetLedger, ReservationBook
from procurement_core.lifecycle.side_effects import EffectPlan, TransitionEffects
from procurement_core.observability import observe_budget_cas_retry, observe_lifecycle_transition
from procurement_core.policies import is_allowed, normalize_role, require_transition_permission


Planner = Callable[[LifecycleEntity, datetime], Tuple[LifecycleEntity, EffectPlan]]


class LifecycleOrchestrator:
    """Single entry point for status changes on lifecycle documents.

    Every request runs the same pipeline: load, permission check, idempotent
    replay lookup, legality check, side-effect planning and one atomic commit.
    Events are published only after the commit and never undo it.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        ledger: BudgetLedger | None = None,
        event_bus: EventBus | None = None,
        max_attempts: int = 3,
        bid_acceptance_policy: str = "exclusive",
        payment_debit_policy: str = "uncommitted_only",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.ledger = ledger or BudgetLedger(store, max_attempts=self.max_attempts, clock=clock)
        self.event_bus = event_bus or get_event_bus()
        self.effects = TransitionEffects(
            store,
            self.ledger,
            bid_acceptance_policy=bid_acceptance_policy,
            payment_debit_policy=payment_debit_policy,
        )
        self._clock = clock
        self._logger = logging.getLogger("procurement_core")

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        store: EntityStore,
        *,
        event_bus: EventBus | None = None,
        reservations: ReservationBook | None = None,
    ) -> "LifecycleOrchestrator":
        max_attempts = int(config.get("LIFECYCLE_MAX_COMMIT_ATTEMPTS") or 3)
        return cls(
            store,
            ledger=BudgetLedger(store, max_attempts=max_attempts, reservations=reservations),
            event_bus=event_bus,
            max_attempts=max_attempts,
            bid_acceptance_policy=str(config.get("BID_ACCEPTANCE_POLICY") or "exclusive"),
            payment_debit_policy=str(config.get("PAYMENT_DEBIT_POLICY") or "uncommitted_only"),
        )

    # Read accessors

    def get_entity(self, entity_id: str) -> LifecycleEntity:
        entity = self.store.get(str(entity_id or "").strip())
        if entity is None:
            raise not_found("entity", str(entity_id))
        return entity

    def current_status(self, entity_id: str) -> str:
        return self.get_entity(entity_id).status

    def legal_transitions(self, entity_id: str, actor_role: str | None = None) -> List[Dict[str, str]]:
        entity = self.get_entity(entity_id)
        options = status_registry.sorted_transitions(entity.entity_type, entity.status)
        if actor_role is None:
            return options
        return [option for option in options if is_allowed(actor_role, entity.entity_type, option["transition"])]

    def history(self, entity_id: str, *, limit: int = 200) -> List[TransitionRecord]:
        entity = self.get_entity(entity_id)
        return self.store.list_transition_records(entity.id, limit=limit)

    # Commands

    def request_transition(
        self,
        entity_id: str,
        transition: str,
        actor_id: str,
        actor_role: str,
        attempt_id: str,
    ) -> TransitionResult:
        name = str(transition or "").strip()
        entity = self.get_entity(entity_id)
        actor = self._authorize(actor_id, actor_role, entity, name)
        attempt = _require_attempt_id(attempt_id)

        def planner(current: LifecycleEntity, at: datetime) -> Tuple[LifecycleEntity, EffectPlan]:
            to_status = status_registry.resolve_transition(current.entity_type, current.status, name)
            if to_status is None:
                raise IllegalTransitionError(
                    details=f"{name} is not allowed from {current.status}",
                    payload={
                        "entity_id": current.id,
                        "entity_type": current.entity_type,
                        "status": current.status,
                        "transition": name,
                        "allowed_transitions": [
                            option["transition"]
                            for option in status_registry.sorted_transitions(current.entity_type, current.status)
                        ],
                    },
                )
            plan = self.effects.plan(current, name, to_status, actor=actor, attempt_id=attempt, at=at)
            return current.with_status(to_status, at=at), plan

        return self._execute(entity, name, actor, attempt, planner, derivation=False)

    def derive_document(
        self,
        parent_id: str,
        document: str,
        actor_id: str,
        actor_role: str,
        attempt_id: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Create a child document from ``parent_id`` (``record_goods_receipt``, ``create_invoice``, ...).

        The parent keeps its status; the derivation is recorded on the parent
        with ``from_status == to_status`` so retries with the same attempt id
        return the same child.
        """
        name = str(document or "").strip()
        parent = self.get_entity(parent_id)
        actor = self._authorize(actor_id, actor_role, parent, name)
        attempt = _require_attempt_id(attempt_id)

        def planner(current: LifecycleEntity, at: datetime) -> Tuple[LifecycleEntity, EffectPlan]:
            return self.effects.plan_derivation(current, name, attributes, at=at)

        return self._execute(parent, name, actor, attempt, planner, derivation=True)

    # Pipeline

    def _authorize(self, actor_id: str, actor_role: str, entity: LifecycleEntity, name: str) -> Actor:
        normalized_actor_id = str(actor_id or "").strip()
        if not normalized_actor_id:
            raise AppPermissionError(code="actor_required", payload={"entity_id": entity.id})
        try:
            role = require_transition_permission(actor_role, entity.entity_type, name)
        except AppPermissionError:
            observe_lifecycle_transition(entity.entity_type, name, "permission_denied")
            raise
        return Actor(actor_id=normalized_actor_id, role=role or normalize_role(actor_role))

    def _execute(
        self,
        entity: LifecycleEntity,
        name: str,
        actor: Actor,
        attempt: str,
        planner: Planner,
        *,
        derivation: bool,
    ) -> TransitionResult:
        replay = self._replay(entity, attempt, name, derivation=derivation)
        if replay is not None:
            observe_lifecycle_transition(entity.entity_type, name, "replayed")
            return replay

        current = entity
        for attempt_number in range(1, self.max_attempts + 1):
            if attempt_number > 1:
                current = self.get_entity(entity.id)
                # A racing request with the same attempt id may be what moved the entity.
                replay = self._replay(current, attempt, name, derivation=derivation)
                if replay is not None:
                    observe_lifecycle_transition(entity.entity_type, name, "replayed")
                    return replay
            at = self._clock()
            try:
                updated, plan = planner(current, at)
            except AppError as exc:
                observe_lifecycle_transition(current.entity_type, name, exc.code)
                raise

            record = TransitionRecord(
                id=uuid.uuid4().hex,
                entity_id=current.id,
                entity_type=current.entity_type,
                transition=name,
                from_status=current.status,
                to_status=updated.status,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                attempt_id=attempt,
                budget_id=plan.budget_id,
                budget_delta=plan.budget_delta,
                occurred_at=at,
                result_snapshot={
                    "entity": updated.to_dict(),
                    "derived": [child.to_dict() for child in plan.derived],
                },
            )
            try:
                self.store.commit_atomic(
                    entity_writes=[EntityWrite(entity=updated, expected_version=current.version)]
                    + plan.entity_writes,
                    budget_writes=plan.budget_writes,
                    records=[record] + plan.records,
                )
            except ConcurrencyConflict as exc:
                self.ledger.release(plan.reservation)
                if exc.kind == "budget":
                    observe_budget_cas_retry("transition")
                self._logger.warning(
                    "lifecycle_commit_conflict",
                    extra={
                        "entity_id": current.id,
                        "transition": name,
                        "attempt": attempt_number,
                        "conflict_kind": exc.kind,
                        "conflict_id": exc.identifier,
                    },
                )
                continue
            except DuplicateTransitionRecord:
                self.ledger.release(plan.reservation)
                replay = self._replay(self.get_entity(current.id), attempt, name, derivation=derivation)
                if replay is not None:
                    observe_lifecycle_transition(current.entity_type, name, "replayed")
                    return replay
                raise ValidationError(
                    code="attempt_id_conflict",
                    message_key="action_invalid",
                    http_status=409,
                    payload={"entity_id": current.id, "attempt_id": attempt, "transition": name},
                )
            except Exception:
                self.ledger.release(plan.reservation)
                raise

            self.ledger.finalize(plan.reservation)
            result = TransitionResult(entity=updated, record=record, derived=tuple(plan.derived))
            observe_lifecycle_transition(current.entity_type, name, "applied")
            self._logger.info(
                "lifecycle_transition_applied",
                extra={
                    "entity_id": current.id,
                    "entity_type": current.entity_type,
                    "transition": name,
                    "from_status": record.from_status,
                    "to_status": record.to_status,
                    "actor_id": actor.actor_id,
                    "actor_role": actor.role,
                    "attempt_id": attempt,
                    "budget_id": record.budget_id,
                    "budget_delta": str(record.budget_delta),
                    "derived_ids": [child.id for child in plan.derived],
                },
            )
            self._publish(self._events_for(result, plan))
            return result

        observe_lifecycle_transition(entity.entity_type, name, "concurrent_modification")
        raise ConcurrentModificationError(
            details=f"{entity.entity_type} {entity.id} kept changing during {name}",
            payload={"entity_id": entity.id, "transition": name, "attempts": self.max_attempts},
        )

    def _replay(
        self,
        current: LifecycleEntity,
        attempt: str,
        name: str,
        *,
        derivation: bool,
    ) -> Optional[TransitionResult]:
        """Return the recorded result of ``attempt`` or None when it was never applied.

        A transition is replayed while the entity still sits where the attempt
        left it, or when the transition is no longer legal (a late retry). If
        the entity moved on and the same transition is legal again, the attempt
        id would name a second, different move and is rejected.
        """
        record = self.store.find_transition_record(current.id, attempt, name)
        if record is None:
            return None
        if not derivation and record.to_status != current.status:
            next_status = status_registry.resolve_transition(current.entity_type, current.status, name)
            if next_status is not None:
                observe_lifecycle_transition(current.entity_type, name, "attempt_id_conflict")
                raise ValidationError(
                    code="attempt_id_conflict",
                    message_key="action_invalid",
                    http_status=409,
                    details=f"attempt {attempt} already applied {name} from {record.from_status}",
                    payload={
                        "entity_id": current.id,
                        "attempt_id": attempt,
                        "transition": name,
                        "status": current.status,
                        "recorded_from_status": record.from_status,
                        "recorded_to_status": record.to_status,
                    },
                )
        snapshot = record.result_snapshot or {}
        entity_data = snapshot.get("entity")
        entity = LifecycleEntity.from_dict(entity_data) if entity_data else current
        derived = tuple(LifecycleEntity.from_dict(child) for child in snapshot.get("derived") or [])
        return TransitionResult(entity=entity, record=record, replayed=True, derived=derived)

    def _events_for(self, result: TransitionResult, plan: EffectPlan) -> List[DomainEvent]:
        events: List[DomainEvent] = []
        records = [(result.entity, result.record)] + list(plan.cascaded)
        for entity, record in records:
            if record.from_status == record.to_status:
                continue
            events.append(
                EntityTransitioned(
                    entity_id=entity.id,
                    entity_type=entity.entity_type,
                    transition=record.transition,
                    from_status=record.from_status,
                    to_status=record.to_status,
                    actor_id=record.actor_id,
                    actor_role=record.actor_role,
                    attempt_id=record.attempt_id,
                    budget_id=record.budget_id,
                    budget_delta=str(record.budget_delta),
                    occurred_at=record.occurred_at,
                )
            )
        for child in result.derived:
            events.append(
                DocumentDerived(
                    parent_id=result.entity.id,
                    parent_type=result.entity.entity_type,
                    child_id=child.id,
                    child_type=child.entity_type,
                    actor_id=result.record.actor_id,
                )
            )
        if result.record.budget_delta < ZERO:
            for write in plan.budget_writes:
                if write.budget.status == "DEPLETED":
                    events.append(BudgetDepleted(budget_id=write.budget.id, currency=write.budget.currency))
        return events

    def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            try:
                self.event_bus.publish(event)
            except Exception:  # noqa: BLE001
                self._logger.exception(
                    "domain_event_publish_failed",
                    extra={"event_type": type(event).__name__, "event_id": event.event_id},
                )


def _require_attempt_id(attempt_id: str | None) -> str:
    normalized = str(attempt_id or "").strip()
    if not normalized:
        raise ValidationError(code="attempt_id_required", message_key="action_invalid")
    if len(normalized) > 200:
        raise ValidationError(code="attempt_id_too_long", message_key="action_invalid")
    return normalized
