from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from procurement_core.domain import status_registry
from procurement_core.domain.contracts import (
    ZERO,
    Actor,
    BudgetWrite,
    EntityWrite,
    LifecycleEntity,
    Money,
    ReservationToken,
    TransitionRecord,
    merge_links,
)
from procurement_core.domain.entity_store import EntityStore
from procurement_core.errors import IllegalTransitionError, ValidationError
from procurement_core.lifecycle.budget_ledger import BudgetLedger


BID_POLICIES = ("exclusive", "open")
PAYMENT_DEBIT_POLICIES = ("uncommitted_only", "always")

# PO statuses whose approval debit has already been written and not reversed.
_COMMITTED_PO_STATUSES = ("APPROVED", "SENT_TO_VENDOR", "RECEIVED")
_PAYABLE_INVOICE_STATUSES = ("APPROVED", "OVERDUE")


@dataclass(frozen=True)
class Derivation:
    parent_type: str
    parent_statuses: Tuple[str, ...]
    child_type: str
    single: bool = True


DERIVATIONS: Dict[str, Derivation] = {
    "record_goods_receipt": Derivation("PurchaseOrder", ("SENT_TO_VENDOR",), "GoodsReceipt", single=False),
    "create_invoice": Derivation("GoodsReceipt", ("ACCEPTED",), "Invoice", single=True),
    "create_payment": Derivation("Invoice", _PAYABLE_INVOICE_STATUSES, "Payment", single=False),
    "create_contract": Derivation("Bid", ("ACCEPTED",), "Contract", single=True),
}


@dataclass
class EffectPlan:
    """Everything a transition writes besides the primary entity and its record."""

    budget_id: Optional[str] = None
    budget_delta: Decimal = ZERO
    budget_writes: List[BudgetWrite] = field(default_factory=list)
    reservation: Optional[ReservationToken] = None
    entity_writes: List[EntityWrite] = field(default_factory=list)
    records: List[TransitionRecord] = field(default_factory=list)
    derived: List[LifecycleEntity] = field(default_factory=list)
    cascaded: List[Tuple[LifecycleEntity, TransitionRecord]] = field(default_factory=list)


def illegal(entity: LifecycleEntity, transition: str, reason: str, **extra: Any) -> IllegalTransitionError:
    payload: Dict[str, Any] = {
        "entity_id": entity.id,
        "entity_type": entity.entity_type,
        "status": entity.status,
        "transition": transition,
        "reason": reason,
    }
    payload.update(extra)
    return IllegalTransitionError(details=f"{transition} on {entity.entity_type} {entity.id}: {reason}", payload=payload)


class TransitionEffects:
    def __init__(
        self,
        store: EntityStore,
        ledger: BudgetLedger,
        *,
        bid_acceptance_policy: str = "exclusive",
        payment_debit_policy: str = "uncommitted_only",
    ) -> None:
        bid_policy = str(bid_acceptance_policy or "").strip().lower()
        debit_policy = str(payment_debit_policy or "").strip().lower()
        if bid_policy not in BID_POLICIES:
            raise ValueError(f"unknown bid acceptance policy: {bid_acceptance_policy!r}")
        if debit_policy not in PAYMENT_DEBIT_POLICIES:
            raise ValueError(f"unknown payment debit policy: {payment_debit_policy!r}")
        self.store = store
        self.ledger = ledger
        self.bid_acceptance_policy = bid_policy
        self.payment_debit_policy = debit_policy

    def plan(
        self,
        entity: LifecycleEntity,
        transition: str,
        to_status: str,
        *,
        actor: Actor,
        attempt_id: str,
        at: datetime,
    ) -> EffectPlan:
        plan = EffectPlan()
        self._check_guards(entity, transition, plan, at)
        self._plan_children(entity, transition, plan, at)
        self._plan_cascades(entity, transition, plan, actor=actor, attempt_id=attempt_id, at=at)
        # Budget last so a guard failure never leaves a reservation behind.
        self._plan_budget(entity, transition, plan)
        return plan

    # Guards

    def _check_guards(self, entity: LifecycleEntity, transition: str, plan: EffectPlan, at: datetime) -> None:
        key = (entity.entity_type, transition)
        if key == ("Tender", "award"):
            bids = self.store.list_linked(entity.id, "Bid")
            if not any(bid.status == "ACCEPTED" for bid in bids):
                raise illegal(entity, transition, "tender_has_no_accepted_bid")
        elif key == ("Bid", "accept") and self.bid_acceptance_policy == "exclusive":
            for tender_id in entity.linked_ids("Tender"):
                siblings = self.store.list_linked(tender_id, "Bid")
                accepted = [bid.id for bid in siblings if bid.id != entity.id and bid.status == "ACCEPTED"]
                if accepted:
                    raise illegal(
                        entity,
                        transition,
                        "tender_already_has_accepted_bid",
                        tender_id=tender_id,
                        accepted_bid_id=accepted[0],
                    )
                tender = self.store.get(tender_id)
                if tender is not None:
                    # Bumping the tender version serializes concurrent sibling acceptances.
                    plan.entity_writes.append(
                        EntityWrite(
                            entity=replace(tender, version=tender.version + 1, updated_at=at),
                            expected_version=tender.version,
                        )
                    )
        elif key == ("Payment", "process"):
            invoice = self._linked_invoice(entity)
            if invoice is not None and invoice.status not in _PAYABLE_INVOICE_STATUSES:
                raise illegal(
                    entity,
                    transition,
                    "linked_invoice_not_payable",
                    invoice_id=invoice.id,
                    invoice_status=invoice.status,
                )

    # Children and cascades

    def _plan_children(self, entity: LifecycleEntity, transition: str, plan: EffectPlan, at: datetime) -> None:
        if (entity.entity_type, transition) != ("PurchaseRequisition", "convert_to_po"):
            return
        attributes = dict(entity.attributes)
        attributes["source_document_id"] = entity.id
        order = LifecycleEntity(
            id=uuid.uuid4().hex,
            entity_type="PurchaseOrder",
            status=status_registry.initial_status("PurchaseOrder") or "DRAFT",
            amount=entity.amount,
            links=merge_links([entity.ref], entity.links),
            owner_org_unit_id=entity.owner_org_unit_id,
            budget_id=entity.budget_id,
            version=1,
            created_at=at,
            updated_at=at,
            attributes=attributes,
        )
        plan.entity_writes.append(EntityWrite(entity=order, expected_version=None))
        plan.derived.append(order)

    def _plan_cascades(
        self,
        entity: LifecycleEntity,
        transition: str,
        plan: EffectPlan,
        *,
        actor: Actor,
        attempt_id: str,
        at: datetime,
    ) -> None:
        if (entity.entity_type, transition) != ("Payment", "process"):
            return
        invoice = self._linked_invoice(entity)
        if invoice is None:
            return
        paid_status = status_registry.resolve_transition("Invoice", invoice.status, "mark_paid")
        if paid_status is None:
            raise illegal(entity, transition, "linked_invoice_not_payable", invoice_id=invoice.id)
        paid = invoice.with_status(paid_status, at=at)
        record = TransitionRecord(
            id=uuid.uuid4().hex,
            entity_id=invoice.id,
            entity_type=invoice.entity_type,
            transition="mark_paid",
            from_status=invoice.status,
            to_status=paid_status,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            attempt_id=attempt_id,
            occurred_at=at,
            result_snapshot={"entity": paid.to_dict(), "derived": [], "cascade_of": entity.id},
        )
        plan.entity_writes.append(EntityWrite(entity=paid, expected_version=invoice.version))
        plan.records.append(record)
        plan.cascaded.append((paid, record))

    # Budget effects

    def _plan_budget(self, entity: LifecycleEntity, transition: str, plan: EffectPlan) -> None:
        key = (entity.entity_type, transition)
        if key == ("PurchaseRequisition", "approve"):
            self._check_requisition_funds(entity, plan)
        elif key == ("PurchaseOrder", "approve"):
            budget_id = self._order_budget_id(entity)
            if budget_id is None:
                raise ValidationError(
                    code="budget_required",
                    message_key="budget_required",
                    payload={"entity_id": entity.id, "entity_type": entity.entity_type},
                )
            self._debit(plan, budget_id, entity.amount)
        elif key == ("PurchaseOrder", "cancel") and entity.status in ("APPROVED", "SENT_TO_VENDOR"):
            self._credit_order_debit(entity, plan)
        elif key == ("Payment", "process"):
            budget_id = self._payment_budget_id(entity)
            if budget_id is not None:
                self._debit(plan, budget_id, entity.amount)

    def _check_requisition_funds(self, entity: LifecycleEntity, plan: EffectPlan) -> None:
        if not entity.budget_id or entity.amount.amount <= ZERO:
            return
        # Approval only proves the funds exist; the debit happens when the PO is approved.
        token = self.ledger.reserve(entity.budget_id, entity.amount.amount, entity.amount.currency)
        self.ledger.release(token)
        plan.budget_id = entity.budget_id

    def _debit(self, plan: EffectPlan, budget_id: str, amount: Money) -> None:
        plan.budget_id = budget_id
        if amount.amount <= ZERO:
            return
        token = self.ledger.reserve(budget_id, amount.amount, amount.currency)
        try:
            write = self.ledger.plan_debit(token)
        except Exception:
            self.ledger.release(token)
            raise
        plan.reservation = token
        plan.budget_writes.append(write)
        plan.budget_delta = -token.amount

    def _credit_order_debit(self, entity: LifecycleEntity, plan: EffectPlan) -> None:
        debits = [
            record
            for record in self.store.list_transition_records(entity.id)
            if record.transition == "approve" and record.budget_id and record.budget_delta < ZERO
        ]
        if not debits:
            return
        approval = debits[-1]
        amount = -approval.budget_delta
        plan.budget_writes.append(self.ledger.plan_credit(approval.budget_id, amount))
        plan.budget_id = approval.budget_id
        plan.budget_delta = amount

    def _order_budget_id(self, entity: LifecycleEntity) -> Optional[str]:
        if entity.budget_id:
            return entity.budget_id
        for requisition_id in entity.linked_ids("PurchaseRequisition"):
            requisition = self.store.get(requisition_id)
            if requisition is not None and requisition.budget_id:
                return requisition.budget_id
        return None

    def _payment_budget_id(self, entity: LifecycleEntity) -> Optional[str]:
        trail = self._document_trail(entity)
        if self.payment_debit_policy == "uncommitted_only":
            for document in trail:
                if document.entity_type == "PurchaseOrder" and document.status in _COMMITTED_PO_STATUSES:
                    # The PO approval already charged the budget.
                    return None
        for document in trail:
            if document.budget_id:
                return document.budget_id
        return None

    def _document_trail(self, entity: LifecycleEntity) -> List[LifecycleEntity]:
        """``entity`` followed by every document reachable through links, nearest first."""
        trail = [entity]
        seen = {entity.id}
        queue = deque([entity])
        while queue:
            document = queue.popleft()
            for ref in document.links:
                if ref.entity_id in seen:
                    continue
                seen.add(ref.entity_id)
                linked = self.store.get(ref.entity_id)
                if linked is None:
                    continue
                trail.append(linked)
                queue.append(linked)
        return trail

    def _linked_invoice(self, entity: LifecycleEntity) -> Optional[LifecycleEntity]:
        for invoice_id in entity.linked_ids("Invoice"):
            invoice = self.store.get(invoice_id)
            if invoice is not None:
                return invoice
        return None

    # Derivations

    def plan_derivation(
        self,
        parent: LifecycleEntity,
        document: str,
        attributes: Mapping[str, Any] | None,
        *,
        at: datetime,
    ) -> Tuple[LifecycleEntity, EffectPlan]:
        derivation = DERIVATIONS.get(document)
        if derivation is None or derivation.parent_type != parent.entity_type:
            raise illegal(parent, document, "unknown_derivation")
        if parent.status not in derivation.parent_statuses:
            raise IllegalTransitionError(
                code="derivation_not_allowed",
                message_key="derivation_not_allowed",
                details=f"{document} requires {parent.entity_type} in {derivation.parent_statuses}",
                payload={
                    "entity_id": parent.id,
                    "entity_type": parent.entity_type,
                    "status": parent.status,
                    "transition": document,
                    "required_statuses": list(derivation.parent_statuses),
                },
            )
        if derivation.single:
            existing = self.store.list_linked(parent.id, derivation.child_type)
            if existing:
                raise illegal(parent, document, "document_already_derived", child_id=existing[0].id)

        child_attributes = dict(attributes or {})
        amount = parent.amount
        if "amount" in child_attributes:
            raw_amount = child_attributes.pop("amount")
            try:
                override = Money.of(raw_amount, parent.amount.currency)
            except ValueError as exc:
                raise ValidationError(code="invalid_amount", message_key="action_invalid", details=str(exc)) from exc
            if not override.amount.is_finite() or override.amount <= ZERO:
                raise ValidationError(
                    code="invalid_amount",
                    message_key="action_invalid",
                    payload={"amount": str(raw_amount)},
                )
            amount = override
        child_attributes["source_document_id"] = parent.id

        child = LifecycleEntity(
            id=uuid.uuid4().hex,
            entity_type=derivation.child_type,
            status=status_registry.initial_status(derivation.child_type) or "DRAFT",
            amount=amount,
            links=merge_links([parent.ref], parent.links),
            owner_org_unit_id=parent.owner_org_unit_id,
            budget_id=parent.budget_id,
            version=1,
            created_at=at,
            updated_at=at,
            attributes=child_attributes,
        )
        touched_parent = replace(parent, version=parent.version + 1, updated_at=at)
        plan = EffectPlan()
        plan.entity_writes.append(EntityWrite(entity=child, expected_version=None))
        plan.derived.append(child)
        return touched_parent, plan
