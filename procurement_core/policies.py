from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Set, Tuple

from flask import has_request_context, request, session

from procurement_core.domain import status_registry
from procurement_core.domain.contracts import Actor
from procurement_core.errors import PermissionError as AppPermissionError


VALID_ROLES: Set[str] = {"ADMIN", "BUYER", "MANAGER", "FINANCE", "VENDOR", "USER", "APPROVER", "SYSTEM"}

APPROVERS = frozenset({"ADMIN", "MANAGER", "APPROVER"})
FINANCE_APPROVERS = frozenset({"ADMIN", "MANAGER", "FINANCE", "APPROVER"})
PAYMENT_OPERATORS = frozenset({"ADMIN", "FINANCE"})
BUYERS = frozenset({"ADMIN", "BUYER", "MANAGER"})
TENDER_OWNERS = frozenset({"ADMIN", "USER", "MANAGER"})
BID_SCORERS = frozenset({"ADMIN", "USER", "BUYER", "MANAGER", "APPROVER"})
RECEIVERS = frozenset({"ADMIN", "BUYER", "MANAGER", "USER"})
INVOICE_SUBMITTERS = frozenset({"VENDOR", "FINANCE", "ADMIN"})

# Keyed by (entity type, transition or derivation). Anything missing is denied.
TRANSITION_GRANTS: Dict[Tuple[str, str], FrozenSet[str]] = {
    ("Tender", "publish"): TENDER_OWNERS,
    ("Tender", "close"): TENDER_OWNERS,
    ("Tender", "cancel"): TENDER_OWNERS,
    ("Tender", "award"): frozenset({"ADMIN", "MANAGER"}),
    ("Bid", "submit"): frozenset({"VENDOR"}),
    ("Bid", "withdraw"): frozenset({"VENDOR"}),
    ("Bid", "start_review"): BID_SCORERS,
    ("Bid", "evaluate"): BID_SCORERS,
    ("Bid", "accept"): APPROVERS,
    ("Bid", "reject"): APPROVERS,
    ("Bid", "create_contract"): BUYERS,
    ("PurchaseRequisition", "submit"): BUYERS,
    ("PurchaseRequisition", "cancel"): BUYERS,
    ("PurchaseRequisition", "convert_to_po"): BUYERS,
    ("PurchaseRequisition", "approve"): APPROVERS,
    ("PurchaseRequisition", "reject"): APPROVERS,
    ("PurchaseOrder", "submit"): BUYERS,
    ("PurchaseOrder", "cancel"): BUYERS,
    ("PurchaseOrder", "send_to_vendor"): BUYERS,
    ("PurchaseOrder", "receive"): BUYERS,
    ("PurchaseOrder", "approve"): FINANCE_APPROVERS,
    ("PurchaseOrder", "reject"): FINANCE_APPROVERS,
    ("PurchaseOrder", "record_goods_receipt"): RECEIVERS,
    ("GoodsReceipt", "inspect"): RECEIVERS,
    ("GoodsReceipt", "accept"): RECEIVERS,
    ("GoodsReceipt", "mark_partial"): RECEIVERS,
    ("GoodsReceipt", "reject"): RECEIVERS,
    ("GoodsReceipt", "create_invoice"): frozenset({"ADMIN", "FINANCE", "VENDOR", "BUYER"}),
    ("Invoice", "submit"): INVOICE_SUBMITTERS,
    ("Invoice", "cancel"): INVOICE_SUBMITTERS,
    ("Invoice", "approve"): FINANCE_APPROVERS,
    ("Invoice", "reject"): FINANCE_APPROVERS,
    ("Invoice", "dispute"): FINANCE_APPROVERS,
    ("Invoice", "resolve_dispute"): frozenset({"FINANCE", "ADMIN"}),
    ("Invoice", "mark_paid"): PAYMENT_OPERATORS,
    ("Invoice", "mark_overdue"): frozenset({"SYSTEM"}),
    ("Invoice", "create_payment"): PAYMENT_OPERATORS,
    ("Payment", "approve"): frozenset({"FINANCE", "ADMIN", "MANAGER"}),
    ("Payment", "process"): PAYMENT_OPERATORS,
    ("Payment", "fail"): PAYMENT_OPERATORS,
    ("Payment", "cancel"): PAYMENT_OPERATORS,
    ("Contract", "activate"): BUYERS,
    ("Contract", "suspend"): BUYERS,
    ("Contract", "resume"): BUYERS,
    ("Contract", "complete"): BUYERS,
    ("Contract", "terminate"): BUYERS,
}


def normalize_role(role: str | None, default: str = "") -> str:
    normalized = str(role or "").strip().upper()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role)
        if normalized:
            allowed.add(normalized)
    return allowed


def allowed_roles(entity_type: str, transition: str) -> FrozenSet[str]:
    return TRANSITION_GRANTS.get((str(entity_type or ""), str(transition or "").strip()), frozenset())


def is_allowed(role: str | None, entity_type: str, transition: str) -> bool:
    normalized_role = normalize_role(role)
    if not normalized_role:
        return False
    return normalized_role in allowed_roles(entity_type, transition)


def permission_table() -> Dict[str, Dict[str, Dict[str, bool]]]:
    """Full role x (type, transition) matrix, for clients that render action buttons."""
    table: Dict[str, Dict[str, Dict[str, bool]]] = {}
    names_by_type: Dict[str, Set[str]] = {}
    for entity_type in status_registry.STATUS_REGISTRY:
        names_by_type[entity_type] = set(status_registry.transition_names(entity_type))
    for entity_type, transition in TRANSITION_GRANTS:
        names_by_type.setdefault(entity_type, set()).add(transition)

    for entity_type, names in names_by_type.items():
        table[entity_type] = {
            name: {role: is_allowed(role, entity_type, name) for role in sorted(VALID_ROLES)}
            for name in sorted(names)
        }
    return table


def require_transition_permission(actor_role: str | None, entity_type: str, transition: str) -> str:
    normalized_role = normalize_role(actor_role)
    if is_allowed(normalized_role, entity_type, transition):
        return normalized_role
    raise AppPermissionError(
        code="permission_denied",
        message_key="permission_denied",
        http_status=403,
        critical=False,
        details=f"role {actor_role!r} may not {transition} {entity_type}",
        payload={"entity_type": entity_type, "transition": transition, "role": normalized_role or None},
    )


def current_actor() -> Actor:
    """Actor for the active request: explicit headers first, then the session."""
    actor_id = ""
    role = ""
    if has_request_context():
        actor_id = str(request.headers.get("X-Actor-Id") or "").strip()
        role = str(request.headers.get("X-Actor-Role") or "").strip()
        if not actor_id:
            actor_id = str(session.get("user_id") or "").strip()
        if not role:
            role = str(session.get("user_role") or "").strip()
    normalized_role = normalize_role(role)
    if not actor_id or not normalized_role:
        raise AppPermissionError(
            code="actor_required",
            message_key="permission_denied",
            http_status=403,
            critical=False,
        )
    # SYSTEM is reserved for in-process jobs; HTTP callers cannot assume it.
    if normalized_role == "SYSTEM":
        raise AppPermissionError(
            code="permission_denied",
            message_key="permission_denied",
            http_status=403,
            critical=False,
        )
    return Actor(actor_id=actor_id, role=normalized_role)
