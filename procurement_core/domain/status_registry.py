from __future__ import annotations

from typing import Dict, FrozenSet, List, Tuple

from procurement_core.ui_strings import STATUS_VARIANTS, status_label, transition_label


STATUS_REGISTRY: Dict[str, Dict[str, object]] = {
    "Tender": {
        "initial": "DRAFT",
        "states": ("DRAFT", "PUBLISHED", "CLOSED", "AWARDED", "CANCELLED"),
        "terminal": ("AWARDED", "CANCELLED"),
        "transitions": {
            "DRAFT": {"publish": "PUBLISHED", "cancel": "CANCELLED"},
            "PUBLISHED": {"close": "CLOSED", "cancel": "CANCELLED"},
            "CLOSED": {"award": "AWARDED", "cancel": "CANCELLED"},
        },
    },
    "Bid": {
        "initial": "DRAFT",
        "states": ("DRAFT", "SUBMITTED", "UNDER_REVIEW", "EVALUATED", "ACCEPTED", "REJECTED", "WITHDRAWN"),
        "terminal": ("ACCEPTED", "REJECTED", "WITHDRAWN"),
        "transitions": {
            "DRAFT": {"submit": "SUBMITTED", "withdraw": "WITHDRAWN"},
            "SUBMITTED": {
                "start_review": "UNDER_REVIEW",
                "accept": "ACCEPTED",
                "reject": "REJECTED",
                "withdraw": "WITHDRAWN",
            },
            "UNDER_REVIEW": {"evaluate": "EVALUATED", "accept": "ACCEPTED", "reject": "REJECTED"},
            "EVALUATED": {"accept": "ACCEPTED", "reject": "REJECTED"},
        },
    },
    "PurchaseRequisition": {
        "initial": "DRAFT",
        "states": ("DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "CONVERTED_TO_PO", "CANCELLED"),
        "terminal": ("REJECTED", "CONVERTED_TO_PO", "CANCELLED"),
        "transitions": {
            "DRAFT": {"submit": "PENDING_APPROVAL", "cancel": "CANCELLED"},
            "PENDING_APPROVAL": {"approve": "APPROVED", "reject": "REJECTED", "cancel": "CANCELLED"},
            "APPROVED": {"convert_to_po": "CONVERTED_TO_PO", "cancel": "CANCELLED"},
        },
    },
    "PurchaseOrder": {
        "initial": "DRAFT",
        "states": ("DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "SENT_TO_VENDOR", "RECEIVED", "CANCELLED"),
        "terminal": ("REJECTED", "RECEIVED", "CANCELLED"),
        "transitions": {
            "DRAFT": {"submit": "PENDING_APPROVAL", "cancel": "CANCELLED"},
            "PENDING_APPROVAL": {"approve": "APPROVED", "reject": "REJECTED", "cancel": "CANCELLED"},
            "APPROVED": {"send_to_vendor": "SENT_TO_VENDOR", "cancel": "CANCELLED"},
            "SENT_TO_VENDOR": {"receive": "RECEIVED", "cancel": "CANCELLED"},
        },
    },
    "GoodsReceipt": {
        "initial": "PENDING",
        "states": ("PENDING", "INSPECTED", "ACCEPTED", "REJECTED", "PARTIAL"),
        "terminal": ("ACCEPTED", "REJECTED"),
        "transitions": {
            "PENDING": {"inspect": "INSPECTED", "reject": "REJECTED"},
            "INSPECTED": {"accept": "ACCEPTED", "mark_partial": "PARTIAL", "reject": "REJECTED"},
            "PARTIAL": {"inspect": "INSPECTED", "accept": "ACCEPTED", "reject": "REJECTED"},
        },
    },
    "Invoice": {
        "initial": "DRAFT",
        "states": ("DRAFT", "PENDING_APPROVAL", "APPROVED", "PAID", "REJECTED", "CANCELLED", "OVERDUE", "DISPUTED"),
        "terminal": ("PAID", "REJECTED", "CANCELLED"),
        "transitions": {
            "DRAFT": {"submit": "PENDING_APPROVAL", "cancel": "CANCELLED"},
            "PENDING_APPROVAL": {
                "approve": "APPROVED",
                "reject": "REJECTED",
                "dispute": "DISPUTED",
                "cancel": "CANCELLED",
            },
            "APPROVED": {"mark_paid": "PAID", "mark_overdue": "OVERDUE", "dispute": "DISPUTED"},
            "OVERDUE": {"mark_paid": "PAID", "dispute": "DISPUTED"},
            "DISPUTED": {"resolve_dispute": "PENDING_APPROVAL", "cancel": "CANCELLED"},
        },
    },
    "Payment": {
        "initial": "REQUESTED",
        "states": ("REQUESTED", "APPROVED", "PROCESSED", "FAILED", "CANCELLED"),
        "terminal": ("PROCESSED", "FAILED", "CANCELLED"),
        "transitions": {
            "REQUESTED": {"approve": "APPROVED", "cancel": "CANCELLED"},
            "APPROVED": {"process": "PROCESSED", "fail": "FAILED", "cancel": "CANCELLED"},
        },
    },
    "Contract": {
        "initial": "DRAFT",
        "states": ("DRAFT", "ACTIVE", "COMPLETED", "TERMINATED", "SUSPENDED"),
        "terminal": ("COMPLETED", "TERMINATED"),
        "transitions": {
            "DRAFT": {"activate": "ACTIVE", "terminate": "TERMINATED"},
            "ACTIVE": {"suspend": "SUSPENDED", "complete": "COMPLETED", "terminate": "TERMINATED"},
            "SUSPENDED": {"resume": "ACTIVE", "terminate": "TERMINATED"},
        },
    },
}


def _type_config(entity_type: str | None) -> Dict[str, object]:
    return STATUS_REGISTRY.get(str(entity_type or ""), {})


def is_known_type(entity_type: str | None) -> bool:
    return str(entity_type or "") in STATUS_REGISTRY


def legal_states(entity_type: str | None) -> FrozenSet[str]:
    return frozenset(_type_config(entity_type).get("states") or ())


def initial_status(entity_type: str | None) -> str | None:
    initial = _type_config(entity_type).get("initial")
    return str(initial) if initial else None


def is_terminal(entity_type: str | None, status: str | None) -> bool:
    return str(status or "") in set(_type_config(entity_type).get("terminal") or ())


def legal_transitions(entity_type: str | None, from_status: str | None) -> FrozenSet[Tuple[str, str]]:
    if is_terminal(entity_type, from_status):
        return frozenset()
    transitions = _type_config(entity_type).get("transitions") or {}
    edges = transitions.get(str(from_status or ""), {}) if isinstance(transitions, dict) else {}
    return frozenset((str(name), str(to_status)) for name, to_status in edges.items())


def resolve_transition(entity_type: str | None, from_status: str | None, transition: str | None) -> str | None:
    for name, to_status in legal_transitions(entity_type, from_status):
        if name == transition:
            return to_status
    return None


def transition_names(entity_type: str | None) -> FrozenSet[str]:
    transitions = _type_config(entity_type).get("transitions") or {}
    names: set[str] = set()
    for edges in transitions.values():
        names.update(edges.keys())
    return frozenset(names)


def sorted_transitions(entity_type: str | None, from_status: str | None) -> List[Dict[str, str]]:
    return [
        {"transition": name, "to_status": to_status, "label": transition_label(name)}
        for name, to_status in sorted(legal_transitions(entity_type, from_status))
    ]


def frontend_bundle() -> Dict[str, object]:
    """Read-only view of the registry used by the portals to render badges and action buttons."""
    bundle: Dict[str, object] = {}
    for entity_type, config in STATUS_REGISTRY.items():
        states = list(config.get("states") or ())
        bundle[entity_type] = {
            "initial": config.get("initial"),
            "states": [
                {
                    "key": status,
                    "label": status_label(status),
                    "variant": STATUS_VARIANTS.get(status, "default"),
                    "terminal": is_terminal(entity_type, status),
                    "transitions": sorted_transitions(entity_type, status),
                }
                for status in states
            ],
        }
    return bundle
