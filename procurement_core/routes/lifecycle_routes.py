from __future__ import annotations

from flask import Blueprint, jsonify, request

from procurement_core.domain import status_registry
from procurement_core.errors import PermissionError as AppPermissionError
from procurement_core.errors import ValidationError
from procurement_core.lifecycle.runtime import current_orchestrator
from procurement_core.policies import current_actor, normalize_role, permission_table
from procurement_core.ui_strings import success_message


lifecycle_bp = Blueprint("lifecycle", __name__, url_prefix="/api/lifecycle")

BUDGET_TRANSFER_ROLES = {"ADMIN", "FINANCE"}


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(code="invalid_payload", message_key="action_invalid")
    return payload


def _attempt_id(payload: dict) -> str:
    return str(payload.get("attempt_id") or request.headers.get("Idempotency-Key") or "").strip()


@lifecycle_bp.route("/entities/<string:entity_id>", methods=["GET"])
def get_entity(entity_id: str):
    entity = current_orchestrator().get_entity(entity_id)
    return jsonify({"entity": entity.to_dict(), "status": entity.status})


@lifecycle_bp.route("/entities/<string:entity_id>/transitions", methods=["GET"])
def list_transitions(entity_id: str):
    role = normalize_role(request.args.get("role") or request.headers.get("X-Actor-Role")) or None
    orchestrator = current_orchestrator()
    entity = orchestrator.get_entity(entity_id)
    return jsonify(
        {
            "entity_id": entity.id,
            "status": entity.status,
            "terminal": status_registry.is_terminal(entity.entity_type, entity.status),
            "transitions": orchestrator.legal_transitions(entity.id, actor_role=role),
        }
    )


@lifecycle_bp.route("/entities/<string:entity_id>/transitions", methods=["POST"])
def request_transition(entity_id: str):
    payload = _json_body()
    actor = current_actor()
    result = current_orchestrator().request_transition(
        entity_id,
        str(payload.get("transition") or "").strip(),
        actor.actor_id,
        actor.role,
        _attempt_id(payload),
    )
    body = result.to_payload()
    body["message"] = success_message("transition_replayed" if result.replayed else "transition_applied")
    return jsonify(body), 200


@lifecycle_bp.route("/entities/<string:entity_id>/derive", methods=["POST"])
def derive_document(entity_id: str):
    payload = _json_body()
    actor = current_actor()
    attributes = payload.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise ValidationError(code="invalid_attributes", message_key="action_invalid")
    result = current_orchestrator().derive_document(
        entity_id,
        str(payload.get("document") or "").strip(),
        actor.actor_id,
        actor.role,
        _attempt_id(payload),
        attributes=attributes,
    )
    body = result.to_payload()
    body["message"] = success_message("transition_replayed" if result.replayed else "document_derived")
    return jsonify(body), 200 if result.replayed else 201


@lifecycle_bp.route("/entities/<string:entity_id>/history", methods=["GET"])
def entity_history(entity_id: str):
    limit = request.args.get("limit", type=int) or 200
    records = current_orchestrator().history(entity_id, limit=max(1, min(limit, 1000)))
    return jsonify({"entity_id": entity_id, "items": [record.to_dict() for record in records]})


@lifecycle_bp.route("/budgets/<string:budget_id>", methods=["GET"])
def get_budget(budget_id: str):
    ledger = current_orchestrator().ledger
    budget = ledger.get_budget(budget_id)
    body = budget.to_dict()
    body["available_to_reserve"] = str(ledger.available_to_reserve(budget.id))
    return jsonify(body)


@lifecycle_bp.route("/budgets/transfer", methods=["POST"])
def transfer_budget():
    payload = _json_body()
    actor = current_actor()
    if actor.role not in BUDGET_TRANSFER_ROLES:
        raise AppPermissionError(payload={"role": actor.role})
    source, target = current_orchestrator().ledger.transfer(
        str(payload.get("from_budget_id") or "").strip(),
        str(payload.get("to_budget_id") or "").strip(),
        payload.get("amount"),
    )
    return jsonify({"from_budget": source.to_dict(), "to_budget": target.to_dict()})


@lifecycle_bp.route("/status-registry", methods=["GET"])
def status_registry_bundle():
    return jsonify({"registry": status_registry.frontend_bundle(), "permissions": permission_table()})
