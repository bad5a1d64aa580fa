from __future__ import annotations

from flask import current_app, g

from procurement_core.db import get_db
from procurement_core.infrastructure.sql_entity_store import SqlEntityStore
from procurement_core.lifecycle.budget_ledger import ReservationBook
from procurement_core.lifecycle.orchestrator import LifecycleOrchestrator


def reservation_book(app=None) -> ReservationBook:
    target = app or current_app
    book = target.extensions.get("budget_reservations")
    if book is None:
        book = ReservationBook()
        target.extensions["budget_reservations"] = book
    return book


def build_orchestrator(db, app=None) -> LifecycleOrchestrator:
    target = app or current_app
    return LifecycleOrchestrator.from_config(
        target.config,
        SqlEntityStore(db),
        reservations=reservation_book(target),
    )


def current_orchestrator() -> LifecycleOrchestrator:
    """Orchestrator bound to the request's database connection."""
    orchestrator = getattr(g, "lifecycle_orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator(get_db())
        g.lifecycle_orchestrator = orchestrator
    return orchestrator
