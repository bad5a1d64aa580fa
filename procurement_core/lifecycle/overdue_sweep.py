from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Dict, Iterator, Tuple

from procurement_core.domain.contracts import LifecycleEntity, utc_now
from procurement_core.errors import AppError
from procurement_core.lifecycle.orchestrator import LifecycleOrchestrator
from procurement_core.observability import observe_overdue_sweep_marked


SWEEP_ACTOR_ID = "system:overdue-sweep"
SWEEP_ACTOR_ROLE = "SYSTEM"

_LOGGER = logging.getLogger("procurement_core")


def _due_date(invoice: LifecycleEntity) -> date | None:
    raw = str(invoice.attributes.get("due_date") or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def sweep_overdue_invoices(
    orchestrator: LifecycleOrchestrator,
    *,
    today: date | None = None,
    limit: int = 500,
) -> Dict[str, int]:
    """Move APPROVED invoices whose ``due_date`` has passed to OVERDUE.

    Runs through the orchestrator as the SYSTEM actor. The attempt id is
    derived from the invoice and the sweep day, so a second sweep on the same
    day replays instead of writing again. Candidates are read in pages of
    ``limit`` until they run out or ``limit`` invoices have been marked, so
    invoices that are not yet due never hide later ones.
    """
    sweep_day = today or utc_now().date()
    page_size = max(1, int(limit))
    summary = {"scanned": 0, "marked_overdue": 0, "skipped": 0, "failed": 0}

    for invoice in _approved_invoices(orchestrator, page_size):
        if summary["marked_overdue"] >= page_size:
            break
        summary["scanned"] += 1
        due = _due_date(invoice)
        if due is None or due >= sweep_day:
            summary["skipped"] += 1
            continue
        try:
            result = orchestrator.request_transition(
                invoice.id,
                "mark_overdue",
                SWEEP_ACTOR_ID,
                SWEEP_ACTOR_ROLE,
                f"overdue-sweep:{invoice.id}:{sweep_day.isoformat()}",
            )
        except AppError as exc:
            # Invoices paid or disputed between the scan and the write land here.
            summary["failed"] += 1
            _LOGGER.warning(
                "overdue_sweep_invoice_failed",
                extra={"entity_id": invoice.id, "error_code": exc.code, "details": exc.details},
            )
            continue
        if not result.replayed:
            summary["marked_overdue"] += 1

    if summary["marked_overdue"]:
        observe_overdue_sweep_marked(summary["marked_overdue"])
    _LOGGER.info("overdue_sweep_finished", extra={"sweep_day": sweep_day.isoformat(), **summary})
    return summary


def sweep_day_from(value: str | datetime | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _approved_invoices(orchestrator: LifecycleOrchestrator, page_size: int) -> Iterator[LifecycleEntity]:
    cursor: Tuple[datetime, str] | None = None
    while True:
        page = orchestrator.store.list_by_status("Invoice", "APPROVED", limit=page_size, after=cursor)
        if not page:
            return
        yield from page
        if len(page) < page_size:
            return
        last = page[-1]
        cursor = (last.updated_at, last.id)
