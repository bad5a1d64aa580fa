from __future__ import annotations

import os
import threading
import uuid

from flask import Flask

from procurement_core.db import close_db, get_db
from procurement_core.lifecycle.overdue_sweep import sweep_overdue_invoices
from procurement_core.lifecycle.runtime import build_orchestrator
from procurement_core.observability import bind_request_id


class OverdueSweepScheduler:
    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "OVERDUE_SWEEP_INTERVAL_SECONDS", 3600, 60, 86_400)
        self.limit = _int_config(app, "OVERDUE_SWEEP_LIMIT", 500, 1, 5000)

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="overdue-sweep-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                self.app.logger.exception("overdue_sweep_failed")
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> dict:
        with self.app.app_context(), bind_request_id(f"overdue-sweep-{uuid.uuid4().hex[:12]}"):
            try:
                orchestrator = build_orchestrator(get_db(), self.app)
                return sweep_overdue_invoices(orchestrator, limit=self.limit)
            finally:
                close_db()


def start_overdue_scheduler(app: Flask) -> OverdueSweepScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = OverdueSweepScheduler(app)
    scheduler.start()
    app.extensions["overdue_sweep_scheduler"] = scheduler
    app.logger.info(
        "overdue_sweep_scheduler_started",
        extra={"interval_seconds": scheduler.interval_seconds, "limit": scheduler.limit},
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("OVERDUE_SWEEP_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
