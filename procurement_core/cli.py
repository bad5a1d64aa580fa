from __future__ import annotations

import json

import click
from flask import Flask

from procurement_core.db import close_db, get_db
from procurement_core.lifecycle.overdue_sweep import sweep_day_from, sweep_overdue_invoices
from procurement_core.lifecycle.runtime import build_orchestrator


def register_lifecycle_cli(app: Flask) -> None:
    @app.cli.group("lifecycle")
    def lifecycle_group() -> None:
        """Lifecycle maintenance commands."""

    @lifecycle_group.command("sweep-overdue")
    @click.option("--date", "sweep_date", default=None, help="Sweep day (YYYY-MM-DD); defaults to today in UTC.")
    @click.option("--limit", default=None, type=int, help="Maximum invoices to scan.")
    def sweep_overdue(sweep_date: str | None, limit: int | None) -> None:
        try:
            today = sweep_day_from(sweep_date)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--date") from exc
        resolved_limit = limit or int(app.config.get("OVERDUE_SWEEP_LIMIT") or 500)
        try:
            summary = sweep_overdue_invoices(build_orchestrator(get_db(), app), today=today, limit=resolved_limit)
        finally:
            close_db()
        click.echo(json.dumps(summary, sort_keys=True))

    @lifecycle_group.command("status-registry")
    def show_status_registry() -> None:
        from procurement_core.domain.status_registry import frontend_bundle

        click.echo(json.dumps(frontend_bundle(), indent=2, sort_keys=True))
