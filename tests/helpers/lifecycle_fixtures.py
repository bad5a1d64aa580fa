from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Iterable

from procurement_core.domain import status_registry
from procurement_core.domain.contracts import Budget, EntityRef, LifecycleEntity, Money


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def make_budget(
    store,
    *,
    total: Any = "10000",
    available: Any | None = None,
    currency: str = "USD",
    status: str = "ACTIVE",
    budget_id: str | None = None,
) -> Budget:
    budget = Budget(
        id=budget_id or new_id("budget"),
        org_unit_id="org-finance",
        fiscal_year="2026",
        total_amount=Decimal(str(total)),
        available_amount=Decimal(str(total if available is None else available)),
        currency=currency,
        status=status,
    )
    store.insert_budget(budget)
    return budget


def make_entity(
    store,
    entity_type: str,
    *,
    status: str | None = None,
    amount: Any = "0",
    currency: str = "USD",
    links: Iterable[LifecycleEntity | EntityRef] = (),
    budget_id: str | None = None,
    attributes: dict | None = None,
    entity_id: str | None = None,
) -> LifecycleEntity:
    refs = tuple(link.ref if isinstance(link, LifecycleEntity) else link for link in links)
    entity = LifecycleEntity(
        id=entity_id or new_id(entity_type.lower()),
        entity_type=entity_type,
        status=status or status_registry.initial_status(entity_type) or "DRAFT",
        amount=Money.of(amount, currency),
        links=refs,
        owner_org_unit_id="org-ops",
        budget_id=budget_id,
        attributes=dict(attributes or {}),
    )
    store.insert_entity(entity)
    return entity


def attempt(label: str = "attempt") -> str:
    return f"{label}-{uuid.uuid4().hex}"
