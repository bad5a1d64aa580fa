from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Tuple


ENTITY_TYPES: Tuple[str, ...] = (
    "Tender",
    "Bid",
    "PurchaseRequisition",
    "PurchaseOrder",
    "GoodsReceipt",
    "Invoice",
    "Payment",
    "Contract",
)

BUDGET_STATUSES: Tuple[str, ...] = ("ACTIVE", "DEPLETED", "EXPIRED", "SUSPENDED")

ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid money amount: {value!r}") from exc


def to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    raw = str(value).strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    @staticmethod
    def of(amount: Any, currency: str) -> "Money":
        return Money(amount=to_decimal(amount), currency=str(currency or "").strip().upper())

    def to_dict(self) -> Dict[str, str]:
        return {"amount": str(self.amount), "currency": self.currency}


@dataclass(frozen=True)
class EntityRef:
    entity_type: str
    entity_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.entity_type, "id": self.entity_id}


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str


@dataclass(frozen=True)
class LifecycleEntity:
    id: str
    entity_type: str
    status: str
    amount: Money
    links: Tuple[EntityRef, ...] = ()
    owner_org_unit_id: Optional[str] = None
    budget_id: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_id=self.id)

    def linked_ids(self, entity_type: str | None = None) -> list[str]:
        return [link.entity_id for link in self.links if entity_type is None or link.entity_type == entity_type]

    def with_status(self, status: str, *, at: datetime | None = None) -> "LifecycleEntity":
        return replace(self, status=status, version=self.version + 1, updated_at=at or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.entity_type,
            "status": self.status,
            "amount": self.amount.to_dict(),
            "links": [link.to_dict() for link in self.links],
            "owner_org_unit_id": self.owner_org_unit_id,
            "budget_id": self.budget_id,
            "version": self.version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "attributes": dict(self.attributes),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LifecycleEntity":
        amount = data.get("amount") or {}
        return LifecycleEntity(
            id=str(data["id"]),
            entity_type=str(data["type"]),
            status=str(data["status"]),
            amount=Money.of(amount.get("amount"), amount.get("currency") or ""),
            links=tuple(
                EntityRef(entity_type=str(link["type"]), entity_id=str(link["id"]))
                for link in data.get("links") or []
            ),
            owner_org_unit_id=data.get("owner_org_unit_id"),
            budget_id=data.get("budget_id"),
            version=int(data.get("version") or 1),
            created_at=to_datetime(data.get("created_at")) or utc_now(),
            updated_at=to_datetime(data.get("updated_at")) or utc_now(),
            attributes=dict(data.get("attributes") or {}),
        )


def merge_links(*groups: Iterable[EntityRef]) -> Tuple[EntityRef, ...]:
    """Ordered, duplicate-free union of link groups."""
    seen: set[EntityRef] = set()
    merged: list[EntityRef] = []
    for group in groups:
        for link in group:
            if link in seen:
                continue
            seen.add(link)
            merged.append(link)
    return tuple(merged)


@dataclass(frozen=True)
class Budget:
    id: str
    org_unit_id: Optional[str]
    fiscal_year: str
    total_amount: Decimal
    available_amount: Decimal
    currency: str
    status: str = "ACTIVE"
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def consumed_amount(self) -> Decimal:
        return self.total_amount - self.available_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_unit_id": self.org_unit_id,
            "fiscal_year": self.fiscal_year,
            "total_amount": str(self.total_amount),
            "available_amount": str(self.available_amount),
            "consumed_amount": str(self.consumed_amount),
            "currency": self.currency,
            "status": self.status,
            "version": self.version,
            "updated_at": iso(self.updated_at),
        }


@dataclass(frozen=True)
class TransitionRecord:
    id: str
    entity_id: str
    entity_type: str
    transition: str
    from_status: str
    to_status: str
    actor_id: str
    actor_role: str
    attempt_id: str
    budget_id: Optional[str] = None
    budget_delta: Decimal = ZERO
    occurred_at: datetime = field(default_factory=utc_now)
    result_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "transition": self.transition,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "attempt_id": self.attempt_id,
            "budget_id": self.budget_id,
            "budget_delta": str(self.budget_delta),
            "occurred_at": iso(self.occurred_at),
        }


@dataclass(frozen=True)
class EntityWrite:
    entity: LifecycleEntity
    # None inserts a new row; otherwise the stored version must still match.
    expected_version: Optional[int]


@dataclass(frozen=True)
class BudgetWrite:
    budget: Budget
    expected_version: int


@dataclass(frozen=True)
class ReservationToken:
    token_id: str
    budget_id: str
    amount: Decimal
    currency: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TransitionResult:
    entity: LifecycleEntity
    record: TransitionRecord
    replayed: bool = False
    derived: Tuple[LifecycleEntity, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "transition": self.record.to_dict(),
            "derived": [child.to_dict() for child in self.derived],
            "replayed": self.replayed,
        }
