from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Dict, Tuple, TypeVar

from procurement_core.domain.contracts import (
    ZERO,
    Budget,
    BudgetWrite,
    ReservationToken,
    to_decimal,
    utc_now,
)
from procurement_core.domain.entity_store import ConcurrencyConflict, EntityStore
from procurement_core.errors import (
    ConcurrentModificationError,
    InsufficientFundsError,
    ValidationError,
    not_found,
)
from procurement_core.observability import observe_budget_cas_retry, observe_budget_insufficient_funds


T = TypeVar("T")

_INACTIVE_STATUSES = {"EXPIRED", "SUSPENDED"}
_EXPIRABLE_STATUSES = {"ACTIVE", "DEPLETED"}


class ReservationBook:
    """Outstanding reservations shared by every ledger in one process."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: Dict[str, ReservationToken] = {}

    def reserved_amount(self, budget_id: str) -> Decimal:
        with self._lock:
            return self._reserved_locked(budget_id)

    def try_add(self, token: ReservationToken, available: Decimal) -> Decimal | None:
        """Add ``token`` if it fits in ``available``; otherwise return what is left to reserve."""
        with self._lock:
            remaining = available - self._reserved_locked(token.budget_id)
            if token.amount > remaining:
                return remaining
            self._tokens[token.token_id] = token
            return None

    def pop(self, token_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(token_id, None) is not None

    def __contains__(self, token_id: object) -> bool:
        with self._lock:
            return token_id in self._tokens

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def _reserved_locked(self, budget_id: str) -> Decimal:
        return sum((token.amount for token in self._tokens.values() if token.budget_id == budget_id), ZERO)


class BudgetLedger:
    """Two-phase budget accounting: reserve in memory, debit on commit with a version check.

    ``available_amount`` only moves at commit time. Reservations live in a
    ``ReservationBook`` shared per process so concurrent requests in one worker
    cannot over-reserve; across workers the version check at commit keeps
    ``0 <= available <= total``.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        max_attempts: int = 3,
        reservations: ReservationBook | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.reservations = reservations if reservations is not None else ReservationBook()
        self._clock = clock
        self._logger = logging.getLogger("procurement_core")

    def get_budget(self, budget_id: str) -> Budget:
        budget = self.store.get_budget(budget_id)
        if budget is None:
            raise not_found("budget", budget_id)
        return budget

    def reserved_amount(self, budget_id: str) -> Decimal:
        return self.reservations.reserved_amount(budget_id)

    def available_to_reserve(self, budget_id: str) -> Decimal:
        budget = self.get_budget(budget_id)
        return budget.available_amount - self.reserved_amount(budget_id)

    def reserve(self, budget_id: str, amount: Any, currency: str | None = None) -> ReservationToken:
        requested = _positive_amount(amount)
        budget = self.get_budget(budget_id)
        self._ensure_usable(budget, currency)

        token = ReservationToken(
            token_id=uuid.uuid4().hex,
            budget_id=budget.id,
            amount=requested,
            currency=budget.currency,
            created_at=self._clock(),
        )
        remaining = self.reservations.try_add(token, budget.available_amount)
        if remaining is not None:
            raise self._insufficient(budget, requested, remaining)
        return token

    def release(self, token: ReservationToken | None) -> bool:
        if token is None:
            return False
        return self.reservations.pop(token.token_id)

    def finalize(self, token: ReservationToken | None) -> None:
        """Forget a reservation whose debit has been durably written."""
        self.release(token)

    def is_reserved(self, token: ReservationToken) -> bool:
        return token.token_id in self.reservations

    def plan_debit(self, token: ReservationToken) -> BudgetWrite:
        budget = self.get_budget(token.budget_id)
        self._ensure_usable(budget, token.currency)
        if token.amount > budget.available_amount:
            # Another worker committed first; the reservation no longer fits.
            raise self._insufficient(budget, token.amount, budget.available_amount)

        available = budget.available_amount - token.amount
        status = "DEPLETED" if available == ZERO else budget.status
        updated = replace(
            budget,
            available_amount=available,
            status=status,
            version=budget.version + 1,
            updated_at=self._clock(),
        )
        return BudgetWrite(budget=updated, expected_version=budget.version)

    def commit(self, token: ReservationToken) -> Budget:
        if not self.is_reserved(token):
            raise ValidationError(
                code="reservation_not_found",
                message_key="reservation_not_found",
                payload={"token_id": token.token_id},
            )

        def attempt() -> Budget:
            write = self.plan_debit(token)
            self.store.commit_atomic(budget_writes=[write])
            return write.budget

        try:
            budget = self._with_cas_retry("commit", token.budget_id, attempt)
        finally:
            self.release(token)
        return budget

    def plan_credit(self, budget_id: str, amount: Any) -> BudgetWrite:
        credited = _positive_amount(amount)
        budget = self.get_budget(budget_id)
        # Credits reverse earlier debits, so the balance never exceeds the total.
        available = min(budget.total_amount, budget.available_amount + credited)
        status = "ACTIVE" if budget.status == "DEPLETED" and available > ZERO else budget.status
        updated = replace(
            budget,
            available_amount=available,
            status=status,
            version=budget.version + 1,
            updated_at=self._clock(),
        )
        return BudgetWrite(budget=updated, expected_version=budget.version)

    def credit(self, budget_id: str, amount: Any) -> Budget:
        def attempt() -> Budget:
            write = self.plan_credit(budget_id, amount)
            self.store.commit_atomic(budget_writes=[write])
            return write.budget

        return self._with_cas_retry("credit", budget_id, attempt)

    def mark_expired(self, budget_id: str) -> Budget:
        def attempt() -> Budget:
            budget = self.get_budget(budget_id)
            if budget.status == "EXPIRED":
                return budget
            if budget.status not in _EXPIRABLE_STATUSES:
                raise ValidationError(
                    code="budget_inactive",
                    message_key="budget_inactive",
                    http_status=409,
                    payload={"budget_id": budget.id, "budget_status": budget.status},
                )
            updated = replace(budget, status="EXPIRED", version=budget.version + 1, updated_at=self._clock())
            self.store.commit_atomic(budget_writes=[BudgetWrite(budget=updated, expected_version=budget.version)])
            return updated

        return self._with_cas_retry("mark_expired", budget_id, attempt)

    def transfer(self, from_budget_id: str, to_budget_id: str, amount: Any) -> Tuple[Budget, Budget]:
        moved = _positive_amount(amount)
        if from_budget_id == to_budget_id:
            raise ValidationError(
                code="transfer_same_budget",
                message_key="action_invalid",
                payload={"budget_id": from_budget_id},
            )

        def attempt() -> Tuple[Budget, Budget]:
            source = self.get_budget(from_budget_id)
            target = self.get_budget(to_budget_id)
            self._ensure_usable(source, target.currency)
            self._ensure_usable(target, source.currency)
            available = source.available_amount - self.reserved_amount(source.id)
            if moved > available:
                raise self._insufficient(source, moved, available)

            now = self._clock()
            source_available = source.available_amount - moved
            updated_source = replace(
                source,
                total_amount=source.total_amount - moved,
                available_amount=source_available,
                status="DEPLETED" if source_available == ZERO else source.status,
                version=source.version + 1,
                updated_at=now,
            )
            updated_target = replace(
                target,
                total_amount=target.total_amount + moved,
                available_amount=target.available_amount + moved,
                status="ACTIVE" if target.status == "DEPLETED" else target.status,
                version=target.version + 1,
                updated_at=now,
            )
            self.store.commit_atomic(
                budget_writes=[
                    BudgetWrite(budget=updated_source, expected_version=source.version),
                    BudgetWrite(budget=updated_target, expected_version=target.version),
                ]
            )
            return updated_source, updated_target

        return self._with_cas_retry("transfer", from_budget_id, attempt)

    def _with_cas_retry(self, operation: str, budget_id: str, attempt: Callable[[], T]) -> T:
        for attempt_number in range(1, self.max_attempts + 1):
            try:
                return attempt()
            except ConcurrencyConflict as exc:
                observe_budget_cas_retry(operation)
                self._logger.warning(
                    "budget_cas_conflict",
                    extra={
                        "operation": operation,
                        "budget_id": budget_id,
                        "attempt": attempt_number,
                        "conflict_kind": exc.kind,
                    },
                )
        raise ConcurrentModificationError(
            details=f"budget {budget_id} kept changing during {operation}",
            payload={"budget_id": budget_id, "operation": operation, "attempts": self.max_attempts},
        )

    @staticmethod
    def _ensure_usable(budget: Budget, currency: str | None) -> None:
        if budget.status in _INACTIVE_STATUSES:
            raise ValidationError(
                code="budget_inactive",
                message_key="budget_inactive",
                http_status=409,
                payload={"budget_id": budget.id, "budget_status": budget.status},
            )
        normalized_currency = str(currency or "").strip().upper()
        if normalized_currency and normalized_currency != budget.currency:
            raise ValidationError(
                code="currency_mismatch",
                message_key="currency_mismatch",
                payload={
                    "budget_id": budget.id,
                    "budget_currency": budget.currency,
                    "currency": normalized_currency,
                },
            )

    @staticmethod
    def _insufficient(budget: Budget, requested: Decimal, available: Decimal) -> InsufficientFundsError:
        observe_budget_insufficient_funds()
        shortfall = requested - max(available, ZERO)
        return InsufficientFundsError(
            details=f"budget {budget.id} short by {shortfall}",
            payload={
                "budget_id": budget.id,
                "requested": str(requested),
                "available": str(available),
                "shortfall": str(shortfall),
                "currency": budget.currency,
            },
        )


def _positive_amount(amount: Any) -> Decimal:
    try:
        value = to_decimal(amount)
    except ValueError as exc:
        raise ValidationError(code="invalid_amount", message_key="action_invalid", details=str(exc)) from exc
    if not value.is_finite() or value <= ZERO:
        raise ValidationError(
            code="invalid_amount",
            message_key="action_invalid",
            payload={"amount": str(value)},
        )
    return value
