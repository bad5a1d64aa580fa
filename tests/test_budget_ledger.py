import unittest
from decimal import Decimal

from procurement_core.domain.entity_store import ConcurrencyConflict
from procurement_core.errors import (
    ConcurrentModificationError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from procurement_core.infrastructure.memory_store import InMemoryEntityStore
from procurement_core.lifecycle.budget_ledger import BudgetLedger, ReservationBook
from procurement_core.observability import metrics_snapshot, reset_metrics_for_tests
from tests.helpers.lifecycle_fixtures import make_budget


class AlwaysStaleStore(InMemoryEntityStore):
    def commit_atomic(self, *, entity_writes=(), budget_writes=(), records=()):
        raise ConcurrencyConflict("stale", kind="budget", identifier="any")


class BudgetLedgerTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self.store = InMemoryEntityStore()
        self.ledger = BudgetLedger(self.store)
        self.budget = make_budget(self.store, total="10000")

    def test_reserve_does_not_move_available_amount(self) -> None:
        token = self.ledger.reserve(self.budget.id, "4000")

        self.assertEqual(self.store.get_budget(self.budget.id).available_amount, Decimal("10000"))
        self.assertEqual(self.ledger.reserved_amount(self.budget.id), Decimal("4000"))
        self.assertEqual(self.ledger.available_to_reserve(self.budget.id), Decimal("6000"))
        self.assertTrue(self.ledger.is_reserved(token))

    def test_reservations_cannot_overcommit(self) -> None:
        self.ledger.reserve(self.budget.id, "4000")

        with self.assertRaises(InsufficientFundsError) as ctx:
            self.ledger.reserve(self.budget.id, "7000")

        self.assertEqual(ctx.exception.http_status, 422)
        self.assertEqual(ctx.exception.payload["requested"], "7000")
        self.assertEqual(ctx.exception.payload["available"], "6000")
        self.assertEqual(ctx.exception.payload["shortfall"], "1000")
        self.assertEqual(metrics_snapshot()["budget"]["insufficient_funds_total"], 1)

    def test_release_returns_funds_to_reservable_balance(self) -> None:
        token = self.ledger.reserve(self.budget.id, "10000")

        self.assertTrue(self.ledger.release(token))
        self.assertFalse(self.ledger.release(token))
        self.assertEqual(self.ledger.available_to_reserve(self.budget.id), Decimal("10000"))

    def test_commit_debits_and_clears_reservation(self) -> None:
        token = self.ledger.reserve(self.budget.id, "4000")

        budget = self.ledger.commit(token)

        self.assertEqual(budget.available_amount, Decimal("6000"))
        self.assertEqual(budget.version, self.budget.version + 1)
        self.assertFalse(self.ledger.is_reserved(token))
        self.assertEqual(self.store.get_budget(self.budget.id).available_amount, Decimal("6000"))

    def test_commit_of_released_token_is_rejected(self) -> None:
        token = self.ledger.reserve(self.budget.id, "100")
        self.ledger.release(token)

        with self.assertRaises(ValidationError) as ctx:
            self.ledger.commit(token)
        self.assertEqual(ctx.exception.code, "reservation_not_found")
        self.assertEqual(self.store.get_budget(self.budget.id).available_amount, Decimal("10000"))

    def test_full_debit_marks_budget_depleted_and_credit_reactivates(self) -> None:
        token = self.ledger.reserve(self.budget.id, "10000")
        depleted = self.ledger.commit(token)
        self.assertEqual(depleted.status, "DEPLETED")

        restored = self.ledger.credit(self.budget.id, "2500")
        self.assertEqual(restored.status, "ACTIVE")
        self.assertEqual(restored.available_amount, Decimal("2500"))

    def test_credit_is_capped_at_total(self) -> None:
        budget = self.ledger.credit(self.budget.id, "500")
        self.assertEqual(budget.available_amount, Decimal("10000"))

    def test_invalid_amounts_are_rejected(self) -> None:
        for amount in ("0", "-5", "abc", "NaN"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError) as ctx:
                    self.ledger.reserve(self.budget.id, amount)
                self.assertEqual(ctx.exception.code, "invalid_amount")

    def test_unknown_budget(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.ledger.reserve("missing", "1")
        self.assertEqual(ctx.exception.code, "budget_not_found")

    def test_currency_mismatch(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.reserve(self.budget.id, "10", "eur")
        self.assertEqual(ctx.exception.code, "currency_mismatch")
        self.ledger.reserve(self.budget.id, "10", "usd")

    def test_expired_budget_rejects_reservations(self) -> None:
        expired = self.ledger.mark_expired(self.budget.id)
        self.assertEqual(expired.status, "EXPIRED")
        self.assertEqual(self.ledger.mark_expired(self.budget.id).version, expired.version)

        with self.assertRaises(ValidationError) as ctx:
            self.ledger.reserve(self.budget.id, "1")
        self.assertEqual(ctx.exception.code, "budget_inactive")
        self.assertEqual(ctx.exception.http_status, 409)

    def test_only_active_or_depleted_budgets_expire(self) -> None:
        suspended = make_budget(self.store, total="500", status="SUSPENDED")
        depleted = make_budget(self.store, total="500", available="0", status="DEPLETED")

        with self.assertRaises(ValidationError) as ctx:
            self.ledger.mark_expired(suspended.id)
        self.assertEqual(ctx.exception.code, "budget_inactive")
        self.assertEqual(ctx.exception.http_status, 409)
        self.assertEqual(self.store.get_budget(suspended.id).status, "SUSPENDED")
        self.assertEqual(self.store.get_budget(suspended.id).version, suspended.version)

        self.assertEqual(self.ledger.mark_expired(depleted.id).status, "EXPIRED")

    def test_transfer_moves_total_and_available(self) -> None:
        target = make_budget(self.store, total="1000")

        source, moved_to = self.ledger.transfer(self.budget.id, target.id, "2500")

        self.assertEqual(source.total_amount, Decimal("7500"))
        self.assertEqual(source.available_amount, Decimal("7500"))
        self.assertEqual(moved_to.total_amount, Decimal("3500"))
        self.assertEqual(moved_to.available_amount, Decimal("3500"))

    def test_transfer_respects_outstanding_reservations(self) -> None:
        target = make_budget(self.store, total="0")
        self.ledger.reserve(self.budget.id, "9000")

        with self.assertRaises(InsufficientFundsError):
            self.ledger.transfer(self.budget.id, target.id, "1500")
        self.assertEqual(self.store.get_budget(self.budget.id).total_amount, Decimal("10000"))

    def test_transfer_to_same_budget_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.transfer(self.budget.id, self.budget.id, "1")
        self.assertEqual(ctx.exception.code, "transfer_same_budget")

    def test_shared_reservation_book_spans_ledgers(self) -> None:
        book = ReservationBook()
        first = BudgetLedger(self.store, reservations=book)
        second = BudgetLedger(self.store, reservations=book)

        first.reserve(self.budget.id, "8000")
        with self.assertRaises(InsufficientFundsError):
            second.reserve(self.budget.id, "3000")


class BudgetLedgerRetryTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def test_cas_retries_are_bounded(self) -> None:
        store = AlwaysStaleStore()
        budget = make_budget(store, total="100")
        ledger = BudgetLedger(store, max_attempts=3)
        token = ledger.reserve(budget.id, "10")

        with self.assertRaises(ConcurrentModificationError) as ctx:
            ledger.commit(token)

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.payload["attempts"], 3)
        self.assertFalse(ledger.is_reserved(token))
        self.assertEqual(metrics_snapshot()["budget"]["cas_retry_total"], 3)
        self.assertEqual(store.get_budget(budget.id).available_amount, Decimal("100"))


if __name__ == "__main__":
    unittest.main()
