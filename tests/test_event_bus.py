import unittest
from datetime import datetime

from procurement_core.core import BudgetDepleted, DocumentDerived, EntityTransitioned, EventBus
from procurement_core.core.event_schemas import latest_schema_version, validate_event
from procurement_core.observability import metrics_snapshot, reset_metrics_for_tests


def _transitioned(**overrides) -> EntityTransitioned:
    values = {
        "entity_id": "po-1",
        "entity_type": "PurchaseOrder",
        "transition": "approve",
        "from_status": "PENDING_APPROVAL",
        "to_status": "APPROVED",
        "actor_id": "fin-1",
        "actor_role": "FINANCE",
        "attempt_id": "a-1",
    }
    values.update(overrides)
    return EntityTransitioned(**values)


class EventBusTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(EntityTransitioned, lambda _event: execution_trace.append("first"))
        bus.subscribe(EntityTransitioned, lambda _event: execution_trace.append("second"))
        bus.publish(_transitioned())

        self.assertEqual(execution_trace, ["first", "second"])

    def test_handlers_only_receive_their_event_type(self) -> None:
        bus = EventBus()
        derived = []
        bus.subscribe(DocumentDerived, derived.append)

        bus.publish(_transitioned())
        bus.publish(
            DocumentDerived(parent_id="gr-1", parent_type="GoodsReceipt", child_id="inv-1", child_type="Invoice", actor_id="v-1")
        )

        self.assertEqual([event.child_id for event in derived], ["inv-1"])

    def test_failing_handler_does_not_stop_the_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("handler exploded")

        bus.subscribe(BudgetDepleted, broken)
        bus.subscribe(BudgetDepleted, received.append)

        with self.assertLogs("procurement_core", level="ERROR") as logs:
            bus.publish(BudgetDepleted(budget_id="b-1", currency="USD"))

        self.assertEqual(len(received), 1)
        self.assertTrue(any("event_handler_failed" in line for line in logs.output))

    def test_publish_counts_events_by_type(self) -> None:
        bus = EventBus()
        bus.publish(_transitioned())
        bus.publish(_transitioned(attempt_id="a-2"))
        bus.publish(BudgetDepleted(budget_id="b-1"))

        snapshot = metrics_snapshot()["domain_events"]
        self.assertEqual(snapshot["emitted_total"], 3)
        self.assertEqual(snapshot["by_type"], {"BudgetDepleted": 1, "EntityTransitioned": 2})

    def test_clear_drops_subscriptions(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(EntityTransitioned, received.append)
        bus.clear()
        bus.publish(_transitioned())
        self.assertEqual(received, [])

    def test_envelope_is_normalized_to_utc(self) -> None:
        event = _transitioned(event_id="  ", occurred_at=datetime(2026, 3, 1, 12, 0))
        self.assertTrue(event.event_id)
        self.assertEqual(event.occurred_at.utcoffset().total_seconds(), 0)


class EventSchemaTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def test_complete_events_are_valid(self) -> None:
        self.assertTrue(validate_event(_transitioned()))
        self.assertTrue(validate_event(BudgetDepleted(budget_id="b-1")))
        self.assertEqual(latest_schema_version("EntityTransitioned"), 1)
        self.assertEqual(latest_schema_version("Unknown"), 1)

    def test_missing_required_fields_are_reported_but_still_published(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(EntityTransitioned, received.append)

        with self.assertLogs("procurement_core", level="ERROR") as logs:
            bus.publish(_transitioned(attempt_id=""))

        self.assertEqual(len(received), 1)
        self.assertTrue(any("domain_event_schema_invalid" in line for line in logs.output))
        self.assertEqual(metrics_snapshot()["domain_events"]["schema_invalid_total"], 1)


if __name__ == "__main__":
    unittest.main()
