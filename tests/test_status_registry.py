import unittest

from procurement_core.domain import status_registry
from procurement_core.domain.contracts import ENTITY_TYPES


class StatusRegistryTest(unittest.TestCase):
    def test_every_entity_type_is_registered(self) -> None:
        self.assertEqual(set(status_registry.STATUS_REGISTRY), set(ENTITY_TYPES))

    def test_initial_and_terminal_statuses_are_legal_states(self) -> None:
        for entity_type in ENTITY_TYPES:
            states = status_registry.legal_states(entity_type)
            self.assertIn(status_registry.initial_status(entity_type), states, entity_type)
            for terminal in status_registry.STATUS_REGISTRY[entity_type]["terminal"]:
                self.assertIn(terminal, states, f"{entity_type}:{terminal}")

    def test_transition_targets_are_legal_states(self) -> None:
        for entity_type in ENTITY_TYPES:
            states = status_registry.legal_states(entity_type)
            for from_status, edges in status_registry.STATUS_REGISTRY[entity_type]["transitions"].items():
                self.assertIn(from_status, states, f"{entity_type}:{from_status}")
                for name, to_status in edges.items():
                    self.assertIn(to_status, states, f"{entity_type}:{from_status}->{name}")

    def test_terminal_statuses_have_no_transitions(self) -> None:
        for entity_type in ENTITY_TYPES:
            for terminal in status_registry.STATUS_REGISTRY[entity_type]["terminal"]:
                self.assertEqual(status_registry.legal_transitions(entity_type, terminal), frozenset())

    def test_non_terminal_statuses_can_move(self) -> None:
        for entity_type in ENTITY_TYPES:
            for status in status_registry.legal_states(entity_type):
                if status_registry.is_terminal(entity_type, status):
                    continue
                self.assertTrue(
                    status_registry.legal_transitions(entity_type, status),
                    f"{entity_type}:{status} is a dead end",
                )

    def test_resolve_transition(self) -> None:
        self.assertEqual(
            status_registry.resolve_transition("PurchaseRequisition", "APPROVED", "convert_to_po"),
            "CONVERTED_TO_PO",
        )
        self.assertEqual(status_registry.resolve_transition("Invoice", "DISPUTED", "resolve_dispute"), "PENDING_APPROVAL")
        self.assertIsNone(status_registry.resolve_transition("PurchaseRequisition", "DRAFT", "approve"))
        self.assertIsNone(status_registry.resolve_transition("Invoice", "PAID", "dispute"))
        self.assertIsNone(status_registry.resolve_transition("Unknown", "DRAFT", "submit"))

    def test_invoice_overdue_only_reachable_from_approved(self) -> None:
        sources = [
            from_status
            for from_status, edges in status_registry.STATUS_REGISTRY["Invoice"]["transitions"].items()
            if "OVERDUE" in edges.values()
        ]
        self.assertEqual(sources, ["APPROVED"])

    def test_frontend_bundle_exposes_labels_and_actions(self) -> None:
        bundle = status_registry.frontend_bundle()
        self.assertEqual(set(bundle), set(ENTITY_TYPES))

        requisition_states = {item["key"]: item for item in bundle["PurchaseRequisition"]["states"]}
        approved = requisition_states["APPROVED"]
        self.assertEqual(approved["label"], "Approved")
        self.assertFalse(approved["terminal"])
        self.assertIn("convert_to_po", [option["transition"] for option in approved["transitions"]])
        self.assertTrue(requisition_states["CONVERTED_TO_PO"]["terminal"])
        self.assertEqual(requisition_states["CONVERTED_TO_PO"]["transitions"], [])


if __name__ == "__main__":
    unittest.main()
