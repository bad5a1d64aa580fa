import unittest

from procurement_core import create_app
from procurement_core.config import Config
from procurement_core.db import close_db
from procurement_core.infrastructure.sql_entity_store import SqlEntityStore
from procurement_core.observability import reset_metrics_for_tests
from procurement_core.ui_strings import error_message, success_message
from tests.helpers.lifecycle_fixtures import make_budget, make_entity
from tests.helpers.temp_db import TempDbSandbox


def _actor(role: str, actor_id: str = "user-1") -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


class LifecycleRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="lifecycle_routes")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.store = SqlEntityStore(self._temp_db.connect())

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _transition(self, entity_id: str, transition: str, role: str, attempt_id: str, **extra):
        return self.client.post(
            f"/api/lifecycle/entities/{entity_id}/transitions",
            headers=_actor(role),
            json={"transition": transition, "attempt_id": attempt_id, **extra},
        )

    def test_get_entity_and_available_transitions(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition", amount="75")

        response = self.client.get(f"/api/lifecycle/entities/{requisition.id}")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "DRAFT")
        self.assertEqual(payload["entity"]["amount"]["amount"], "75")

        options = self.client.get(f"/api/lifecycle/entities/{requisition.id}/transitions").get_json()
        self.assertFalse(options["terminal"])
        self.assertEqual([item["transition"] for item in options["transitions"]], ["cancel", "submit"])

        vendor_options = self.client.get(
            f"/api/lifecycle/entities/{requisition.id}/transitions", headers=_actor("VENDOR")
        ).get_json()
        self.assertEqual(vendor_options["transitions"], [])

    def test_transition_is_applied_and_replayed(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition")

        first = self._transition(requisition.id, "submit", "BUYER", "submit-1")
        second = self._transition(requisition.id, "submit", "BUYER", "submit-1")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.get_json()["entity"]["status"], "PENDING_APPROVAL")
        self.assertFalse(first.get_json()["replayed"])
        self.assertEqual(first.get_json()["message"], success_message("transition_applied"))
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.get_json()["replayed"])
        self.assertEqual(second.get_json()["transition"]["id"], first.get_json()["transition"]["id"])

        history = self.client.get(f"/api/lifecycle/entities/{requisition.id}/history").get_json()
        self.assertEqual(len(history["items"]), 1)
        self.assertEqual(history["items"][0]["actor_role"], "BUYER")

    def test_idempotency_key_header_is_accepted(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition")

        response = self.client.post(
            f"/api/lifecycle/entities/{requisition.id}/transitions",
            headers={**_actor("BUYER"), "Idempotency-Key": "header-key"},
            json={"transition": "submit"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["transition"]["attempt_id"], "header-key")

    def test_missing_attempt_id_is_rejected(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition")

        response = self.client.post(
            f"/api/lifecycle/entities/{requisition.id}/transitions",
            headers=_actor("BUYER"),
            json={"transition": "submit"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "attempt_id_required")

    def test_illegal_transition_returns_conflict(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition")

        response = self._transition(requisition.id, "approve", "MANAGER", "approve-1")

        self.assertEqual(response.status_code, 409)
        payload = response.get_json()
        self.assertEqual(payload["error"], "illegal_transition")
        self.assertEqual(payload["message"], error_message("illegal_transition"))
        self.assertEqual(payload["allowed_transitions"], ["cancel", "submit"])
        self.assertTrue(payload["request_id"])

    def test_vendor_cannot_approve_invoice(self) -> None:
        invoice = make_entity(self.store, "Invoice", status="PENDING_APPROVAL")

        response = self._transition(invoice.id, "approve", "VENDOR", "approve-1")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "permission_denied")
        self.assertEqual(self.store.get(invoice.id).status, "PENDING_APPROVAL")

    def test_anonymous_and_system_callers_are_rejected(self) -> None:
        invoice = make_entity(self.store, "Invoice", status="APPROVED")

        anonymous = self.client.post(
            f"/api/lifecycle/entities/{invoice.id}/transitions",
            json={"transition": "mark_overdue", "attempt_id": "x"},
        )
        system = self._transition(invoice.id, "mark_overdue", "SYSTEM", "x")

        self.assertEqual(anonymous.status_code, 403)
        self.assertEqual(anonymous.get_json()["error"], "actor_required")
        self.assertEqual(system.status_code, 403)
        self.assertEqual(self.store.get(invoice.id).status, "APPROVED")

    def test_insufficient_funds_returns_unprocessable(self) -> None:
        budget = make_budget(self.store, total="100")
        order = make_entity(self.store, "PurchaseOrder", status="PENDING_APPROVAL", amount="150", budget_id=budget.id)

        response = self._transition(order.id, "approve", "FINANCE", "approve-1")

        self.assertEqual(response.status_code, 422)
        payload = response.get_json()
        self.assertEqual(payload["error"], "insufficient_funds")
        self.assertEqual(payload["shortfall"], "50")

    def test_derive_document(self) -> None:
        receipt = make_entity(self.store, "GoodsReceipt", status="ACCEPTED", amount="300")

        created = self.client.post(
            f"/api/lifecycle/entities/{receipt.id}/derive",
            headers=_actor("VENDOR", "vendor-9"),
            json={"document": "create_invoice", "attempt_id": "inv-1", "attributes": {"due_date": "2026-11-30"}},
        )
        replayed = self.client.post(
            f"/api/lifecycle/entities/{receipt.id}/derive",
            headers=_actor("VENDOR", "vendor-9"),
            json={"document": "create_invoice", "attempt_id": "inv-1"},
        )

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.get_json()["message"], success_message("document_derived"))
        child = created.get_json()["derived"][0]
        self.assertEqual(child["type"], "Invoice")
        self.assertEqual(child["status"], "DRAFT")
        self.assertEqual(replayed.status_code, 200)
        self.assertEqual(replayed.get_json()["derived"][0]["id"], child["id"])

    def test_non_object_body_is_rejected(self) -> None:
        requisition = make_entity(self.store, "PurchaseRequisition")

        response = self.client.post(
            f"/api/lifecycle/entities/{requisition.id}/transitions",
            headers=_actor("BUYER"),
            json=["submit"],
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_payload")

    def test_unknown_entity_returns_not_found(self) -> None:
        response = self.client.get("/api/lifecycle/entities/missing")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "entity_not_found")

    def test_budget_view_and_transfer(self) -> None:
        source = make_budget(self.store, total="1000")
        target = make_budget(self.store, total="200")

        view = self.client.get(f"/api/lifecycle/budgets/{source.id}").get_json()
        self.assertEqual(view["available_amount"], "1000")
        self.assertEqual(view["available_to_reserve"], "1000")

        denied = self.client.post(
            "/api/lifecycle/budgets/transfer",
            headers=_actor("BUYER"),
            json={"from_budget_id": source.id, "to_budget_id": target.id, "amount": "300"},
        )
        self.assertEqual(denied.status_code, 403)

        moved = self.client.post(
            "/api/lifecycle/budgets/transfer",
            headers=_actor("FINANCE"),
            json={"from_budget_id": source.id, "to_budget_id": target.id, "amount": "300"},
        )
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.get_json()["from_budget"]["total_amount"], "700")
        self.assertEqual(moved.get_json()["to_budget"]["available_amount"], "500")

    def test_status_registry_bundle(self) -> None:
        response = self.client.get("/api/lifecycle/status-registry")

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertIn("Invoice", payload["registry"])
        self.assertFalse(payload["permissions"]["Invoice"]["approve"]["VENDOR"])


if __name__ == "__main__":
    unittest.main()
