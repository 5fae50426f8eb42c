from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from soko.extensions import db
from soko.models import Order, ReconciliationItem, User
from soko.services import order_service

from tests.support import SCENARIO_A_ITEMS, EscrowAppMixin


class EscrowApiTestCase(EscrowAppMixin, unittest.TestCase):
    def setUp(self):
        with self.app.app_context():
            self._reset_db()
        self.system_headers = self.token_for(900001, "system")
        self.vendor_headers = self.token_for(self.vendor_id, "vendor")
        self.buyer_headers = self.token_for(self.buyer_id, "buyer")
        self.admin_headers = self.token_for(self.admin_id, "admin")

    def _create_order(self, reference="pay-api-1") -> int:
        res = self.client.post(
            "/api/orders",
            headers=self.system_headers,
            json={
                "buyer_id": self.buyer_id,
                "vendor_id": self.vendor_id,
                "items": SCENARIO_A_ITEMS,
                "shipping_fee": "200.00",
                "commission_rate": "10",
                "payment": {"amount": "4200.00", "reference": reference, "gateway": "paystack"},
            },
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return int(res.get_json()["order"]["id"])

    def _assert_error(self, res, status: int, code: str):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"], code)
        self.assertEqual(int(body["status"]), status)
        self.assertTrue(str(body.get("message") or "").strip())
        return body

    def test_health_reports_integrations(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["payments"]["provider"], "mock")
        self.assertEqual(body["messaging"]["status"], "configured")

    def test_request_id_is_echoed(self):
        res = self.client.get("/api/health", headers={"X-Request-Id": "rid-escrow-1"})
        self.assertEqual(res.headers.get("X-Request-Id"), "rid-escrow-1")
        self.assertTrue((self.client.get("/api/health").headers.get("X-Request-Id") or "").strip())

    def test_unknown_route_uses_error_contract(self):
        res = self.client.get("/api/does-not-exist")
        body = self._assert_error(res, 404, "Not Found")
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_missing_token_is_unauthorized(self):
        res = self.client.post("/api/orders/1/accept")
        self._assert_error(res, 401, "UNAUTHORIZED")
        res = self.client.get("/api/orders/1", headers={"Authorization": "Bearer not-a-jwt"})
        self._assert_error(res, 401, "UNAUTHORIZED")

    def test_checkout_creates_pending_order(self):
        order_id = self._create_order()
        res = self.client.get(f"/api/orders/{order_id}", headers=self.buyer_headers)
        self.assertEqual(res.status_code, 200)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "pending_confirmation")
        self.assertEqual(order["total"], 4200.0)
        self.assertEqual(order["commission_amount"], 400.0)
        self.assertEqual(order["payout_amount"], 3800.0)
        self.assertIsNone(order["escrow"])

    def test_buyers_cannot_create_orders(self):
        res = self.client.post(
            "/api/orders",
            headers=self.buyer_headers,
            json={"buyer_id": self.buyer_id, "vendor_id": self.vendor_id, "items": SCENARIO_A_ITEMS},
        )
        self._assert_error(res, 403, "FORBIDDEN")

    def test_accept_and_stale_retry(self):
        order_id = self._create_order()
        res = self.client.post(f"/api/orders/{order_id}/accept", headers=self.vendor_headers)
        self.assertEqual(res.status_code, 200)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "accepted")
        self.assertEqual(order["escrow"]["status"], "held")

        res = self.client.post(f"/api/orders/{order_id}/accept", headers=self.vendor_headers)
        body = self._assert_error(res, 409, "STALE_STATE")
        self.assertEqual(body["message"], "Order already processed. Reload and try again.")

    def test_buyer_cannot_accept(self):
        order_id = self._create_order()
        res = self.client.post(f"/api/orders/{order_id}/accept", headers=self.buyer_headers)
        self._assert_error(res, 403, "FORBIDDEN")

    def test_strangers_cannot_read_orders(self):
        order_id = self._create_order()
        res = self.client.get(f"/api/orders/{order_id}", headers=self.token_for(424242, "buyer"))
        self._assert_error(res, 403, "FORBIDDEN")
        res = self.client.get("/api/orders/999999", headers=self.admin_headers)
        self._assert_error(res, 404, "NOT_FOUND")

    def test_delivery_code_flow_never_echoes_code(self):
        order_id = self._create_order()
        self.client.post(f"/api/orders/{order_id}/accept", headers=self.vendor_headers)
        with patch("soko.services.delivery_codes._new_code", return_value="482913"):
            res = self.client.post(
                f"/api/orders/{order_id}/ship",
                headers=self.vendor_headers,
                json={"courier_name": "GIG", "tracking_number": "TRK-9"},
            )
        self.assertEqual(res.status_code, 200)
        self.assertNotIn("482913", res.get_data(as_text=True))

        res = self.client.post(f"/api/orders/{order_id}/code/verify", headers=self.vendor_headers, json={"code": "000000"})
        self._assert_error(res, 400, "INVALID_DELIVERY_CODE")

        res = self.client.post(f"/api/orders/{order_id}/code/verify", headers=self.vendor_headers, json={"code": "482913"})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["payout_amount"], 3800.0)
        self.assertEqual(body["order"]["status"], "completed")
        self.assertNotIn("482913", res.get_data(as_text=True))

        res = self.client.post(f"/api/orders/{order_id}/code/verify", headers=self.vendor_headers, json={"code": "482913"})
        self._assert_error(res, 400, "INVALID_DELIVERY_CODE")

    def test_resend_hides_code(self):
        order_id = self._create_order()
        self.client.post(f"/api/orders/{order_id}/accept", headers=self.vendor_headers)
        self.client.post(f"/api/orders/{order_id}/ship", headers=self.vendor_headers, json={})
        with patch("soko.services.delivery_codes._new_code", return_value="777111"):
            res = self.client.post(f"/api/orders/{order_id}/code/resend", headers=self.vendor_headers)
        self.assertEqual(res.status_code, 200)
        self.assertNotIn("777111", res.get_data(as_text=True))

    def test_timeline(self):
        order_id = self._create_order()
        self.client.post(f"/api/orders/{order_id}/decline", headers=self.vendor_headers, json={"reason": "No stock"})
        res = self.client.get(f"/api/orders/{order_id}/timeline", headers=self.buyer_headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual([row["event"] for row in res.get_json()["items"]], ["created", "declined"])

    def test_non_object_body_is_rejected(self):
        order_id = self._create_order()
        res = self.client.post(f"/api/orders/{order_id}/decline", headers=self.vendor_headers, json=["No stock"])
        self._assert_error(res, 400, "VALIDATION_ERROR")

    def test_dispute_round_trip(self):
        order_id = self._create_order()
        self.client.post(f"/api/orders/{order_id}/accept", headers=self.vendor_headers)
        self.client.post(f"/api/orders/{order_id}/ship", headers=self.vendor_headers, json={})

        res = self.client.post(
            f"/api/orders/{order_id}/disputes",
            headers=self.buyer_headers,
            json={"reason": "damaged", "evidence_urls": ["https://img.example.com/1.jpg"]},
        )
        self.assertEqual(res.status_code, 201)
        dispute_id = int(res.get_json()["dispute"]["id"])

        res = self.client.get(f"/api/disputes/{dispute_id}", headers=self.vendor_headers)
        self.assertEqual(res.status_code, 200)
        res = self.client.get(f"/api/disputes/{dispute_id}", headers=self.token_for(424242, "buyer"))
        self._assert_error(res, 403, "FORBIDDEN")

        res = self.client.post(f"/api/disputes/{dispute_id}/resolve", headers=self.vendor_headers, json={"action": "release"})
        self._assert_error(res, 403, "FORBIDDEN")

        res = self.client.post(
            f"/api/disputes/{dispute_id}/resolve",
            headers=self.admin_headers,
            json={"action": "refund", "notes": "Photos confirm damage"},
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["dispute"]["status"], "resolved_refund")

        res = self.client.get(f"/api/orders/{order_id}", headers=self.buyer_headers)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "refunded")
        self.assertEqual(order["escrow"]["status"], "refunded")
        self.assertEqual(order["latest_dispute"]["id"], dispute_id)


class AdminOpsApiTestCase(EscrowAppMixin, unittest.TestCase):
    def setUp(self):
        with self.app.app_context():
            self._reset_db()
            order = self.make_order()
            self.order_id = int(order.id)
        self.admin_headers = self.token_for(self.admin_id, "admin")
        self.vendor_headers = self.token_for(self.vendor_id, "vendor")

    def test_admin_endpoints_require_admin(self):
        for method, path in (
            ("get", "/api/admin/escrow/integrity"),
            ("post", "/api/admin/jobs/order-timeouts"),
            ("get", "/api/admin/reconciliation"),
        ):
            res = getattr(self.client, method)(path, headers=self.vendor_headers)
            self.assertEqual(res.status_code, 403, path)

    def test_integrity_scan_endpoint(self):
        res = self.client.get("/api/admin/escrow/integrity", headers=self.admin_headers)
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["checked"], 1)

    def test_trigger_order_timeouts(self):
        with self.app.app_context():
            Order.query.filter_by(id=self.order_id).update({"created_at": self.hours_ago(60)})
            db.session.commit()
        res = self.client.post("/api/admin/jobs/order-timeouts", headers=self.admin_headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["result"]["stale_orders"]["acted"], 1)

        res = self.client.get("/api/admin/jobs/runs", headers=self.admin_headers)
        self.assertEqual(res.get_json()["items"][0]["job_name"], "order_timeouts")

    def test_reconciliation_queue_and_resolve(self):
        with self.app.app_context():
            with patch.dict(os.environ, {"MOCK_PAYMENTS_FORCE_FAIL": "1"}):
                order_service.decline(order_service.get_order(self.order_id), self.vendor, "Out of stock")
            item_id = int(ReconciliationItem.query.filter_by(order_id=self.order_id).one().id)

        res = self.client.get("/api/admin/reconciliation", headers=self.admin_headers)
        self.assertEqual([row["id"] for row in res.get_json()["items"]], [item_id])

        res = self.client.post(f"/api/admin/reconciliation/{item_id}/resolve", headers=self.admin_headers, json={})
        self._assert_validation(res)

        res = self.client.post(
            f"/api/admin/reconciliation/{item_id}/resolve",
            headers=self.admin_headers,
            json={"note": "Refunded manually via dashboard"},
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["item"]["status"], "resolved")

        res = self.client.post(
            f"/api/admin/reconciliation/{item_id}/resolve",
            headers=self.admin_headers,
            json={"note": "again"},
        )
        self.assertEqual(res.status_code, 409)

    def _assert_validation(self, res):
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "VALIDATION_ERROR")


class NotificationInboxApiTestCase(EscrowAppMixin, unittest.TestCase):
    def setUp(self):
        with self.app.app_context():
            self._reset_db()
            db.session.get(User, self.buyer_id).phone = None
            db.session.commit()
            order = self.make_order()
            self.order_id = int(order.id)
            order_service.accept(order, self.vendor)
        self.buyer_headers = self.token_for(self.buyer_id, "buyer")
        self.vendor_headers = self.token_for(self.vendor_id, "vendor")

    def _inbox(self, headers, **params):
        res = self.client.get("/api/notifications", headers=headers, query_string=params)
        self.assertEqual(res.status_code, 200)
        return res.get_json()["items"]

    def test_phoneless_buyer_reads_code_from_inbox(self):
        with patch("soko.services.delivery_codes._new_code", return_value="482913"):
            res = self.client.post(f"/api/orders/{self.order_id}/ship", headers=self.vendor_headers, json={})
        self.assertEqual(res.status_code, 200)

        items = self._inbox(self.buyer_headers, order_id=self.order_id)
        codes = [row for row in items if row["event_type"] == "delivery_code"]
        self.assertEqual(len(codes), 1)
        self.assertEqual(codes[0]["channel"], "in_app")
        self.assertIn("482913", codes[0]["message"])
        self.assertEqual(codes[0]["order_id"], self.order_id)

        vendor_items = self._inbox(self.vendor_headers)
        self.assertFalse(any("482913" in row["message"] for row in vendor_items))

        res = self.client.post(
            f"/api/orders/{self.order_id}/code/verify",
            headers=self.vendor_headers,
            json={"code": "482913"},
        )
        self.assertEqual(res.status_code, 200)
        items = self._inbox(self.buyer_headers, order_id=self.order_id)
        self.assertFalse(any("482913" in row["message"] for row in items))

    def test_mark_read_is_scoped_to_owner(self):
        self.client.post(f"/api/orders/{self.order_id}/ship", headers=self.vendor_headers, json={})
        row_id = self._inbox(self.buyer_headers)[0]["id"]

        res = self.client.post(f"/api/notifications/{row_id}/read", headers=self.vendor_headers)
        self.assertEqual(res.status_code, 404)

        res = self.client.post(f"/api/notifications/{row_id}/read", headers=self.buyer_headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["is_read"])
        read = [row for row in self._inbox(self.buyer_headers) if row["id"] == row_id][0]
        self.assertTrue(read["is_read"])
        self.assertTrue(read["read_at"])

    def test_inbox_requires_token(self):
        res = self.client.get("/api/notifications")
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()
