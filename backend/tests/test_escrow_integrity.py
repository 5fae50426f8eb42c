from __future__ import annotations

import unittest
from unittest.mock import patch

from soko.errors import EscrowIntegrityError, EscrowStateError
from soko.extensions import db
from soko.models import EscrowTransaction, EscrowTransition, OrderStatus, PlatformEvent
from soko.services import escrow_service, order_service

from tests.support import EscrowServiceTestCase


class EscrowIntegrityTestCase(EscrowServiceTestCase):
    def test_expected_status_mapping(self):
        expected = escrow_service.expected_status
        self.assertIsNone(expected(OrderStatus.PENDING_CONFIRMATION, False))
        for status in (OrderStatus.ACCEPTED, OrderStatus.SHIPPED, OrderStatus.ARRIVED):
            self.assertEqual(expected(status, True), "held")
        self.assertEqual(expected(OrderStatus.COMPLETED, True), "released")
        self.assertEqual(expected(OrderStatus.DISPUTED, True), "withheld")
        self.assertIsNone(expected(OrderStatus.DISPUTED, False))
        self.assertEqual(expected(OrderStatus.REFUNDED, True), "refunded")
        self.assertIsNone(expected(OrderStatus.CANCELLED_BY_CUSTOMER, False))
        with self.assertRaises(ValueError):
            expected("teleported", True)

    def test_custody_changes_are_audited(self):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        order_service.mark_shipped(self.reload(order.id), self.vendor)
        order_service.settle(self.reload(order.id), self.vendor)

        rows = EscrowTransition.query.filter_by(order_id=order.id).order_by(EscrowTransition.id.asc()).all()
        self.assertEqual([(r.from_status, r.to_status) for r in rows], [("", "held"), ("held", "released")])
        self.assertEqual(rows[0].actor_type, "vendor")

    def test_released_escrow_cannot_be_refunded(self):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        order_service.mark_shipped(self.reload(order.id), self.vendor)
        order_service.settle(self.reload(order.id), self.vendor)
        with self.assertRaises(EscrowStateError):
            escrow_service.refund(self.reload(order.id))
        self.assertEqual(escrow_service.get_escrow(order.id).status, "released")

    def test_release_without_record_is_an_error(self):
        order = self.make_order()
        with self.assertRaises(EscrowStateError):
            escrow_service.release(order)

    def test_divergent_transition_rolls_back_and_raises_alarm(self):
        order = self.make_order()
        with patch("soko.services.escrow_service.ensure_held", return_value=None):
            with self.assertRaises(EscrowIntegrityError):
                order_service.accept(order, self.vendor)

        order = self.reload(order.id)
        self.assertEqual(order.status, OrderStatus.PENDING_CONFIRMATION)
        self.assertIsNone(order.accepted_at)
        alarm = PlatformEvent.query.filter_by(event_type="escrow_integrity_violation").one()
        self.assertEqual(alarm.severity, "CRITICAL")
        self.assertEqual(alarm.order_id, order.id)
        self.assertIn('"expected_escrow_status":"held"', alarm.metadata_json)

    def test_scan_reports_drift(self):
        healthy = self.make_order()
        drifted = self.make_order(reference="pay-ref-2")
        order_service.accept(healthy, self.vendor)
        order_service.accept(drifted, self.vendor)

        self.assertTrue(escrow_service.scan_integrity()["ok"])

        EscrowTransaction.query.filter_by(order_id=drifted.id).update({"status": "released"})
        db.session.commit()
        result = escrow_service.scan_integrity()
        self.assertFalse(result["ok"])
        self.assertEqual(result["checked"], 2)
        self.assertEqual(len(result["violations"]), 1)
        violation = result["violations"][0]
        self.assertEqual(violation["order_id"], drifted.id)
        self.assertEqual(violation["escrow_status"], "released")
        self.assertEqual(violation["expected_escrow_status"], "held")


if __name__ == "__main__":
    unittest.main()
