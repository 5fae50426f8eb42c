from __future__ import annotations

import unittest
from unittest.mock import patch

from soko.errors import DeliveryCodeError
from soko.jobs.order_timeouts import (
    run_auto_release_sweep,
    run_order_timeouts,
    run_stale_order_sweep,
    run_unshipped_sweep,
)
from soko.models import JobRun, Notification, OrderEvent, OrderStatus, Payment, Payout
from soko.services import delivery_codes, order_service
from soko.services.escrow_service import get_escrow

from tests.support import EscrowServiceTestCase


class StaleOrderSweepTestCase(EscrowServiceTestCase):
    def test_pending_order_past_deadline_is_auto_cancelled(self):
        order = self.make_order()
        self.backdate(order.id, created_at=self.hours_ago(49))

        result = run_stale_order_sweep()
        self.assertEqual(result, {"processed": 1, "acted": 1, "already_resolved": 0, "errors": 0})

        order = self.reload(order.id)
        self.assertEqual(order.status, OrderStatus.CANCELLED_BY_VENDOR)
        self.assertEqual(order.vendor_notes, "Auto-cancelled: no vendor response within 48 hours")
        self.assertIsNone(get_escrow(order.id))
        self.assertEqual(Payout.query.count(), 0)
        self.assertEqual(Payment.query.filter_by(order_id=order.id).one().status, "refunded")
        self.assertEqual(OrderEvent.query.filter_by(order_id=order.id, event="auto_cancelled").count(), 1)
        events = {n.event_type for n in Notification.query.all()}
        self.assertIn("order_auto_cancelled", events)
        self.assertIn("vendor_missed_order", events)

    def test_fresh_orders_are_left_alone(self):
        order = self.make_order()
        self.backdate(order.id, created_at=self.hours_ago(47))
        self.assertEqual(run_stale_order_sweep()["processed"], 0)
        self.assertEqual(self.reload(order.id).status, OrderStatus.PENDING_CONFIRMATION)

    def test_sweep_is_idempotent(self):
        order = self.make_order()
        self.backdate(order.id, created_at=self.hours_ago(72))
        run_stale_order_sweep()
        second = run_stale_order_sweep()
        self.assertEqual(second["processed"], 0)
        self.assertEqual(OrderEvent.query.filter_by(order_id=order.id, event="auto_cancelled").count(), 1)

    def test_lost_race_counts_as_already_resolved(self):
        order = self.make_order()
        self.backdate(order.id, created_at=self.hours_ago(49))
        real_decline = order_service.decline

        def _vendor_wins_first(o, actor, reason):
            real_decline(o, self.vendor, "Declined by vendor")
            return real_decline(o, actor, reason)

        with patch("soko.jobs.order_timeouts.order_service.decline", side_effect=_vendor_wins_first):
            result = run_stale_order_sweep()
        self.assertEqual(result["already_resolved"], 1)
        self.assertEqual(result["errors"], 0)
        self.assertEqual(self.reload(order.id).vendor_notes, "Declined by vendor")


class UnshippedSweepTestCase(EscrowServiceTestCase):
    def test_accepted_but_unshipped_order_is_refunded(self):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        self.backdate(order.id, accepted_at=self.hours_ago(73))

        result = run_unshipped_sweep()
        self.assertEqual(result["acted"], 1)
        order = self.reload(order.id)
        self.assertEqual(order.status, OrderStatus.CANCELLED_BY_VENDOR)
        self.assertEqual(get_escrow(order.id).status, "refunded")
        self.assertEqual(Payment.query.filter_by(order_id=order.id).one().status, "refunded")

    def test_recently_accepted_order_is_kept(self):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        self.backdate(order.id, accepted_at=self.hours_ago(10))
        self.assertEqual(run_unshipped_sweep()["processed"], 0)


class AutoReleaseSweepTestCase(EscrowServiceTestCase):
    def _arrived_order(self):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        with patch("soko.services.delivery_codes._new_code", return_value="482913"):
            order_service.mark_shipped(self.reload(order.id), self.vendor)
        order_service.confirm_arrival(self.reload(order.id), self.vendor)
        return self.reload(order.id)

    def test_grace_expiry_releases_escrow(self):
        order = self._arrived_order()
        self.backdate(order.id, auto_release_at=self.hours_ago(1))

        result = run_auto_release_sweep()
        self.assertEqual(result["acted"], 1)
        order = self.reload(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(get_escrow(order.id).status, "released")
        payout = Payout.query.filter_by(order_id=order.id).one()
        self.assertEqual(payout.trigger, "auto_release")

    def test_auto_release_supersedes_delivery_code(self):
        order = self._arrived_order()
        self.backdate(order.id, auto_release_at=self.hours_ago(1))
        run_auto_release_sweep()
        with self.assertRaises(DeliveryCodeError):
            delivery_codes.verify(self.reload(order.id), self.vendor, "482913")
        self.assertEqual(Payout.query.filter_by(order_id=order.id).count(), 1)

    def test_code_settlement_wins_over_later_sweep(self):
        order = self._arrived_order()
        delivery_codes.verify(order, self.vendor, "482913")
        self.backdate(order.id, auto_release_at=self.hours_ago(1))
        result = run_auto_release_sweep()
        self.assertEqual(result["processed"], 0)
        self.assertEqual(Payout.query.filter_by(order_id=order.id).one().trigger, "otp")

    def test_not_yet_due_orders_wait(self):
        self._arrived_order()
        self.assertEqual(run_auto_release_sweep()["processed"], 0)

    def test_disabled_flag_skips_release(self):
        order = self._arrived_order()
        self.backdate(order.id, auto_release_at=self.hours_ago(1))
        with patch.dict(self.app.config, {"AUTO_RELEASE_ENABLED": False}):
            result = run_auto_release_sweep()
        self.assertTrue(result["disabled"])
        self.assertEqual(self.reload(order.id).status, OrderStatus.ARRIVED)


class OrderTimeoutsJobTestCase(EscrowServiceTestCase):
    def test_run_records_job_and_summary(self):
        stale = self.make_order()
        self.backdate(stale.id, created_at=self.hours_ago(50))

        result = run_order_timeouts()
        self.assertTrue(result["ok"])
        self.assertEqual(result["stale_orders"]["acted"], 1)
        self.assertEqual(result["unshipped"]["processed"], 0)
        self.assertEqual(result["auto_release"]["processed"], 0)

        run = JobRun.query.filter_by(job_name="order_timeouts").one()
        self.assertTrue(run.ok)
        self.assertEqual(run.summary()["stale_orders"]["acted"], 1)

    def test_disabled_job_records_skip(self):
        with patch.dict(self.app.config, {"ORDER_TIMEOUTS_ENABLED": False}):
            result = run_order_timeouts()
        self.assertTrue(result["disabled"])
        run = JobRun.query.filter_by(job_name="order_timeouts").one()
        self.assertFalse(run.ok)
        self.assertEqual(run.error, "disabled_by_flag")


if __name__ == "__main__":
    unittest.main()
