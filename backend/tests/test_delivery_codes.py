from __future__ import annotations

import os
import unittest
from decimal import Decimal
from unittest.mock import patch

from soko.errors import DeliveryCodeError, ForbiddenError, StaleStateError, ValidationError
from soko.extensions import db
from soko.models import DeliveryCode, Notification, OrderStatus, Payout, PlatformEvent
from soko.services import delivery_codes, order_service
from soko.services.escrow_service import get_escrow
from soko.services.notifications import flush_notifications

from tests.support import EscrowServiceTestCase

NEW_CODE = "soko.services.delivery_codes._new_code"


class DeliveryCodeTestCase(EscrowServiceTestCase):
    def _shipped_order(self, code="482913"):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        with patch(NEW_CODE, return_value=code):
            order_service.mark_shipped(self.reload(order.id), self.vendor, "GIG", "TRK")
        return self.reload(order.id)

    def test_correct_code_settles_order(self):
        order = self._shipped_order()
        amount = delivery_codes.verify(order, self.vendor, "482913")
        self.assertEqual(amount, Decimal("3800.00"))

        order = self.reload(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(get_escrow(order.id).status, "released")
        payout = Payout.query.filter_by(order_id=order.id).one()
        self.assertEqual(payout.amount, Decimal("3800.00"))
        self.assertEqual(payout.commission_amount, Decimal("400.00"))
        self.assertEqual(payout.trigger, "otp")
        self.assertEqual(payout.status, "pending")

    def test_code_cannot_be_replayed(self):
        order = self._shipped_order()
        delivery_codes.verify(order, self.vendor, "482913")
        with self.assertRaises(DeliveryCodeError):
            delivery_codes.verify(self.reload(order.id), self.vendor, "482913")
        self.assertEqual(Payout.query.filter_by(order_id=order.id).count(), 1)

    def test_only_a_digest_is_stored(self):
        order = self._shipped_order()
        row = DeliveryCode.query.filter_by(order_id=order.id).one()
        self.assertNotIn("482913", row.code_hash)
        self.assertEqual(len(row.code_hash), 64)

    def test_plaintext_goes_to_buyer_only(self):
        order = self._shipped_order()
        rows = Notification.query.filter_by(event_type="delivery_code").all()
        self.assertTrue(rows)
        self.assertEqual({r.user_id for r in rows}, {self.buyer_id})
        leaked = [r for r in Notification.query.all() if "482913" in (r.message or "") and r.user_id != self.buyer_id]
        self.assertEqual(leaked, [])
        self.assertEqual(order.status, OrderStatus.SHIPPED)

    def test_failures_are_indistinguishable(self):
        order = self._shipped_order()
        messages = set()
        for attempt in ("000000", "482914"):
            with self.assertRaises(DeliveryCodeError) as ctx:
                delivery_codes.verify(self.reload(order.id), self.vendor, attempt)
            messages.add((ctx.exception.code, ctx.exception.message))

        pending = self.make_order(reference="pay-ref-2")
        with self.assertRaises(DeliveryCodeError) as ctx:
            delivery_codes.verify(pending, self.vendor, "482913")
        messages.add((ctx.exception.code, ctx.exception.message))
        self.assertEqual(messages, {("INVALID_DELIVERY_CODE", "Invalid or expired delivery code")})

    def test_malformed_code_is_a_validation_error(self):
        order = self._shipped_order()
        for bad in ("", "12345", "abcdef", "1234567"):
            with self.assertRaises(ValidationError):
                delivery_codes.verify(self.reload(order.id), self.vendor, bad)
        self.assertEqual(DeliveryCode.query.filter_by(order_id=order.id).one().failed_attempts, 0)

    def test_buyer_cannot_submit_the_code(self):
        order = self._shipped_order()
        with self.assertRaises(ForbiddenError):
            delivery_codes.verify(order, self.buyer, "482913")

    def test_resend_invalidates_previous_code(self):
        order = self._shipped_order()
        with patch(NEW_CODE, return_value="111222"):
            delivery_codes.resend(order, self.vendor)

        with self.assertRaises(DeliveryCodeError):
            delivery_codes.verify(self.reload(order.id), self.vendor, "482913")
        delivery_codes.verify(self.reload(order.id), self.vendor, "111222")
        self.assertEqual(self.reload(order.id).status, OrderStatus.COMPLETED)

        rows = DeliveryCode.query.filter_by(order_id=order.id).order_by(DeliveryCode.id.asc()).all()
        self.assertTrue(rows[0].superseded)
        self.assertTrue(rows[1].is_resend)
        self.assertIsNotNone(rows[1].consumed_at)

    def test_resend_requires_settleable_order(self):
        order = self.make_order()
        with self.assertRaises(StaleStateError):
            delivery_codes.resend(order, self.vendor)

    def test_lockout_after_max_attempts(self):
        order = self._shipped_order()
        max_attempts = int(self.app.config["DELIVERY_CODE_MAX_ATTEMPTS"])
        for _ in range(max_attempts):
            with self.assertRaises(DeliveryCodeError):
                delivery_codes.verify(self.reload(order.id), self.vendor, "999999")

        with self.assertRaises(DeliveryCodeError):
            delivery_codes.verify(self.reload(order.id), self.vendor, "482913")
        self.assertEqual(self.reload(order.id).status, OrderStatus.SHIPPED)
        locked = PlatformEvent.query.filter_by(event_type="delivery_code_locked").one()
        self.assertEqual(locked.order_id, order.id)

        with patch(NEW_CODE, return_value="654321"):
            delivery_codes.resend(self.reload(order.id), self.vendor)
        delivery_codes.verify(self.reload(order.id), self.vendor, "654321")
        self.assertEqual(self.reload(order.id).status, OrderStatus.COMPLETED)

    def test_pickup_code_settles_after_ready(self):
        order = self.make_order(delivery_mode="pickup", shipping_fee="0", amount="4000.00")
        order_service.accept(order, self.vendor)
        with patch(NEW_CODE, return_value="135790"):
            order_service.mark_ready(self.reload(order.id), self.vendor)
        amount = delivery_codes.verify(self.reload(order.id), self.vendor, "135790")
        self.assertEqual(amount, Decimal("3600.00"))


class StoredCodeScrubbingTestCase(EscrowServiceTestCase):
    def _shipped_order(self, code="482913"):
        order = self.make_order()
        order_service.accept(order, self.vendor)
        with patch(NEW_CODE, return_value=code):
            order_service.mark_shipped(self.reload(order.id), self.vendor, "GIG", "TRK")
        return self.reload(order.id)

    def _rows_holding(self, code):
        db.session.expire_all()
        return [(r.channel, r.status) for r in Notification.query.all() if code in (r.message or "")]

    def test_buyer_inbox_holds_code_until_used(self):
        self._shipped_order()
        self.assertEqual(sorted(self._rows_holding("482913")), [("in_app", "sent"), ("sms", "queued")])

    def test_sms_copy_is_scrubbed_once_sent(self):
        self._shipped_order()
        flush_notifications()
        self.assertEqual(self._rows_holding("482913"), [("in_app", "sent")])
        sms = Notification.query.filter_by(event_type="delivery_code", channel="sms").one()
        self.assertEqual(sms.status, "sent")
        self.assertIn("was sent by SMS", sms.message)

    def test_sms_copy_is_scrubbed_when_delivery_gives_up(self):
        order = self._shipped_order()
        sms = Notification.query.filter_by(event_type="delivery_code", channel="sms").one()
        sms.attempts = int(self.app.config["NOTIFY_MAX_ATTEMPTS"]) - 1
        db.session.commit()
        with patch.dict(os.environ, {"MOCK_NOTIFY_FORCE_FAIL": "1"}):
            flush_notifications()
        sms = Notification.query.filter_by(event_type="delivery_code", channel="sms").one()
        self.assertEqual(sms.status, "failed")
        self.assertEqual(sms.message, f"Your delivery code for order #{order.id} could not be sent by SMS. Check your in-app notifications.")

    def test_consumed_code_is_scrubbed(self):
        order = self._shipped_order()
        flush_notifications()
        delivery_codes.verify(order, self.vendor, "482913")
        self.assertEqual(self._rows_holding("482913"), [])
        inbox = Notification.query.filter_by(event_type="delivery_code", channel="in_app").one()
        self.assertEqual(inbox.message, f"The delivery code for order #{order.id} is no longer valid.")

    def test_resend_scrubs_previous_code_and_cancels_its_sms(self):
        order = self._shipped_order()
        with patch(NEW_CODE, return_value="111222"):
            delivery_codes.resend(order, self.vendor)
        self.assertEqual(self._rows_holding("482913"), [])
        self.assertEqual(sorted(self._rows_holding("111222")), [("in_app", "sent"), ("sms", "queued")])

        old_sms = (
            Notification.query.filter_by(event_type="delivery_code", channel="sms")
            .order_by(Notification.id.asc())
            .first()
        )
        self.assertEqual(old_sms.status, "failed")
        self.assertEqual(old_sms.last_error, "superseded")
        flush_notifications()
        db.session.refresh(old_sms)
        self.assertEqual(old_sms.status, "failed")
        self.assertIsNone(old_sms.sent_at)

    def test_auto_release_scrubs_outstanding_code(self):
        order = self._shipped_order()
        order_service.confirm_arrival(order, self.vendor)
        order_service.settle(self.reload(order.id), self.admin, trigger="auto_release")
        self.assertEqual(self._rows_holding("482913"), [])


if __name__ == "__main__":
    unittest.main()
