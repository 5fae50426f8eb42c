from __future__ import annotations

import importlib
import os
import unittest
from unittest.mock import patch

from flask import Flask

from soko.celery_app import create_celery_app
from soko.utils.observability import _before_send_scrub, init_sentry

from tests.support import EscrowAppMixin


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("soko")
        self.assertTrue(callable(getattr(module, "create_app", None)))

    def test_import_task_module(self):
        module = importlib.import_module("soko.tasks.escrow_tasks")
        for name in ("run_order_timeouts_task", "flush_notifications_task", "process_payouts_task"):
            self.assertTrue(hasattr(module, name), name)


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)

    def test_scrubber_redacts_auth_and_delivery_codes(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer abc", "Accept": "application/json"},
                "data": {"code": "482913"},
            }
        }
        scrubbed = _before_send_scrub(event, None)
        self.assertEqual(scrubbed["request"]["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["headers"]["Accept"], "application/json")
        self.assertEqual(scrubbed["request"]["data"]["code"], "[REDACTED]")


class CeleryScheduleTestCase(EscrowAppMixin, unittest.TestCase):
    def test_beat_schedule_covers_background_jobs(self):
        celery = create_celery_app(self.app)
        schedule = celery.conf.beat_schedule
        self.assertEqual(schedule["order-timeouts"]["task"], "soko.tasks.escrow_tasks.run_order_timeouts")
        self.assertEqual(schedule["notification-outbox"]["task"], "soko.tasks.escrow_tasks.flush_notifications")
        self.assertEqual(schedule["vendor-payouts"]["task"], "soko.tasks.escrow_tasks.process_payouts")
        self.assertGreaterEqual(schedule["order-timeouts"]["schedule"], 30.0)


if __name__ == "__main__":
    unittest.main()
