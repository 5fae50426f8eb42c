from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from soko import create_app
from soko.extensions import db
from soko.models import Order, User
from soko.services import order_service
from soko.utils.auth import SYSTEM_ACTOR, Actor
from soko.utils.jwt_utils import create_access_token

_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "SECRET_KEY": "test-secret-key-for-escrow",
    "SOKO_ENV": "test",
    "PAYMENTS_PROVIDER": "mock",
    "MESSAGING_PROVIDER": "mock",
    "MOCK_PAYMENTS_FORCE_FAIL": "",
    "MOCK_NOTIFY_FORCE_FAIL": "",
}

SCENARIO_A_ITEMS = [
    {"product_id": "sku-lamp", "product_name": "Desk lamp", "quantity": 2, "unit_price": "1500.00"},
    {"product_id": "sku-mug", "product_name": "Mug", "quantity": 1, "unit_price": "1000.00"},
]


class EscrowAppMixin:
    """Fresh app on an in-memory database, with a buyer, a vendor and an admin."""

    @classmethod
    def setUpClass(cls):
        cls._saved_env = {key: os.getenv(key) for key in _ENV}
        os.environ.update(_ENV)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _reset_db(self):
        db.session.remove()
        db.drop_all()
        db.create_all()
        buyer = User(name="Ada Buyer", email="buyer@soko.test", phone="+2348010000001", role="buyer")
        vendor = User(name="Tunde Vendor", email="vendor@soko.test", phone="+2348010000002", role="vendor")
        admin = User(name="Ops Admin", email="admin@soko.test", role="admin")
        db.session.add_all([buyer, vendor, admin])
        db.session.commit()
        self.buyer_id = int(buyer.id)
        self.vendor_id = int(vendor.id)
        self.admin_id = int(admin.id)

    @property
    def buyer(self) -> Actor:
        return Actor(user_id=self.buyer_id, role="buyer")

    @property
    def vendor(self) -> Actor:
        return Actor(user_id=self.vendor_id, role="vendor")

    @property
    def admin(self) -> Actor:
        return Actor(user_id=self.admin_id, role="admin")

    def make_order(self, *, delivery_mode="ship", reference="pay-ref-1", amount="4200.00", shipping_fee="200.00") -> Order:
        return order_service.create_order(
            buyer_id=self.buyer_id,
            vendor_id=self.vendor_id,
            items=SCENARIO_A_ITEMS,
            payment={"amount": amount, "reference": reference, "gateway": "paystack"},
            shipping_fee=shipping_fee,
            delivery_mode=delivery_mode,
            commission_rate="10",
            actor=SYSTEM_ACTOR,
        )

    def reload(self, order_id: int) -> Order:
        db.session.expire_all()
        return db.session.get(Order, int(order_id))

    def backdate(self, order_id: int, **fields) -> None:
        Order.query.filter(Order.id == int(order_id)).update(fields, synchronize_session=False)
        db.session.commit()
        db.session.expire_all()

    def hours_ago(self, hours: float) -> datetime:
        return datetime.utcnow() - timedelta(hours=hours)

    def token_for(self, user_id: int, role: str) -> dict:
        with self.app.app_context():
            token = create_access_token(user_id, role=role)
        return {"Authorization": f"Bearer {token}"}


class EscrowServiceTestCase(EscrowAppMixin, unittest.TestCase):
    """Service-level tests run inside one pushed application context."""

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        self._reset_db()

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()


def money(value: str) -> Decimal:
    return Decimal(value)
