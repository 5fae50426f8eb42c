from datetime import datetime

from soko.extensions import db


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def _iso(value):
    return value.isoformat() if value else None


class OrderStatus:
    PENDING_CONFIRMATION = "pending_confirmation"
    ACCEPTED = "accepted"
    SHIPPED = "shipped"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED_BY_VENDOR = "cancelled_by_vendor"
    CANCELLED_BY_CUSTOMER = "cancelled_by_customer"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    TERMINAL = frozenset({COMPLETED, CANCELLED_BY_VENDOR, CANCELLED_BY_CUSTOMER, REFUNDED})
    IN_CUSTODY = frozenset({ACCEPTED, SHIPPED, ARRIVED})
    SETTLEABLE = frozenset({SHIPPED, ARRIVED})


class DeliveryMode:
    SHIP = "ship"
    PICKUP = "pickup"

    ALL = frozenset({SHIP, PICKUP})


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, nullable=False, index=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=OrderStatus.PENDING_CONFIRMATION, index=True)
    delivery_mode = db.Column(db.String(16), nullable=False, default=DeliveryMode.SHIP)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    shipping_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    commission_rate = db.Column(db.Numeric(5, 2), nullable=False)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=False)
    payout_amount = db.Column(db.Numeric(12, 2), nullable=False)

    vendor_notes = db.Column(db.Text, nullable=True)
    courier_name = db.Column(db.String(120), nullable=True)
    tracking_number = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    accepted_at = db.Column(db.DateTime, nullable=True, index=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    arrived_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    auto_release_at = db.Column(db.DateTime, nullable=True, index=True)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    @property
    def is_terminal(self) -> bool:
        return (self.status or "") in OrderStatus.TERMINAL

    @property
    def is_pickup(self) -> bool:
        return (self.delivery_mode or DeliveryMode.SHIP) == DeliveryMode.PICKUP

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "vendor_id": int(self.vendor_id),
            "status": self.status or "",
            "delivery_mode": self.delivery_mode or DeliveryMode.SHIP,
            "subtotal": _money(self.subtotal),
            "shipping_fee": _money(self.shipping_fee),
            "total": _money(self.total),
            "commission_rate": _money(self.commission_rate),
            "commission_amount": _money(self.commission_amount),
            "payout_amount": _money(self.payout_amount),
            "vendor_notes": self.vendor_notes or "",
            "courier_name": self.courier_name or "",
            "tracking_number": self.tracking_number or "",
            "items": [item.to_dict() for item in (self.items or [])],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "accepted_at": _iso(self.accepted_at),
            "shipped_at": _iso(self.shipped_at),
            "arrived_at": _iso(self.arrived_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "refunded_at": _iso(self.refunded_at),
            "auto_release_at": _iso(self.auto_release_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(240), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": self.product_id or "",
            "product_name": self.product_name or "",
            "quantity": int(self.quantity or 0),
            "unit_price": _money(self.unit_price),
            "line_total": _money(self.line_total),
        }


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    actor_role = db.Column(db.String(16), nullable=False, default="system")
    event = db.Column(db.String(64), nullable=False)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "actor_role": self.actor_role or "system",
            "event": self.event or "",
            "note": self.note or "",
            "created_at": _iso(self.created_at),
        }
