from datetime import datetime

from soko.extensions import db


class PaymentStatus:
    CAPTURED = "captured"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class Payment(db.Model):
    """A captured payment handed over by the gateway/webhook side."""

    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    gateway = db.Column(db.String(32), nullable=False, default="paystack")
    reference = db.Column(db.String(120), nullable=False, unique=True, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PaymentStatus.CAPTURED, index=True)
    captured_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    refunded_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "gateway": self.gateway or "",
            "reference": self.reference or "",
            "amount": float(self.amount or 0),
            "status": self.status or "",
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
        }
