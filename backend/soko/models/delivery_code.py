from datetime import datetime

from soko.extensions import db


class DeliveryCode(db.Model):
    """One issued delivery code. Only the keyed digest is stored."""

    __tablename__ = "delivery_codes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    code_hash = db.Column(db.String(64), nullable=False)
    is_resend = db.Column(db.Boolean, nullable=False, default=False)
    issued_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    consumed_at = db.Column(db.DateTime, nullable=True)
    superseded = db.Column(db.Boolean, nullable=False, default=False, index=True)
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and not bool(self.superseded)

    def to_dict(self) -> dict:
        # code_hash is never exposed
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "is_resend": bool(self.is_resend),
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "superseded": bool(self.superseded),
            "failed_attempts": int(self.failed_attempts or 0),
        }
