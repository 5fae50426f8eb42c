from datetime import datetime

from soko.extensions import db


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class PayoutTrigger:
    OTP = "otp"
    AUTO_RELEASE = "auto_release"
    DISPUTE_RELEASE = "dispute_release"


class Payout(db.Model):
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=False)
    transfer_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    net_commission = db.Column(db.Numeric(12, 2), nullable=False)

    trigger = db.Column(db.String(24), nullable=False, default=PayoutTrigger.OTP)
    status = db.Column(db.String(16), nullable=False, default=PayoutStatus.PENDING, index=True)
    reference = db.Column(db.String(120), nullable=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    requested_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processing_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "vendor_id": int(self.vendor_id),
            "amount": float(self.amount or 0),
            "commission_amount": float(self.commission_amount or 0),
            "transfer_fee": float(self.transfer_fee or 0),
            "net_commission": float(self.net_commission or 0),
            "trigger": self.trigger or "",
            "status": self.status or "",
            "reference": self.reference or "",
            "failure_reason": self.failure_reason or "",
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "processing_at": self.processing_at.isoformat() if self.processing_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }
