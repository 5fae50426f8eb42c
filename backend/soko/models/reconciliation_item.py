from datetime import datetime

from soko.extensions import db


class ReconciliationItem(db.Model):
    __tablename__ = "reconciliation_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False, index=True)  # refund_failed | payout_failed
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    reference = db.Column(db.String(120), nullable=True)
    detail = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="open", index=True)  # open | resolved
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    resolution_note = db.Column(db.String(240), nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "kind": self.kind or "",
            "amount": float(self.amount or 0),
            "reference": self.reference or "",
            "detail": self.detail or "",
            "status": self.status or "open",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolution_note": self.resolution_note or "",
        }
