from datetime import datetime
import json

from soko.extensions import db


class DisputeStatus:
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_RELEASE = "resolved_release"
    CLOSED = "closed"

    ACTIVE = frozenset({OPEN, UNDER_REVIEW})


class DisputeReason:
    NO_DELIVERY = "no_delivery"
    WRONG_ITEM = "wrong_item"
    DAMAGED = "damaged"
    OTHER = "other"

    ALL = frozenset({NO_DELIVERY, WRONG_ITEM, DAMAGED, OTHER})


def _load_list(raw) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except Exception:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(v) for v in parsed if str(v).strip()]


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    opener_id = db.Column(db.Integer, nullable=False, index=True)
    vendor_id = db.Column(db.Integer, nullable=False, index=True)

    reason = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(32), nullable=False, default=DisputeStatus.OPEN, index=True)
    pre_dispute_status = db.Column(db.String(32), nullable=False)

    buyer_evidence_json = db.Column(db.Text, nullable=True)
    vendor_evidence_json = db.Column(db.Text, nullable=True)
    vendor_response = db.Column(db.Text, nullable=True)
    vendor_response_at = db.Column(db.DateTime, nullable=True)

    resolved_by = db.Column(db.Integer, nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    opened_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return (self.status or "") in DisputeStatus.ACTIVE

    @property
    def buyer_evidence_urls(self) -> list[str]:
        return _load_list(self.buyer_evidence_json)

    @property
    def vendor_evidence_urls(self) -> list[str]:
        return _load_list(self.vendor_evidence_json)

    def add_evidence(self, party: str, urls: list[str]) -> None:
        if party == "vendor":
            merged = self.vendor_evidence_urls + [u for u in urls if u not in self.vendor_evidence_urls]
            self.vendor_evidence_json = json.dumps(merged)
        else:
            merged = self.buyer_evidence_urls + [u for u in urls if u not in self.buyer_evidence_urls]
            self.buyer_evidence_json = json.dumps(merged)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "opener_id": int(self.opener_id),
            "vendor_id": int(self.vendor_id),
            "reason": self.reason or "",
            "description": self.description or "",
            "status": self.status or "",
            "pre_dispute_status": self.pre_dispute_status or "",
            "evidence_urls": self.buyer_evidence_urls + self.vendor_evidence_urls,
            "buyer_evidence_urls": self.buyer_evidence_urls,
            "vendor_evidence_urls": self.vendor_evidence_urls,
            "vendor_response": self.vendor_response or "",
            "vendor_response_at": self.vendor_response_at.isoformat() if self.vendor_response_at else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolution_notes": self.resolution_notes or "",
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
