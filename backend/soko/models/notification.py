from datetime import datetime
import json

from soko.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    channel = db.Column(db.String(32), nullable=False, default="in_app")  # in_app | sms | whatsapp
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(24), nullable=False, default="queued", index=True)  # queued | sent | failed
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True, index=True)
    last_error = db.Column(db.String(240), nullable=True)
    provider = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def set_meta(self, meta: dict) -> None:
        try:
            self.meta = json.dumps(meta, separators=(",", ":"), default=str)
        except Exception:
            self.meta = "{}"

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        meta = self.meta_dict()
        meta["is_read"] = True
        meta["read_at"] = stamped.isoformat()
        self.set_meta(meta)
        return stamped

    def to_dict(self):
        meta = self.meta_dict()
        read_at = meta.get("read_at")
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type or "",
            "channel": self.channel or "in_app",
            "title": self.title or "",
            "message": self.message or "",
            "status": self.status or "queued",
            "attempts": int(self.attempts or 0),
            "provider": self.provider or "",
            "provider_ref": self.provider_ref or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "order_id": self.order_id if self.order_id is not None else meta.get("order_id"),
            "is_read": bool(meta.get("is_read")),
            "read_at": read_at if isinstance(read_at, str) and read_at.strip() else None,
        }
