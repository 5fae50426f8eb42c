from __future__ import annotations

from flask import Blueprint, jsonify, request

from soko.errors import NotFoundError
from soko.extensions import db
from soko.models import Notification
from soko.utils.auth import current_actor

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


def _unauthorized():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}), 401


def _inbox_owner():
    actor = current_actor()
    if not actor or actor.user_id is None:
        return None
    return actor


@notifications_bp.get("/notifications")
def list_notifications():
    actor = _inbox_owner()
    if not actor:
        return _unauthorized()
    q = Notification.query.filter_by(user_id=int(actor.user_id), channel="in_app")
    order_id = request.args.get("order_id", type=int)
    if order_id is not None:
        q = q.filter_by(order_id=order_id)
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    actor = _inbox_owner()
    if not actor:
        return _unauthorized()
    row = Notification.query.filter_by(id=int(notification_id), user_id=int(actor.user_id)).first()
    if row is None:
        raise NotFoundError("Notification not found")
    try:
        stamped = row.mark_read()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({"ok": True, "id": int(row.id), "is_read": True, "read_at": stamped.isoformat()}), 200
