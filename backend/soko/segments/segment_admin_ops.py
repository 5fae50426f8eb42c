from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request

from soko.errors import NotFoundError, StaleStateError, ValidationError
from soko.extensions import db
from soko.jobs.order_timeouts import run_order_timeouts
from soko.models import JobRun, ReconciliationItem
from soko.services.escrow_service import scan_integrity
from soko.services.payout_service import process_pending_payouts
from soko.utils.auth import current_actor
from soko.utils.events import log_event

admin_ops_bp = Blueprint("admin_ops_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    actor = current_actor()
    if not actor:
        return None, (jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}), 401)
    if not actor.is_privileged:
        return None, (jsonify({"ok": False, "error": "FORBIDDEN", "message": "Forbidden", "status": 403}), 403)
    return actor, None


def _limit(default: int, maximum: int) -> int:
    raw = request.args.get("limit")
    if raw is None:
        data = request.get_json(silent=True)
        raw = data.get("limit") if isinstance(data, dict) else None
    try:
        value = int(raw) if raw is not None else default
    except Exception:
        value = default
    return max(1, min(value, maximum))


@admin_ops_bp.post("/jobs/order-timeouts")
def trigger_order_timeouts():
    actor, err = _require_admin()
    if err:
        return err
    result = run_order_timeouts(limit=_limit(200, 5000))
    log_event("order_timeouts_triggered", actor=actor, metadata={"ok": result.get("ok")})
    db.session.commit()
    return jsonify({"ok": True, "result": result}), 200


@admin_ops_bp.post("/jobs/payouts")
def trigger_payouts():
    actor, err = _require_admin()
    if err:
        return err
    result = process_pending_payouts(limit=_limit(50, 500))
    return jsonify({"ok": True, "result": result}), 200


@admin_ops_bp.get("/jobs/runs")
def job_runs():
    _, err = _require_admin()
    if err:
        return err
    rows = JobRun.query.order_by(JobRun.ran_at.desc()).limit(_limit(50, 500)).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_ops_bp.get("/escrow/integrity")
def escrow_integrity():
    _, err = _require_admin()
    if err:
        return err
    result = scan_integrity()
    return jsonify(result), 200


@admin_ops_bp.get("/reconciliation")
def reconciliation_queue():
    _, err = _require_admin()
    if err:
        return err
    status = (request.args.get("status") or "open").strip().lower()
    q = ReconciliationItem.query
    if status != "all":
        q = q.filter_by(status=status)
    rows = q.order_by(ReconciliationItem.created_at.desc()).limit(_limit(100, 1000)).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_ops_bp.post("/reconciliation/<int:item_id>/resolve")
def resolve_reconciliation(item_id: int):
    actor, err = _require_admin()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    note = str(data.get("note") or "").strip() if isinstance(data, dict) else ""
    if not note:
        raise ValidationError("A resolution note is required")
    item = db.session.get(ReconciliationItem, int(item_id))
    if item is None:
        raise NotFoundError("Reconciliation item not found")
    rows = ReconciliationItem.query.filter(
        ReconciliationItem.id == int(item_id),
        ReconciliationItem.status == "open",
    ).update(
        {
            "status": "resolved",
            "resolved_at": datetime.utcnow(),
            "resolved_by": actor.user_id,
            "resolution_note": note[:240],
        },
        synchronize_session=False,
    )
    if rows != 1:
        db.session.rollback()
        raise StaleStateError("Item already resolved")
    log_event(
        "reconciliation_resolved",
        order_id=int(item.order_id),
        actor=actor,
        metadata={"item_id": int(item_id), "kind": item.kind},
    )
    db.session.commit()
    return jsonify({"ok": True, "item": db.session.get(ReconciliationItem, int(item_id)).to_dict()}), 200
