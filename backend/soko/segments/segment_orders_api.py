from __future__ import annotations

from flask import Blueprint, jsonify, request

from soko.errors import ValidationError
from soko.models import Dispute
from soko.services import delivery_codes, dispute_service, escrow_service, order_service
from soko.utils.auth import current_actor

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _unauthorized():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}), 401


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _order_payload(order) -> dict:
    payload = order.to_dict()
    escrow = escrow_service.get_escrow(order.id)
    payload["escrow"] = escrow.to_dict() if escrow else None
    dispute = (
        Dispute.query.filter_by(order_id=int(order.id))
        .order_by(Dispute.id.desc())
        .first()
    )
    payload["latest_dispute"] = dispute.to_dict() if dispute else None
    return payload


@orders_bp.post("/orders")
def create_order():
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    order = order_service.create_order(
        buyer_id=data.get("buyer_id"),
        vendor_id=data.get("vendor_id"),
        items=data.get("items"),
        payment=data.get("payment"),
        shipping_fee=data.get("shipping_fee") or 0,
        delivery_mode=data.get("delivery_mode") or "ship",
        commission_rate=data.get("commission_rate"),
        actor=actor,
    )
    return jsonify({"ok": True, "order": _order_payload(order)}), 201


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    order = order_service.get_order(order_id)
    order_service.require_party(order, actor)
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.get("/orders/<int:order_id>/timeline")
def timeline(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    order = order_service.get_order(order_id)
    order_service.require_party(order, actor)
    return jsonify({"ok": True, "items": order_service.timeline(order)}), 200


@orders_bp.post("/orders/<int:order_id>/accept")
def accept(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    order = order_service.accept(order_service.get_order(order_id), actor)
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/decline")
def decline(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    order = order_service.decline(order_service.get_order(order_id), actor, str(data.get("reason") or ""))
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    order = order_service.cancel_by_customer(order_service.get_order(order_id), actor, str(data.get("reason") or ""))
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/ship")
def ship(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    order = order_service.mark_shipped(
        order_service.get_order(order_id),
        actor,
        courier_name=data.get("courier_name"),
        tracking_number=data.get("tracking_number"),
    )
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/ready")
def ready(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    order = order_service.mark_ready(order_service.get_order(order_id), actor)
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/arrived")
def arrived(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    order = order_service.confirm_arrival(order_service.get_order(order_id), actor)
    return jsonify({"ok": True, "order": _order_payload(order)}), 200


@orders_bp.post("/orders/<int:order_id>/code/resend")
def resend_code(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    delivery_codes.resend(order_service.get_order(order_id), actor)
    # plaintext goes to the buyer only
    return jsonify({"ok": True, "message": "A new delivery code was sent to the buyer"}), 200


@orders_bp.post("/orders/<int:order_id>/code/verify")
def verify_code(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    order = order_service.get_order(order_id)
    payout_amount = delivery_codes.verify(order, actor, data.get("code"))
    return jsonify(
        {
            "ok": True,
            "payout_amount": float(payout_amount),
            "order": _order_payload(order_service.get_order(order_id)),
        }
    ), 200


@orders_bp.post("/orders/<int:order_id>/payments")
def record_payment(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    payment = order_service.record_payment(
        order_service.get_order(order_id),
        actor,
        amount=data.get("amount"),
        reference=str(data.get("reference") or ""),
        gateway=str(data.get("gateway") or "paystack"),
    )
    return jsonify({"ok": True, "payment": payment.to_dict()}), 201


@orders_bp.post("/orders/<int:order_id>/disputes")
def open_dispute(order_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    dispute = dispute_service.file_dispute(
        order_service.get_order(order_id),
        actor,
        reason=str(data.get("reason") or ""),
        description=str(data.get("description") or ""),
        evidence_urls=data.get("evidence_urls"),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201
