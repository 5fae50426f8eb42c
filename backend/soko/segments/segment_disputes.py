from __future__ import annotations

from flask import Blueprint, jsonify, request

from soko.errors import ForbiddenError, ValidationError
from soko.services import dispute_service
from soko.utils.auth import current_actor

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")


def _unauthorized():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}), 401


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@disputes_bp.get("/<int:dispute_id>")
def get_dispute(dispute_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    dispute = dispute_service.get_dispute(dispute_id)
    if not (actor.is_privileged or actor.user_id in (int(dispute.opener_id), int(dispute.vendor_id))):
        raise ForbiddenError("You are not a party to this dispute")
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/evidence")
def add_evidence(dispute_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    dispute = dispute_service.add_evidence(dispute_service.get_dispute(dispute_id), actor, data.get("evidence_urls"))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/respond")
def respond(dispute_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    dispute = dispute_service.vendor_respond(dispute_service.get_dispute(dispute_id), actor, str(data.get("response") or ""))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/review")
def review(dispute_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    dispute = dispute_service.start_review(dispute_service.get_dispute(dispute_id), actor)
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/resolve")
def resolve(dispute_id: int):
    actor = current_actor()
    if not actor:
        return _unauthorized()
    data = _body()
    dispute = dispute_service.resolve_dispute(
        dispute_service.get_dispute(dispute_id),
        actor,
        action=str(data.get("action") or ""),
        notes=str(data.get("notes") or ""),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200
