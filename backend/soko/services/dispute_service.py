from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from soko.errors import ForbiddenError, NotFoundError, StaleStateError, ValidationError
from soko.extensions import db
from soko.models import (
    Dispute,
    DisputeReason,
    DisputeStatus,
    Order,
    OrderStatus,
    PayoutTrigger,
)
from soko.services import delivery_codes, escrow_service, notifications, order_service, payment_service, payout_service
from soko.utils.auth import Actor
from soko.utils.events import log_event

logger = logging.getLogger(__name__)

DISPUTABLE = frozenset(
    {
        OrderStatus.PENDING_CONFIRMATION,
        OrderStatus.ACCEPTED,
        OrderStatus.SHIPPED,
        OrderStatus.ARRIVED,
    }
)

ACTIONS = ("refund", "release", "close")
MAX_EVIDENCE_PER_CALL = 10


def _now():
    return datetime.utcnow()


def get_dispute(dispute_id: int) -> Dispute:
    dispute = db.session.get(Dispute, int(dispute_id))
    if dispute is None:
        raise NotFoundError("Dispute not found")
    return dispute


def _clean_urls(urls) -> list[str]:
    if urls is None:
        return []
    if not isinstance(urls, list):
        raise ValidationError("evidence_urls must be a list")
    if len(urls) > MAX_EVIDENCE_PER_CALL:
        raise ValidationError(f"At most {MAX_EVIDENCE_PER_CALL} evidence links per request")
    out = []
    for raw in urls:
        url = str(raw or "").strip()
        if not url.lower().startswith(("http://", "https://")):
            raise ValidationError("Evidence links must be http(s) URLs")
        out.append(url[:500])
    return out


def _guard_dispute(dispute: Dispute, values: dict, *, expected=DisputeStatus.ACTIVE) -> None:
    rows = Dispute.query.filter(
        Dispute.id == int(dispute.id),
        Dispute.status.in_(list(expected)),
    ).update(values, synchronize_session=False)
    if rows != 1:
        raise StaleStateError("Dispute already resolved", details={"dispute_id": int(dispute.id)})


def _commit() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _parties(order: Order, dispute: Dispute | None = None, **extra) -> dict:
    payload = {
        "order_id": int(order.id),
        "buyer_id": int(order.buyer_id),
        "vendor_id": int(order.vendor_id),
    }
    if dispute is not None:
        payload["dispute_id"] = int(dispute.id)
    payload.update(extra)
    return payload


def file_dispute(order: Order, actor: Actor, reason: str, description: str = "", evidence_urls=None) -> Dispute:
    if actor.user_id is None or actor.user_id != int(order.buyer_id):
        raise ForbiddenError("Only the buyer of this order can open a dispute")
    reason = (reason or "").strip().lower()
    if reason not in DisputeReason.ALL:
        raise ValidationError("reason must be one of: " + ", ".join(sorted(DisputeReason.ALL)))
    description = (description or "").strip()
    if reason == DisputeReason.OTHER and not description:
        raise ValidationError("A description is required when the reason is 'other'")
    urls = _clean_urls(evidence_urls)

    def _step(previous):
        escrow_service.withhold(order, actor=actor, reason=f"dispute: {reason}")
        dispute = Dispute(
            order_id=int(order.id),
            opener_id=int(actor.user_id),
            vendor_id=int(order.vendor_id),
            reason=reason,
            description=description[:4000] or None,
            status=DisputeStatus.OPEN,
            pre_dispute_status=previous,
            opened_at=_now(),
        )
        if urls:
            dispute.add_evidence("buyer", urls)
        db.session.add(dispute)
        db.session.flush()
        return dispute

    dispute = order_service.transition(
        order,
        actor,
        expected=set(DISPUTABLE),
        target=OrderStatus.DISPUTED,
        event="dispute_opened",
        once=False,
        note=reason,
        extra=_step,
    )
    logger.info("dispute_opened dispute_id=%s order_id=%s reason=%s", dispute.id, order.id, reason)
    notifications.notify("dispute_opened", _parties(order, dispute, reason=reason))
    return dispute


def add_evidence(dispute: Dispute, actor: Actor, urls) -> Dispute:
    if actor.user_id is not None and actor.user_id == int(dispute.opener_id):
        party = "buyer"
    elif actor.user_id is not None and actor.user_id == int(dispute.vendor_id):
        party = "vendor"
    else:
        raise ForbiddenError("Only the buyer or vendor can add evidence")
    cleaned = _clean_urls(urls)
    if not cleaned:
        raise ValidationError("At least one evidence link is required")
    if not dispute.is_active:
        raise StaleStateError("Dispute already resolved", details={"dispute_id": int(dispute.id)})
    dispute.add_evidence(party, cleaned)
    _commit()
    return dispute


def vendor_respond(dispute: Dispute, actor: Actor, response: str) -> Dispute:
    if actor.user_id is None or actor.user_id != int(dispute.vendor_id):
        raise ForbiddenError("Only the vendor of this order can respond")
    text = (response or "").strip()
    if not text:
        raise ValidationError("A response is required")
    try:
        _guard_dispute(dispute, {"vendor_response": text[:4000], "vendor_response_at": _now()})
        order_service.record_event(int(dispute.order_id), actor, "dispute_vendor_response", once=False)
    except Exception:
        db.session.rollback()
        raise
    _commit()
    return dispute


def start_review(dispute: Dispute, actor: Actor) -> Dispute:
    if not actor.is_admin:
        raise ForbiddenError("Only an admin can review disputes")
    try:
        _guard_dispute(
            dispute,
            {"status": DisputeStatus.UNDER_REVIEW, "reviewed_at": _now()},
            expected={DisputeStatus.OPEN},
        )
    except Exception:
        db.session.rollback()
        raise
    _commit()
    return dispute


def resolve_dispute(dispute: Dispute, actor: Actor, action: str, notes: str = "") -> Dispute:
    """Admin resolution: refund the buyer, release to the vendor, or close.

    Close is a no-fault dismissal: the order returns to where it was before
    the dispute and the normal lifecycle finishes it.
    """
    if not actor.is_admin:
        raise ForbiddenError("Only an admin can resolve disputes")
    action = (action or "").strip().lower()
    if action not in ACTIONS:
        raise ValidationError("action must be one of: refund, release, close")
    if not dispute.is_active:
        raise StaleStateError("Dispute already resolved", details={"dispute_id": int(dispute.id)})
    notes = (notes or "").strip()
    order = order_service.get_order(dispute.order_id)
    now = _now()
    resolution = {
        "resolved_by": actor.user_id,
        "resolution_notes": notes[:4000] or None,
        "resolved_at": now,
    }

    if action == "refund":

        def _refund(_prev):
            escrow_service.refund(order, actor=actor, reason=f"dispute {dispute.id} refunded")
            delivery_codes.supersede_active(order.id)
            _guard_dispute(dispute, dict(resolution, status=DisputeStatus.RESOLVED_REFUND))

        order_service.transition(
            order,
            actor,
            expected={OrderStatus.DISPUTED},
            target=OrderStatus.REFUNDED,
            event="dispute_refunded",
            once=False,
            values={"refunded_at": now, "auto_release_at": None},
            note=notes,
            extra=_refund,
        )
        payment_service.refund_captured(order, reason=f"dispute {dispute.id}")

    elif action == "release":
        if escrow_service.get_escrow(order.id) is None:
            raise ValidationError("There are no funds in escrow to release for this order")

        def _release(_prev):
            escrow = escrow_service.release(order, actor=actor, reason=f"dispute {dispute.id} released")
            delivery_codes.supersede_active(order.id)
            _guard_dispute(dispute, dict(resolution, status=DisputeStatus.RESOLVED_RELEASE))
            return payout_service.create_payout(order, escrow, PayoutTrigger.DISPUTE_RELEASE)

        order_service.transition(
            order,
            actor,
            expected={OrderStatus.DISPUTED},
            target=OrderStatus.COMPLETED,
            event="dispute_released",
            once=False,
            values={"completed_at": now, "auto_release_at": None},
            note=notes,
            extra=_release,
        )

    else:
        restore = dispute.pre_dispute_status
        values = {}
        if restore == OrderStatus.ARRIVED and not order.is_pickup:
            grace = int(current_app.config.get("AUTO_RELEASE_GRACE_HOURS", 24))
            values["auto_release_at"] = now + timedelta(hours=grace)

        def _close(_prev):
            escrow_service.reinstate(order, actor=actor, reason=f"dispute {dispute.id} closed")
            _guard_dispute(dispute, dict(resolution, status=DisputeStatus.CLOSED))

        order_service.transition(
            order,
            actor,
            expected={OrderStatus.DISPUTED},
            target=restore,
            event="dispute_closed",
            once=False,
            values=values,
            note=notes,
            extra=_close,
        )

    db.session.expire(dispute)
    log_event(
        "dispute_resolved",
        order_id=int(order.id),
        actor=actor,
        idempotency_key=f"dispute_resolved:{int(dispute.id)}",
        metadata={"dispute_id": int(dispute.id), "action": action},
    )
    db.session.commit()
    logger.info("dispute_resolved dispute_id=%s order_id=%s action=%s", dispute.id, order.id, action)
    notifications.notify("dispute_resolved", _parties(order, dispute, action=action))
    return dispute
