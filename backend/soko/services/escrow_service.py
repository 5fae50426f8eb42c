from __future__ import annotations

import logging
from datetime import datetime

from soko.errors import EscrowIntegrityError, EscrowStateError
from soko.extensions import db
from soko.models import EscrowTransaction, EscrowTransition, Order, OrderStatus
from soko.utils.events import log_event

logger = logging.getLogger(__name__)


class EscrowStatus:
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    WITHHELD = "withheld"

    ALLOWED = {
        HELD: {RELEASED, REFUNDED, WITHHELD},
        WITHHELD: {HELD, RELEASED, REFUNDED},
        RELEASED: set(),
        REFUNDED: set(),
    }


def _now():
    return datetime.utcnow()


def _actor_parts(actor) -> tuple[str, int | None]:
    if actor is None:
        return "system", None
    return (getattr(actor, "role", None) or "system")[:16], getattr(actor, "user_id", None)


def get_escrow(order_id: int) -> EscrowTransaction | None:
    return EscrowTransaction.query.filter_by(order_id=int(order_id)).first()


def _audit(order_id: int, from_status: str, to_status: str, *, actor=None, reason: str = "") -> EscrowTransition:
    actor_type, actor_id = _actor_parts(actor)
    seq = EscrowTransition.query.filter_by(order_id=int(order_id)).count() + 1
    row = EscrowTransition(
        order_id=int(order_id),
        from_status=from_status or "",
        to_status=to_status,
        actor_type=actor_type,
        actor_id=actor_id,
        idempotency_key=f"escrow:{int(order_id)}:{seq}:{from_status or 'none'}:{to_status}"[:160],
        reason=(reason or "")[:240],
        created_at=_now(),
    )
    db.session.add(row)
    return row


def _move(order_id: int, allowed_from: set[str], to_status: str, *, actor=None, reason: str = "") -> EscrowTransaction:
    """Conditionally move the escrow row. Does not commit."""
    escrow = get_escrow(order_id)
    if escrow is None:
        raise EscrowStateError(
            f"No escrow record for order {order_id}",
            details={"order_id": int(order_id), "to": to_status},
        )
    current = escrow.status or ""
    if current not in allowed_from or to_status not in EscrowStatus.ALLOWED.get(current, set()):
        raise EscrowStateError(
            f"Escrow cannot move {current} -> {to_status}",
            details={"order_id": int(order_id), "from": current, "to": to_status},
        )

    now = _now()
    values = {"status": to_status}
    if to_status == EscrowStatus.RELEASED:
        values["released_at"] = now
    elif to_status == EscrowStatus.REFUNDED:
        values["refunded_at"] = now
    elif to_status == EscrowStatus.WITHHELD:
        values["withheld_at"] = now
    if reason:
        values["notes"] = reason[:1000]

    rows = EscrowTransaction.query.filter(
        EscrowTransaction.id == escrow.id,
        EscrowTransaction.status == current,
    ).update(values, synchronize_session=False)
    if rows != 1:
        raise EscrowStateError(
            "Escrow changed concurrently",
            details={"order_id": int(order_id), "from": current, "to": to_status},
        )
    _audit(order_id, current, to_status, actor=actor, reason=reason)
    db.session.flush()
    db.session.refresh(escrow)
    logger.info("escrow_transition order_id=%s from=%s to=%s", order_id, current, to_status)
    return escrow


def ensure_held(order: Order, *, actor=None) -> EscrowTransaction:
    existing = get_escrow(order.id)
    if existing is not None:
        logger.warning(
            "escrow_already_present order_id=%s status=%s",
            order.id,
            existing.status,
        )
        return existing
    escrow = EscrowTransaction(
        order_id=int(order.id),
        status=EscrowStatus.HELD,
        held_amount=order.total,
        commission_amount=order.commission_amount,
        release_amount=order.payout_amount,
        created_at=_now(),
    )
    db.session.add(escrow)
    _audit(order.id, "", EscrowStatus.HELD, actor=actor, reason="order accepted")
    db.session.flush()
    return escrow


def release(order: Order, *, actor=None, reason: str = "") -> EscrowTransaction:
    return _move(order.id, {EscrowStatus.HELD, EscrowStatus.WITHHELD}, EscrowStatus.RELEASED, actor=actor, reason=reason)


def refund(order: Order, *, actor=None, reason: str = "") -> EscrowTransaction | None:
    # An order that was never accepted has nothing in custody.
    if get_escrow(order.id) is None:
        return None
    return _move(order.id, {EscrowStatus.HELD, EscrowStatus.WITHHELD}, EscrowStatus.REFUNDED, actor=actor, reason=reason)


def withhold(order: Order, *, actor=None, reason: str = "") -> EscrowTransaction | None:
    if get_escrow(order.id) is None:
        return None
    return _move(order.id, {EscrowStatus.HELD}, EscrowStatus.WITHHELD, actor=actor, reason=reason)


def reinstate(order: Order, *, actor=None, reason: str = "") -> EscrowTransaction | None:
    if get_escrow(order.id) is None:
        return None
    return _move(order.id, {EscrowStatus.WITHHELD}, EscrowStatus.HELD, actor=actor, reason=reason)


def expected_status(order_status: str, has_record: bool) -> str | None:
    """Escrow status implied by an order status. None means no record."""
    status = (order_status or "").strip()
    if status == OrderStatus.PENDING_CONFIRMATION:
        return None
    if status in OrderStatus.IN_CUSTODY:
        return EscrowStatus.HELD
    if status == OrderStatus.COMPLETED:
        return EscrowStatus.RELEASED
    if status == OrderStatus.DISPUTED:
        return EscrowStatus.WITHHELD if has_record else None
    if status in (
        OrderStatus.CANCELLED_BY_VENDOR,
        OrderStatus.CANCELLED_BY_CUSTOMER,
        OrderStatus.REFUNDED,
    ):
        return EscrowStatus.REFUNDED if has_record else None
    raise ValueError(f"unknown order status: {order_status!r}")


def check(order_id: int, order_status: str | None = None) -> dict | None:
    """Return a divergence description, or None when consistent."""
    if order_status is None:
        order_status = db.session.query(Order.status).filter(Order.id == int(order_id)).scalar()
    escrow = get_escrow(order_id)
    actual = escrow.status if escrow is not None else None
    try:
        expected = expected_status(order_status, escrow is not None)
    except ValueError:
        expected = "<unknown>"
    if actual == expected:
        return None
    return {
        "order_id": int(order_id),
        "order_status": order_status,
        "escrow_status": actual,
        "expected_escrow_status": expected,
    }


def assert_consistent(order_id: int, order_status: str | None = None) -> None:
    divergence = check(order_id, order_status)
    if divergence is None:
        return
    logger.error(
        "escrow_integrity_violation order_id=%s order_status=%s escrow_status=%s expected=%s",
        divergence["order_id"],
        divergence["order_status"],
        divergence["escrow_status"],
        divergence["expected_escrow_status"],
    )
    raise EscrowIntegrityError(details=divergence)


def report_integrity_violation(err: EscrowIntegrityError, *, actor=None) -> None:
    """Persist the alarm. Call after the offending transaction was rolled back."""
    details = dict(getattr(err, "details", None) or {})
    log_event(
        "escrow_integrity_violation",
        order_id=details.get("order_id"),
        actor=actor,
        severity="CRITICAL",
        metadata=details,
    )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("escrow_integrity_alarm_not_persisted order_id=%s", details.get("order_id"))


def scan_integrity(*, limit: int | None = None) -> dict:
    rows = (
        db.session.query(Order.id, Order.status, EscrowTransaction.status)
        .outerjoin(EscrowTransaction, EscrowTransaction.order_id == Order.id)
        .order_by(Order.id.asc())
    )
    if limit:
        rows = rows.limit(int(limit))

    checked = 0
    violations = []
    for order_id, order_status, escrow_status in rows.all():
        checked += 1
        try:
            expected = expected_status(order_status, escrow_status is not None)
        except ValueError:
            expected = "<unknown>"
        if escrow_status != expected:
            violations.append(
                {
                    "order_id": int(order_id),
                    "order_status": order_status,
                    "escrow_status": escrow_status,
                    "expected_escrow_status": expected,
                }
            )
    if violations:
        logger.error("escrow_integrity_scan violations=%s checked=%s", len(violations), checked)
    return {"ok": not violations, "checked": checked, "violations": violations}
