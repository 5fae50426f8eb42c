from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from soko.errors import (
    BlockedTransitionError,
    EscrowIntegrityError,
    ForbiddenError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from soko.extensions import db
from soko.models import (
    DeliveryMode,
    Order,
    OrderEvent,
    OrderItem,
    OrderStatus,
    Payout,
    PayoutTrigger,
)
from soko.services import escrow_service, notifications, payment_service, payout_service
from soko.utils.auth import SYSTEM_ACTOR, Actor
from soko.utils.commission import compute_order_amounts, to_money
from soko.utils.events import log_event

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _cfg_int(key: str, default: int) -> int:
    try:
        return int(current_app.config.get(key, default))
    except Exception:
        return default


def response_deadline(order: Order) -> datetime:
    return order.created_at + timedelta(hours=_cfg_int("ORDER_RESPONSE_DEADLINE_HOURS", 48))


def ship_deadline(order: Order) -> datetime | None:
    if order.accepted_at is None:
        return None
    return order.accepted_at + timedelta(hours=_cfg_int("ORDER_SHIP_DEADLINE_HOURS", 72))


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("Order not found")
    return order


# ---------------------------------------------------------------------------
# authorization


def require_vendor(order: Order, actor: Actor) -> None:
    if actor.is_privileged:
        return
    if actor.role == "vendor" and actor.user_id == int(order.vendor_id):
        return
    raise ForbiddenError("Only the vendor of this order can do this")


def require_buyer(order: Order, actor: Actor) -> None:
    if actor.is_admin:
        return
    if actor.user_id is not None and actor.user_id == int(order.buyer_id) and actor.role != "vendor":
        return
    raise ForbiddenError("Only the buyer of this order can do this")


def require_party(order: Order, actor: Actor) -> None:
    if actor.is_privileged:
        return
    if actor.user_id in (int(order.buyer_id), int(order.vendor_id)):
        return
    raise ForbiddenError("You are not a party to this order")


# ---------------------------------------------------------------------------
# guarded write


def record_event(order_id: int, actor: Actor, event: str, note: str = "", *, once: bool = True) -> None:
    key = f"order:{int(order_id)}:{event}:{actor.key()}"[:160] if once else None
    if key and OrderEvent.query.filter_by(idempotency_key=key).first():
        return
    row = OrderEvent(
        order_id=int(order_id),
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        event=event,
        note=(note or "")[:240],
        idempotency_key=key,
        created_at=_now(),
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
    except IntegrityError:
        logger.debug("order_event_duplicate order_id=%s event=%s key=%s", order_id, event, key)


def _current_status(order_id: int) -> str | None:
    return db.session.query(Order.status).filter(Order.id == int(order_id)).scalar()


def _guarded_update(order_id: int, expected: set[str], values: dict) -> str:
    """UPDATE orders ... WHERE id = :id AND status IN (:expected).

    Returns the status observed before the write.
    """
    current = _current_status(order_id)
    if current is None:
        raise NotFoundError("Order not found")
    if current not in expected:
        raise StaleStateError(details={"order_id": int(order_id), "status": current})
    rows = (
        Order.query.filter(Order.id == int(order_id), Order.status.in_(list(expected)))
        .update(values, synchronize_session=False)
    )
    if rows != 1:
        raise StaleStateError(details={"order_id": int(order_id)})
    return current


def transition(
    order: Order,
    actor: Actor,
    *,
    expected: set[str],
    target: str,
    event: str,
    values: dict | None = None,
    note: str = "",
    extra=None,
    once: bool = True,
):
    """Apply one guarded order transition and commit it.

    ``extra`` runs inside the same database transaction with the status seen
    before the write; its return value is handed back to the caller.
    """
    updates = dict(values or {})
    updates["status"] = target
    updates["updated_at"] = _now()
    outcome = None
    try:
        previous = _guarded_update(order.id, expected, updates)
        if extra is not None:
            outcome = extra(previous)
        record_event(order.id, actor, event, note, once=once)
        db.session.flush()
        escrow_service.assert_consistent(order.id, target)
    except EscrowIntegrityError as e:
        db.session.rollback()
        escrow_service.report_integrity_violation(e, actor=actor)
        raise
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    db.session.expire(order)
    logger.info(
        "order_transition order_id=%s from=%s to=%s actor=%s",
        order.id,
        previous,
        target,
        actor.key(),
    )
    return outcome


def _parties(order: Order, **extra) -> dict:
    payload = {
        "order_id": int(order.id),
        "buyer_id": int(order.buyer_id),
        "vendor_id": int(order.vendor_id),
    }
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# checkout hand-off


def _validate_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one line item is required")
    out = []
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Line item {idx} must be an object")
        product_id = str(raw.get("product_id") or "").strip()
        if not product_id:
            raise ValidationError(f"Line item {idx} is missing product_id")
        try:
            quantity = int(raw.get("quantity"))
        except Exception:
            raise ValidationError(f"Line item {idx} has an invalid quantity")
        if quantity <= 0 or isinstance(raw.get("quantity"), bool):
            raise ValidationError(f"Line item {idx} has an invalid quantity")
        try:
            unit_price = to_money(raw.get("unit_price"))
        except ValueError:
            raise ValidationError(f"Line item {idx} has an invalid unit_price")
        if unit_price <= 0:
            raise ValidationError(f"Line item {idx} has an invalid unit_price")
        out.append(
            {
                "product_id": product_id[:64],
                "product_name": str(raw.get("product_name") or "").strip()[:240],
                "quantity": quantity,
                "unit_price": unit_price,
            }
        )
    return out


def create_order(
    *,
    buyer_id: int,
    vendor_id: int,
    items: list,
    payment: dict,
    shipping_fee=0,
    delivery_mode: str = DeliveryMode.SHIP,
    commission_rate=None,
    actor: Actor = SYSTEM_ACTOR,
) -> Order:
    if not actor.is_privileged:
        raise ForbiddenError("Orders are created by the checkout service")
    try:
        buyer_id = int(buyer_id)
        vendor_id = int(vendor_id)
    except Exception:
        raise ValidationError("buyer_id and vendor_id are required")
    if buyer_id == vendor_id:
        raise ValidationError("Buyer and vendor must be different users")
    mode = (delivery_mode or DeliveryMode.SHIP).strip().lower()
    if mode not in DeliveryMode.ALL:
        raise ValidationError("delivery_mode must be ship or pickup")
    try:
        shipping = to_money(shipping_fee or 0)
    except ValueError:
        raise ValidationError("shipping_fee must be a number")
    if shipping < 0:
        raise ValidationError("shipping_fee cannot be negative")
    if commission_rate is None:
        commission_rate = current_app.config.get("DEFAULT_COMMISSION_RATE", "10.00")
    try:
        rate = to_money(commission_rate)
    except ValueError:
        raise ValidationError("commission_rate must be a number")
    if rate < 0 or rate > 100:
        raise ValidationError("commission_rate must be between 0 and 100")
    if not isinstance(payment, dict):
        raise ValidationError("A captured payment is required")

    lines = _validate_items(items)
    amounts = compute_order_amounts(lines, shipping, rate)
    now = _now()
    try:
        order = Order(
            buyer_id=buyer_id,
            vendor_id=vendor_id,
            status=OrderStatus.PENDING_CONFIRMATION,
            delivery_mode=mode,
            subtotal=amounts.subtotal,
            shipping_fee=amounts.shipping_fee,
            total=amounts.total,
            commission_rate=amounts.commission_rate,
            commission_amount=amounts.commission_amount,
            payout_amount=amounts.payout_amount,
            created_at=now,
            updated_at=now,
        )
        for line, total in zip(lines, amounts.line_totals):
            order.items.append(OrderItem(line_total=total, **line))
        db.session.add(order)
        db.session.flush()
        payment_service.record_capture(
            order.id,
            amount=payment.get("amount"),
            reference=payment.get("reference") or "",
            gateway=payment.get("gateway") or "paystack",
        )
        record_event(order.id, actor, "created", f"total={amounts.total}")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("order_created order_id=%s buyer_id=%s vendor_id=%s total=%s", order.id, buyer_id, vendor_id, amounts.total)
    notifications.notify("new_order", _parties(order, deadline_hours=_cfg_int("ORDER_RESPONSE_DEADLINE_HOURS", 48)))
    notifications.notify("order_placed", _parties(order))
    return order


def record_payment(order: Order, actor: Actor, *, amount, reference: str, gateway: str = "paystack"):
    if not actor.is_privileged:
        raise ForbiddenError("Payments are recorded by the checkout service")
    if order.is_terminal:
        raise StaleStateError(details={"order_id": int(order.id), "status": order.status})
    try:
        row = payment_service.record_capture(order.id, amount=amount, reference=reference, gateway=gateway)
        record_event(order.id, actor, "payment_captured", f"reference={row.reference}", once=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return row


# ---------------------------------------------------------------------------
# vendor response


def accept(order: Order, actor: Actor) -> Order:
    require_vendor(order, actor)
    if order.status == OrderStatus.PENDING_CONFIRMATION and _now() >= response_deadline(order):
        raise StaleStateError(
            "The response window for this order has expired",
            details={"order_id": int(order.id)},
        )
    transition(
        order,
        actor,
        expected={OrderStatus.PENDING_CONFIRMATION},
        target=OrderStatus.ACCEPTED,
        event="accepted",
        values={"accepted_at": _now()},
        extra=lambda _prev: escrow_service.ensure_held(order, actor=actor),
    )
    notifications.notify("order_accepted", _parties(order))
    return order


def _close_out(order: Order, actor: Actor, reason: str):
    from soko.services import delivery_codes

    def _step(_prev):
        escrow_service.refund(order, actor=actor, reason=reason)
        delivery_codes.supersede_active(order.id)

    return _step


def decline(order: Order, actor: Actor, reason: str) -> Order:
    require_vendor(order, actor)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to decline an order")
    now = _now()
    transition(
        order,
        actor,
        expected={OrderStatus.PENDING_CONFIRMATION},
        target=OrderStatus.CANCELLED_BY_VENDOR,
        event="auto_cancelled" if actor.is_system else "declined",
        values={"cancelled_at": now, "vendor_notes": reason[:1000]},
        note=reason,
        extra=_close_out(order, actor, reason),
    )
    payment_service.refund_captured(order, reason=reason)
    if actor.is_system:
        hours = _cfg_int("ORDER_RESPONSE_DEADLINE_HOURS", 48)
        notifications.notify("order_auto_cancelled", _parties(order))
        notifications.notify("vendor_missed_order", _parties(order, deadline_hours=hours))
    else:
        notifications.notify("order_declined", _parties(order, reason=reason))
    return order


def cancel_by_customer(order: Order, actor: Actor, reason: str = "") -> Order:
    require_buyer(order, actor)
    reason = (reason or "").strip() or "Cancelled by customer"
    transition(
        order,
        actor,
        expected={OrderStatus.PENDING_CONFIRMATION},
        target=OrderStatus.CANCELLED_BY_CUSTOMER,
        event="cancelled_by_customer",
        values={"cancelled_at": _now()},
        note=reason,
        extra=_close_out(order, actor, reason),
    )
    payment_service.refund_captured(order, reason=reason)
    notifications.notify("order_cancelled_by_customer", _parties(order))
    return order


# ---------------------------------------------------------------------------
# fulfilment


def _issue_code(order: Order):
    from soko.services import delivery_codes

    return lambda _prev: delivery_codes.issue(order.id)


def _deliver_code(order: Order, code: str) -> None:
    from soko.services import delivery_codes

    delivery_codes.deliver(order, code)


def mark_shipped(order: Order, actor: Actor, courier_name: str | None = None, tracking_number: str | None = None) -> Order:
    require_vendor(order, actor)
    if order.is_pickup:
        raise ValidationError("Pickup orders are marked ready, not shipped")
    captured = payment_service.captured_total(order.id)
    if captured < to_money(order.total):
        raise BlockedTransitionError(
            "Payment for this order has not been fully captured",
            details={"order_id": int(order.id), "captured": float(captured), "total": float(order.total)},
        )
    courier = (courier_name or "").strip()[:120] or None
    tracking = (tracking_number or "").strip()[:120] or None
    code = transition(
        order,
        actor,
        expected={OrderStatus.ACCEPTED},
        target=OrderStatus.SHIPPED,
        event="shipped",
        values={"shipped_at": _now(), "courier_name": courier, "tracking_number": tracking},
        note=f"courier={courier or '-'} tracking={tracking or '-'}",
        extra=_issue_code(order),
    )
    _deliver_code(order, code)
    notifications.notify(
        "order_shipped",
        _parties(order, courier_name=courier or "-", tracking_number=tracking or "-"),
    )
    return order


def mark_ready(order: Order, actor: Actor) -> Order:
    require_vendor(order, actor)
    if not order.is_pickup:
        raise ValidationError("Only pickup orders can be marked ready")
    code = transition(
        order,
        actor,
        expected={OrderStatus.ACCEPTED},
        target=OrderStatus.ARRIVED,
        event="ready_for_pickup",
        values={"arrived_at": _now(), "auto_release_at": None},
        extra=_issue_code(order),
    )
    _deliver_code(order, code)
    notifications.notify("order_ready_for_pickup", _parties(order))
    return order


def confirm_arrival(order: Order, actor: Actor) -> Order:
    require_vendor(order, actor)
    if order.is_pickup:
        raise ValidationError("Pickup orders are marked ready, not arrived")
    grace = _cfg_int("AUTO_RELEASE_GRACE_HOURS", 24)
    now = _now()
    transition(
        order,
        actor,
        expected={OrderStatus.SHIPPED},
        target=OrderStatus.ARRIVED,
        event="arrived",
        values={"arrived_at": now, "auto_release_at": now + timedelta(hours=grace)},
    )
    notifications.notify("order_arrived", _parties(order, grace_hours=grace))
    return order


# ---------------------------------------------------------------------------
# settlement


def settle(order: Order, actor: Actor, trigger: str = PayoutTrigger.OTP) -> Payout:
    """Complete the order, release escrow and create the payout.

    The single settlement road: the delivery code and the auto-release sweep
    both end here, and only the first commit wins.
    """
    require_vendor(order, actor)
    if trigger not in (PayoutTrigger.OTP, PayoutTrigger.AUTO_RELEASE):
        raise ValidationError("Unsupported settlement trigger")
    if trigger == PayoutTrigger.AUTO_RELEASE and not actor.is_privileged:
        raise ForbiddenError("Auto-release is a system action")
    from soko.services import delivery_codes

    def _step(_prev):
        escrow = escrow_service.release(order, actor=actor, reason=f"settled via {trigger}")
        delivery_codes.supersede_active(order.id)
        return payout_service.create_payout(order, escrow, trigger)

    payout = transition(
        order,
        actor,
        expected=set(OrderStatus.SETTLEABLE),
        target=OrderStatus.COMPLETED,
        event="completed",
        values={"completed_at": _now(), "auto_release_at": None},
        note=f"trigger={trigger}",
        extra=_step,
    )
    log_event(
        "order_settled",
        order_id=int(order.id),
        actor=actor,
        idempotency_key=f"order_settled:{int(order.id)}",
        metadata={"trigger": trigger, "payout_amount": payout.amount},
    )
    db.session.commit()
    notifications.notify("order_completed", _parties(order))
    notifications.notify("payout_pending", _parties(order, amount=f"{payout.amount}"))
    return payout


def force_cancel_unshipped(order: Order, actor: Actor = SYSTEM_ACTOR) -> Order:
    if not actor.is_privileged:
        raise ForbiddenError("Only the system can force-cancel an order")
    hours = _cfg_int("ORDER_SHIP_DEADLINE_HOURS", 72)
    note = f"Auto-cancelled: not shipped within {hours} hours"
    transition(
        order,
        actor,
        expected={OrderStatus.ACCEPTED},
        target=OrderStatus.CANCELLED_BY_VENDOR,
        event="unshipped_cancelled",
        values={"cancelled_at": _now(), "vendor_notes": note},
        note=note,
        extra=_close_out(order, actor, note),
    )
    payment_service.refund_captured(order, reason=note)
    notifications.notify("order_unshipped_cancelled", _parties(order))
    return order


def timeline(order: Order) -> list[dict]:
    rows = OrderEvent.query.filter_by(order_id=int(order.id)).order_by(OrderEvent.id.asc()).all()
    return [row.to_dict() for row in rows]
