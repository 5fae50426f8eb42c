from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from soko.errors import ValidationError
from soko.extensions import db
from soko.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from soko.integrations.payments.factory import build_payments_provider
from soko.models import Order, Payment, PaymentStatus, ReconciliationItem
from soko.utils.commission import to_money
from soko.utils.events import log_event

logger = logging.getLogger(__name__)


def record_capture(order_id: int, *, amount, reference: str, gateway: str = "paystack") -> Payment:
    """Record a captured payment fact. Idempotent on the gateway reference.

    Does not commit.
    """
    ref = (reference or "").strip()
    if not ref:
        raise ValidationError("Payment reference is required")
    try:
        value = to_money(amount)
    except ValueError:
        raise ValidationError("Payment amount must be a number")
    if value <= 0:
        raise ValidationError("Payment amount must be positive")

    existing = Payment.query.filter_by(reference=ref[:120]).first()
    if existing is not None:
        if int(existing.order_id) != int(order_id):
            raise ValidationError("Payment reference already used by another order")
        return existing

    row = Payment(
        order_id=int(order_id),
        gateway=(gateway or "paystack").strip().lower()[:32],
        reference=ref[:120],
        amount=value,
        status=PaymentStatus.CAPTURED,
        captured_at=datetime.utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def captured_total(order_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.order_id == int(order_id), Payment.status == PaymentStatus.CAPTURED)
        .scalar()
    )
    return to_money(total or 0)


def _open_reconciliation(order_id: int, *, kind: str, amount, reference: str, detail: str) -> ReconciliationItem:
    item = ReconciliationItem(
        order_id=int(order_id),
        kind=kind,
        amount=amount,
        reference=(reference or "")[:120] or None,
        detail=(detail or "")[:2000],
        status="open",
    )
    db.session.add(item)
    return item


def refund_captured(order: Order, *, reason: str = "") -> dict:
    """Push every captured payment of the order back through the gateway.

    Runs after the order transition has committed. A gateway failure never
    undoes the transition; it opens a reconciliation item instead.
    """
    order_id = int(order.id)
    payments = (
        Payment.query.filter_by(order_id=order_id, status=PaymentStatus.CAPTURED)
        .order_by(Payment.id.asc())
        .all()
    )
    refunded = Decimal("0.00")
    failed = []
    if not payments:
        return {"refunded": refunded, "failed": failed}

    provider = None
    provider_error = ""
    try:
        provider = build_payments_provider(current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        provider_error = str(e)

    now = datetime.utcnow()
    for payment in payments:
        if provider is None:
            ok, detail = False, provider_error
        else:
            try:
                result = provider.refund(order_id=order_id, amount=payment.amount, reference=payment.reference)
                ok, detail = bool(result.ok), f"{result.code}:{result.message}"
            except Exception as e:
                ok, detail = False, f"exception:{e}"

        if ok:
            payment.status = PaymentStatus.REFUNDED
            payment.refunded_at = now
            refunded += to_money(payment.amount)
            continue

        payment.status = PaymentStatus.REFUND_FAILED
        _open_reconciliation(
            order_id,
            kind="refund_failed",
            amount=payment.amount,
            reference=payment.reference,
            detail=f"{reason} | {detail}".strip(" |"),
        )
        failed.append(payment.reference)
        logger.warning(
            "refund_failed order_id=%s reference=%s amount=%s detail=%s",
            order_id,
            payment.reference,
            payment.amount,
            detail,
        )
        log_event(
            "refund_failed",
            order_id=order_id,
            severity="WARNING",
            metadata={"reference": payment.reference, "amount": payment.amount, "detail": detail},
        )

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("refund_bookkeeping_failed order_id=%s", order_id)
        raise
    return {"refunded": refunded, "failed": failed}
