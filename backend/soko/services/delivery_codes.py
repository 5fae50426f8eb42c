from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime
from decimal import Decimal

from flask import current_app

from soko.errors import DeliveryCodeError, StaleStateError, ValidationError
from soko.extensions import db
from soko.models import DeliveryCode, Order, OrderStatus, PayoutTrigger
from soko.services import notifications, order_service
from soko.utils.auth import Actor
from soko.utils.events import log_event

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^\d{6}$")


def _new_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def _digest(order_id: int, code: str) -> str:
    key = (current_app.config.get("SECRET_KEY") or "").encode("utf-8")
    msg = f"{int(order_id)}:{code}".encode("utf-8")
    return hmac.new(key, msg, hashlib.sha256).hexdigest()


def _active_query(order_id: int):
    return DeliveryCode.query.filter(
        DeliveryCode.order_id == int(order_id),
        DeliveryCode.consumed_at.is_(None),
        DeliveryCode.superseded.is_(False),
    )


def supersede_active(order_id: int) -> int:
    """Retire the outstanding code and scrub it from the buyer's stored messages."""
    rows = _active_query(order_id).update({"superseded": True}, synchronize_session=False)
    notifications.expire_secret("delivery_code", order_id)
    return rows


def issue(order_id: int, *, is_resend: bool = False) -> str:
    """Store a fresh code digest and return the plaintext. Does not commit."""
    supersede_active(order_id)
    code = _new_code()
    db.session.add(
        DeliveryCode(
            order_id=int(order_id),
            code_hash=_digest(order_id, code),
            is_resend=bool(is_resend),
            issued_at=datetime.utcnow(),
            failed_attempts=0,
        )
    )
    db.session.flush()
    return code


def deliver(order: Order, code: str) -> None:
    # The buyer is the only recipient of the plaintext.
    notifications.notify(
        "delivery_code",
        {"order_id": int(order.id), "buyer_id": int(order.buyer_id), "code": code},
    )


def generate(order: Order, *, is_resend: bool = False) -> str:
    try:
        code = issue(order.id, is_resend=is_resend)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    deliver(order, code)
    return code


def resend(order: Order, actor: Actor) -> None:
    order_service.require_vendor(order, actor)
    current = db.session.query(Order.status).filter(Order.id == int(order.id)).scalar()
    if current not in OrderStatus.SETTLEABLE:
        raise StaleStateError(details={"order_id": int(order.id), "status": current})
    generate(order, is_resend=True)
    order_service.record_event(order.id, actor, "code_resent", once=False)
    db.session.commit()
    logger.info("delivery_code_resent order_id=%s", order.id)


def _record_failure(code_row: DeliveryCode, actor: Actor, max_attempts: int) -> None:
    DeliveryCode.query.filter(DeliveryCode.id == code_row.id).update(
        {"failed_attempts": DeliveryCode.failed_attempts + 1},
        synchronize_session=False,
    )
    db.session.commit()
    db.session.refresh(code_row)
    attempts = int(code_row.failed_attempts or 0)
    logger.warning("delivery_code_mismatch order_id=%s attempts=%s", code_row.order_id, attempts)
    if attempts >= max_attempts:
        log_event(
            "delivery_code_locked",
            order_id=int(code_row.order_id),
            actor=actor,
            severity="WARNING",
            idempotency_key=f"delivery_code_locked:{int(code_row.id)}",
            metadata={"attempts": attempts},
        )
        db.session.commit()


def verify(order: Order, actor: Actor, submitted_code) -> Decimal:
    """Vendor submits the code collected from the buyer.

    Returns the payout amount. Every rejection other than malformed input is
    the same DeliveryCodeError.
    """
    order_service.require_vendor(order, actor)
    code = str(submitted_code or "").strip()
    if not _CODE_RE.match(code):
        raise ValidationError("Delivery code must be 6 digits")

    current = db.session.query(Order.status).filter(Order.id == int(order.id)).scalar()
    if current not in OrderStatus.SETTLEABLE:
        raise DeliveryCodeError()

    active = _active_query(order.id).order_by(DeliveryCode.id.desc()).first()
    if active is None:
        raise DeliveryCodeError()
    max_attempts = int(current_app.config.get("DELIVERY_CODE_MAX_ATTEMPTS", 5))
    if int(active.failed_attempts or 0) >= max_attempts:
        raise DeliveryCodeError()

    if not hmac.compare_digest(active.code_hash, _digest(order.id, code)):
        _record_failure(active, actor, max_attempts)
        raise DeliveryCodeError()

    rows = (
        _active_query(order.id)
        .filter(DeliveryCode.id == active.id)
        .update({"consumed_at": datetime.utcnow()}, synchronize_session=False)
    )
    if rows != 1:
        db.session.rollback()
        raise DeliveryCodeError()

    try:
        payout = order_service.settle(order, actor, trigger=PayoutTrigger.OTP)
    except StaleStateError:
        # settle already rolled back the consumption
        raise DeliveryCodeError()
    logger.info("delivery_code_verified order_id=%s", order.id)
    return payout.amount
