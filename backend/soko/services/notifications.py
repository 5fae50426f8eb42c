from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from soko.extensions import db
from soko.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from soko.integrations.messaging.base import CHANNELS
from soko.integrations.messaging.factory import build_messaging_provider
from soko.models import Notification, User

logger = logging.getLogger(__name__)

IN_APP = "in_app"
SMS = "sms"


# event_type -> (recipients, channels, title, message)
TEMPLATES: dict[str, tuple[tuple[str, ...], tuple[str, ...], str, str]] = {
    "order_placed": (
        ("buyer",),
        (IN_APP,),
        "Order placed",
        "Your order #{order_id} has been placed and is waiting for the vendor to confirm.",
    ),
    "new_order": (
        ("vendor",),
        (IN_APP, SMS),
        "New order",
        "You have a new order #{order_id}. Accept or decline it within {deadline_hours} hours.",
    ),
    "order_accepted": (
        ("buyer",),
        (IN_APP,),
        "Order accepted",
        "Your order #{order_id} was accepted by the vendor.",
    ),
    "order_declined": (
        ("buyer",),
        (IN_APP, SMS),
        "Order declined",
        "Your order #{order_id} was declined: {reason}. Your payment is being refunded.",
    ),
    "order_cancelled_by_customer": (
        ("vendor",),
        (IN_APP,),
        "Order cancelled",
        "Order #{order_id} was cancelled by the customer.",
    ),
    "order_auto_cancelled": (
        ("buyer",),
        (IN_APP, SMS),
        "Order cancelled and refunded",
        "Order #{order_id} was cancelled because the vendor did not respond in time. Your payment is being refunded.",
    ),
    "vendor_missed_order": (
        ("vendor",),
        (IN_APP, SMS),
        "Missed order",
        "Order #{order_id} was cancelled because you did not respond within {deadline_hours} hours.",
    ),
    "order_unshipped_cancelled": (
        ("buyer", "vendor"),
        (IN_APP, SMS),
        "Order cancelled",
        "Order #{order_id} was cancelled because it was not shipped in time. The buyer is being refunded.",
    ),
    "order_shipped": (
        ("buyer",),
        (IN_APP,),
        "Order shipped",
        "Order #{order_id} is on its way. Courier: {courier_name}. Tracking: {tracking_number}.",
    ),
    "order_ready_for_pickup": (
        ("buyer",),
        (IN_APP,),
        "Ready for pickup",
        "Order #{order_id} is ready for pickup. Bring your delivery code.",
    ),
    "order_arrived": (
        ("buyer",),
        (IN_APP, SMS),
        "Order arrived",
        "Order #{order_id} has arrived. Give your delivery code to the vendor once you have your items. "
        "Funds are released automatically after {grace_hours} hours unless you open a dispute.",
    ),
    "delivery_code": (
        ("buyer",),
        (IN_APP, SMS),
        "Your delivery code",
        "Your delivery code for order #{order_id} is {code}. Only share it when you have received your items.",
    ),
    "order_completed": (
        ("buyer", "vendor"),
        (IN_APP,),
        "Order completed",
        "Order #{order_id} is complete.",
    ),
    "payout_pending": (
        ("vendor",),
        (IN_APP,),
        "Payout on the way",
        "A payout of {amount} for order #{order_id} is being processed.",
    ),
    "dispute_opened": (
        ("vendor", "admins"),
        (IN_APP,),
        "Dispute opened",
        "A dispute ({reason}) was opened on order #{order_id}.",
    ),
    "dispute_resolved": (
        ("buyer", "vendor"),
        (IN_APP, SMS),
        "Dispute resolved",
        "The dispute on order #{order_id} was resolved: {action}.",
    ),
}


# Events whose message carries a secret. Once the secret is delivered or no
# longer valid the stored message is replaced.
REDACTED: dict[str, dict[str, str]] = {
    "delivery_code": {
        "delivered": "Your delivery code for order #{order_id} was sent by SMS.",
        "undelivered": "Your delivery code for order #{order_id} could not be sent by SMS. Check your in-app notifications.",
        "expired": "The delivery code for order #{order_id} is no longer valid.",
    },
}


class _Defaults(dict):
    def __missing__(self, key):
        return "-"


def _now():
    return datetime.utcnow()


def _backoff_seconds(attempts: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, attempts))))))


def _recipients(roles: tuple[str, ...], payload: dict) -> list[int]:
    out: list[int] = []
    for role in roles:
        if role == "admins":
            ids = [int(u.id) for u in User.query.filter_by(role="admin").order_by(User.id.asc()).all()]
        else:
            raw = payload.get(f"{role}_id")
            ids = [int(raw)] if raw is not None else []
        for uid in ids:
            if uid not in out:
                out.append(uid)
    return out


def _order_id(payload: dict) -> int | None:
    try:
        return int(payload.get("order_id"))
    except (TypeError, ValueError):
        return None


def _redacted(event_type: str, kind: str, order_id) -> str:
    return REDACTED[event_type][kind].format_map(_Defaults({"order_id": order_id if order_id is not None else "-"}))


def _render(event_type: str, payload: dict) -> tuple[str, str]:
    _, _, title, template = TEMPLATES[event_type]
    return title, template.format_map(_Defaults(payload))


def _build_rows(event_type: str, payload: dict) -> list[Notification]:
    roles, channels, _, _ = TEMPLATES[event_type]
    title, message = _render(event_type, payload)
    now = _now()
    rows: list[Notification] = []
    for uid in _recipients(roles, payload):
        user = db.session.get(User, uid)
        phone = (getattr(user, "phone", None) or "").strip()
        for channel in channels:
            if channel != IN_APP and not phone:
                continue
            row = Notification(
                user_id=uid,
                order_id=_order_id(payload),
                event_type=event_type,
                channel=channel,
                title=title,
                message=message,
                attempts=0,
                created_at=now,
            )
            if channel == IN_APP:
                row.status = "sent"
                row.provider = IN_APP
                row.sent_at = now
            else:
                row.status = "queued"
                row.next_attempt_at = now
            row.set_meta({"order_id": payload.get("order_id"), "to": phone if channel != IN_APP else ""})
            rows.append(row)
    return rows


def notify(event_type: str, payload: dict | None = None) -> int:
    """Queue notifications for an event. Never raises.

    Called after the state change has committed; a failure here is logged
    and the caller carries on.
    """
    payload = dict(payload or {})
    try:
        if event_type not in TEMPLATES:
            raise KeyError(f"unknown notification event: {event_type}")
        rows = _build_rows(event_type, payload)
        with db.session.begin_nested():
            for row in rows:
                db.session.add(row)
        db.session.commit()
        return len(rows)
    except Exception as e:
        try:
            db.session.rollback()
        except Exception:
            pass
        logger.warning("notify_failed event=%s order_id=%s err=%s", event_type, payload.get("order_id"), e)
        return 0


def flush_notifications(*, limit: int = 100) -> dict:
    """Send queued outbox rows through the messaging provider."""
    now = _now()
    max_attempts = int(current_app.config.get("NOTIFY_MAX_ATTEMPTS", 5))
    rows = (
        Notification.query.filter(
            Notification.status == "queued",
            Notification.channel.in_(CHANNELS),
            (Notification.next_attempt_at.is_(None)) | (Notification.next_attempt_at <= now),
        )
        .order_by(Notification.id.asc())
        .limit(int(limit))
        .all()
    )
    result = {"picked": len(rows), "sent": 0, "retrying": 0, "failed": 0, "deferred": 0}
    if not rows:
        return result

    try:
        provider = build_messaging_provider(current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        logger.warning("notification_flush_deferred err=%s", e)
        result["deferred"] = len(rows)
        return result

    for row in rows:
        meta = row.meta_dict()
        to = str(meta.get("to") or "").strip()
        try:
            if not to:
                sent = None
                error = "no_destination"
            else:
                sent = provider.send(channel=row.channel, to=to, message=row.message, reference=f"notif-{row.id}")
                error = "" if sent.ok else f"{sent.code}:{sent.message}"
        except Exception as e:
            sent = None
            error = f"exception:{e}"

        row.attempts = int(row.attempts or 0) + 1
        row.provider = provider.name
        if sent is not None and sent.ok:
            row.status = "sent"
            row.sent_at = now
            row.last_error = None
            row.provider_ref = sent.reference or None
            if row.event_type in REDACTED:
                row.message = _redacted(row.event_type, "delivered", row.order_id)
            result["sent"] += 1
            continue

        row.last_error = (error or "send_failed")[:240]
        if row.attempts >= max_attempts or not to:
            row.status = "failed"
            row.next_attempt_at = None
            result["failed"] += 1
            if row.event_type in REDACTED:
                row.message = _redacted(row.event_type, "undelivered", row.order_id)
            logger.warning("notification_failed id=%s event=%s err=%s", row.id, row.event_type, row.last_error)
        else:
            row.next_attempt_at = now + timedelta(seconds=_backoff_seconds(row.attempts))
            result["retrying"] += 1

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return result


def expire_secret(event_type: str, order_id: int) -> int:
    """Scrub a secret-bearing message from every stored row of the order.

    Queued rows are never sent. Does not commit.
    """
    base = Notification.query.filter(
        Notification.order_id == int(order_id),
        Notification.event_type == event_type,
    )
    base.filter(Notification.status == "queued").update(
        {"status": "failed", "next_attempt_at": None, "last_error": "superseded"},
        synchronize_session=False,
    )
    return base.update(
        {"message": _redacted(event_type, "expired", int(order_id))},
        synchronize_session=False,
    )
