from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from soko.extensions import db
from soko.models import PlatformEvent
from soko.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    try:
        return str(value)
    except Exception:
        return "<unserializable>"


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    try:
        return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    except Exception:
        return "{}"


def log_event(
    event_type: str,
    *,
    order_id: int | None = None,
    actor=None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Best-effort event logger.

    Never raises to caller. The row is written inside a savepoint so a failure
    here cannot poison the surrounding transaction.
    """
    try:
        key = (idempotency_key or "").strip()[:180] or None
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing

        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            severity=(severity or "INFO").strip().upper()[:16] or "INFO",
            order_id=int(order_id) if order_id is not None else None,
            actor_user_id=getattr(actor, "user_id", None),
            actor_role=(getattr(actor, "role", None) or None),
            request_id=(get_request_id() or "").strip()[:80] or None,
            idempotency_key=key,
            metadata_json=_safe_json(metadata or {}),
        )
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
        return event
    except IntegrityError:
        if idempotency_key:
            try:
                return PlatformEvent.query.filter_by(idempotency_key=idempotency_key[:180]).first()
            except Exception:
                return None
        return None
    except Exception:
        return None
