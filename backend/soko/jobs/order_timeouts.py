from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from soko.errors import EscrowCoreError, StaleStateError
from soko.extensions import db
from soko.models import DeliveryMode, Order, OrderStatus, PayoutTrigger
from soko.services import order_service
from soko.utils.auth import SYSTEM_ACTOR
from soko.utils.feature_flags import is_enabled
from soko.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _hours(key: str, default: int) -> int:
    try:
        return int(current_app.config.get(key, default))
    except Exception:
        return default


def _limit(limit: int | None) -> int:
    if limit is not None:
        return int(limit)
    return int(current_app.config.get("SWEEP_BATCH_LIMIT", 200))


def _empty() -> dict:
    return {"processed": 0, "acted": 0, "already_resolved": 0, "errors": 0}


def _apply(result: dict, order_id: int, action) -> None:
    """Run one sweep action; a lost race counts as already resolved."""
    result["processed"] += 1
    try:
        order = order_service.get_order(order_id)
        action(order)
        result["acted"] += 1
    except StaleStateError:
        result["already_resolved"] += 1
    except EscrowCoreError as e:
        result["errors"] += 1
        logger.error("sweep_action_rejected order_id=%s err=%s", order_id, e.code)
    except Exception:
        result["errors"] += 1
        db.session.rollback()
        logger.exception("sweep_action_failed order_id=%s", order_id)


def run_stale_order_sweep(*, now: datetime | None = None, limit: int | None = None) -> dict:
    now = now or _now()
    hours = _hours("ORDER_RESPONSE_DEADLINE_HOURS", 48)
    cutoff = now - timedelta(hours=hours)
    ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(Order.status == OrderStatus.PENDING_CONFIRMATION, Order.created_at <= cutoff)
        .order_by(Order.id.asc())
        .limit(_limit(limit))
        .all()
    ]
    reason = f"Auto-cancelled: no vendor response within {hours} hours"
    result = _empty()
    for order_id in ids:
        _apply(result, order_id, lambda o: order_service.decline(o, SYSTEM_ACTOR, reason))
    return result


def run_unshipped_sweep(*, now: datetime | None = None, limit: int | None = None) -> dict:
    now = now or _now()
    cutoff = now - timedelta(hours=_hours("ORDER_SHIP_DEADLINE_HOURS", 72))
    ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(
            Order.status == OrderStatus.ACCEPTED,
            Order.accepted_at.isnot(None),
            Order.accepted_at <= cutoff,
        )
        .order_by(Order.id.asc())
        .limit(_limit(limit))
        .all()
    ]
    result = _empty()
    for order_id in ids:
        _apply(result, order_id, lambda o: order_service.force_cancel_unshipped(o, SYSTEM_ACTOR))
    return result


def run_auto_release_sweep(*, now: datetime | None = None, limit: int | None = None) -> dict:
    now = now or _now()
    if not is_enabled("jobs.auto_release_enabled", default=True):
        result = _empty()
        result["disabled"] = True
        return result
    ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(
            Order.status == OrderStatus.ARRIVED,
            Order.delivery_mode == DeliveryMode.SHIP,
            Order.auto_release_at.isnot(None),
            Order.auto_release_at <= now,
        )
        .order_by(Order.id.asc())
        .limit(_limit(limit))
        .all()
    ]
    result = _empty()
    for order_id in ids:
        _apply(result, order_id, lambda o: order_service.settle(o, SYSTEM_ACTOR, trigger=PayoutTrigger.AUTO_RELEASE))
    return result


def run_order_timeouts(*, now: datetime | None = None, limit: int | None = None) -> dict:
    started_at = _now()
    if not is_enabled("jobs.order_timeouts_enabled", default=True):
        record_job_run(job_name="order_timeouts", ok=False, started_at=started_at, error="disabled_by_flag")
        return {"ok": False, "disabled": True, "ts": started_at.isoformat()}

    result = {
        "ok": True,
        "stale_orders": run_stale_order_sweep(now=now, limit=limit),
        "unshipped": run_unshipped_sweep(now=now, limit=limit),
        "auto_release": run_auto_release_sweep(now=now, limit=limit),
        "ts": started_at.isoformat(),
    }
    errors = sum(int(part.get("errors") or 0) for part in result.values() if isinstance(part, dict))
    result["ok"] = errors == 0
    record_job_run(
        job_name="order_timeouts",
        ok=errors == 0,
        started_at=started_at,
        summary={k: v for k, v in result.items() if isinstance(v, dict)},
        error=None if errors == 0 else f"errors={errors}",
    )
    logger.info(
        "order_timeouts_run stale=%s unshipped=%s auto_release=%s errors=%s",
        result["stale_orders"]["acted"],
        result["unshipped"]["acted"],
        result["auto_release"]["acted"],
        errors,
    )
    return result


def run_once(*, limit: int | None = None) -> dict:
    from soko import create_app

    app = create_app()
    with app.app_context():
        return run_order_timeouts(limit=limit)
