from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    try:
        current_app.logger.info(json.dumps(payload, default=str))
    except Exception:
        pass


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _run_with_retry(task, name: str, fn, *, trace_id: str = "", **log_extra):
    started = time.perf_counter()
    try:
        result = fn()
        ok = bool(result.get("ok", True)) if isinstance(result, dict) else True
        _task_log(name, status="ok" if ok else "failed", started_at=started, trace_id=trace_id, **log_extra)
        return result
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(
                name,
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
                **log_extra,
            )
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **log_extra)
        raise


@shared_task(
    bind=True,
    name="soko.tasks.escrow_tasks.run_order_timeouts",
    max_retries=3,
)
def run_order_timeouts_task(self, *, trace_id: str = ""):
    from soko.jobs.order_timeouts import run_order_timeouts

    limit = max(1, min(int(current_app.config.get("SWEEP_BATCH_LIMIT", 200)), 1000))
    return _run_with_retry(
        self,
        "run_order_timeouts",
        lambda: run_order_timeouts(limit=limit),
        trace_id=trace_id,
        limit=limit,
    )


@shared_task(
    bind=True,
    name="soko.tasks.escrow_tasks.flush_notifications",
    max_retries=3,
)
def flush_notifications_task(self, *, limit: int = 100, trace_id: str = ""):
    from soko.services.notifications import flush_notifications

    return _run_with_retry(
        self,
        "flush_notifications",
        lambda: flush_notifications(limit=max(1, min(int(limit), 500))),
        trace_id=trace_id,
        limit=limit,
    )


@shared_task(
    bind=True,
    name="soko.tasks.escrow_tasks.process_payouts",
    max_retries=3,
)
def process_payouts_task(self, *, limit: int = 50, trace_id: str = ""):
    from soko.services.payout_service import process_pending_payouts
    from soko.utils.feature_flags import is_enabled

    if not is_enabled("jobs.payouts_enabled", default=True):
        return {"ok": False, "disabled": True}
    return _run_with_retry(
        self,
        "process_payouts",
        lambda: process_pending_payouts(limit=max(1, min(int(limit), 500))),
        trace_id=trace_id,
        limit=limit,
    )
