from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app

from soko.extensions import db
from soko.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from soko.integrations.payments.factory import build_payments_provider
from soko.models import EscrowTransaction, Order, Payout, PayoutStatus, ReconciliationItem
from soko.utils.commission import to_money
from soko.utils.events import log_event

logger = logging.getLogger(__name__)


def create_payout(order: Order, escrow: EscrowTransaction, trigger: str) -> Payout:
    """Create the single payout for a released escrow. Does not commit."""
    existing = Payout.query.filter_by(order_id=int(order.id)).first()
    if existing is not None:
        logger.warning("payout_already_exists order_id=%s payout_id=%s", order.id, existing.id)
        return existing
    fee = to_money(current_app.config.get("PAYOUT_TRANSFER_FEE", "0.00"))
    commission = to_money(escrow.commission_amount)
    payout = Payout(
        order_id=int(order.id),
        vendor_id=int(order.vendor_id),
        amount=to_money(escrow.release_amount),
        commission_amount=commission,
        transfer_fee=fee,
        net_commission=commission - fee,
        trigger=trigger,
        status=PayoutStatus.PENDING,
        requested_at=datetime.utcnow(),
    )
    db.session.add(payout)
    db.session.flush()
    return payout


def _claim(payout_id: int) -> bool:
    rows = Payout.query.filter(
        Payout.id == int(payout_id),
        Payout.status == PayoutStatus.PENDING,
    ).update(
        {"status": PayoutStatus.PROCESSING, "processing_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.session.commit()
    return rows == 1


def process_pending_payouts(*, limit: int = 50) -> dict:
    result = {"picked": 0, "paid": 0, "failed": 0, "skipped": 0, "deferred": 0}
    rows = (
        Payout.query.filter_by(status=PayoutStatus.PENDING)
        .order_by(Payout.id.asc())
        .limit(int(limit))
        .all()
    )
    result["picked"] = len(rows)
    if not rows:
        return result

    try:
        provider = build_payments_provider(current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        logger.warning("payout_processing_deferred err=%s", e)
        result["deferred"] = len(rows)
        return result

    for payout in rows:
        payout_id = int(payout.id)
        if not _claim(payout_id):
            result["skipped"] += 1
            continue
        payout = db.session.get(Payout, payout_id)
        reference = f"payout-{int(payout.order_id)}"
        try:
            sent = provider.transfer(vendor_id=int(payout.vendor_id), amount=payout.amount, reference=reference)
            ok, detail = bool(sent.ok), f"{sent.code}:{sent.message}"
        except Exception as e:
            sent = None
            ok, detail = False, f"exception:{e}"

        now = datetime.utcnow()
        if ok:
            payout.status = PayoutStatus.PAID
            payout.paid_at = now
            payout.reference = (sent.reference or reference)[:120]
            result["paid"] += 1
            log_event(
                "payout_paid",
                order_id=int(payout.order_id),
                idempotency_key=f"payout_paid:{payout_id}",
                metadata={"amount": payout.amount, "reference": payout.reference},
            )
        else:
            payout.status = PayoutStatus.FAILED
            payout.failed_at = now
            payout.failure_reason = detail[:240]
            db.session.add(
                ReconciliationItem(
                    order_id=int(payout.order_id),
                    kind="payout_failed",
                    amount=payout.amount,
                    reference=reference,
                    detail=detail[:2000],
                    status="open",
                )
            )
            result["failed"] += 1
            logger.warning("payout_failed payout_id=%s order_id=%s detail=%s", payout_id, payout.order_id, detail)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return result
