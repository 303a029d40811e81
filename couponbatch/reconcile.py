from decimal import Decimal
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from couponbatch.db_models import BonusCoupon
from couponbatch.schemas import CodeSummary, ReconciliationReport
from couponbatch.source import Selection, count_candidates


logger = logging.getLogger(__name__)


def issued_by_code(db: Session, run_period: str) -> list[CodeSummary]:
    stmt = (
        select(BonusCoupon.coupon_code, func.count(), func.avg(BonusCoupon.credit_point))
        .where(BonusCoupon.run_period == run_period)
        .group_by(BonusCoupon.coupon_code)
        .order_by(BonusCoupon.coupon_code)
    )
    return [
        CodeSummary(
            coupon_code=code,
            count=count,
            average_point=Decimal(str(average)).quantize(Decimal("0.01")),
        )
        for code, count, average in db.execute(stmt)
    ]


def coupon_multiset(db: Session, run_period: str) -> list[tuple[str, str, Decimal]]:
    """Sorted (customer id, code, limit) rows for comparing strategies."""
    stmt = (
        select(BonusCoupon.customer_id, BonusCoupon.coupon_code, BonusCoupon.credit_point)
        .where(BonusCoupon.run_period == run_period)
        .order_by(BonusCoupon.customer_id)
    )
    return [(customer_id, code, Decimal(point)) for customer_id, code, point in db.execute(stmt)]


def reconcile(db: Session, run_period: str, selection: Selection, *, tolerance_pct: float = 1.0) -> ReconciliationReport:
    by_code = issued_by_code(db, run_period)
    issued = sum(summary.count for summary in by_code)
    target = count_candidates(db, selection)

    if target:
        ratio = issued / target * 100
    else:
        ratio = 100.0 if issued == 0 else 0.0
    within = abs(ratio - 100.0) < tolerance_pct

    report = ReconciliationReport(
        run_period=run_period,
        issued=issued,
        target=target,
        ratio_pct=round(ratio, 1),
        within_tolerance=within,
        by_code=by_code,
    )
    extra = {"run_period": run_period, "issued": issued, "target": target, "ratio_pct": report.ratio_pct}
    if within:
        logger.info("reconciliation within tolerance", extra=extra)
    else:
        logger.warning("reconciliation mismatch", extra=extra)
    return report
