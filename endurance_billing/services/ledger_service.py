# endurance_billing/services/ledger_service.py
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, case

from endurance_billing import db
from endurance_billing.models import Payment, SplitRecord


def coach_earnings(coach_id, start=None, end=None):
    """
    Resumo financeiro do treinador a partir dos splits de pagamentos confirmados.
    start/end filtram pela data de pagamento (paid_at).
    """
    query = (
        db.session.query(
            func.count(SplitRecord.id),
            func.coalesce(func.sum(SplitRecord.coach_amount), 0),
            func.coalesce(func.sum(SplitRecord.platform_amount), 0),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(case(
                (SplitRecord.transfer_status == SplitRecord.COMPLETED, SplitRecord.coach_amount),
                else_=0,
            )), 0),
        )
        .join(Payment, SplitRecord.payment_id == Payment.id)
        .filter(SplitRecord.coach_id == coach_id, Payment.status == Payment.CONFIRMED)
    )
    if start:
        query = query.filter(Payment.paid_at >= start)
    if end:
        query = query.filter(Payment.paid_at < end)

    count, coach_total, platform_total, amount_total, transferred = query.one()

    margin = Decimal('0.00')
    if amount_total:
        margin = (Decimal(platform_total) * 100 / Decimal(amount_total)).quantize(
            Decimal('0.01'), rounding=ROUND_HALF_UP
        )

    return {
        'coach_id': coach_id,
        'transaction_count': int(count),
        'total_amount': int(amount_total),
        'total_coach_earnings': int(coach_total),
        'total_platform_amount': int(platform_total),
        'overall_margin_percentage': float(margin),
        'transferred_amount': int(transferred),
        'pending_transfer_amount': int(coach_total) - int(transferred),
    }
