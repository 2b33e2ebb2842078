# endurance_billing/services/pricing_service.py
"""
Cálculo do valor cobrado em um checkout

valor = preço do plano no período + taxa de matrícula (só no primeiro ciclo) - desconto
Tudo em centavos. O preço por período cadastrado no plano é a única fonte de verdade.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update, or_

from endurance_billing import db
from endurance_billing.exceptions import PriceNotConfigured, ValidationError
from endurance_billing.models import Coupon, Plan, PERIODS
from endurance_billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PriceQuote:
    amount: int
    base_price: int
    enrollment_fee: int
    discount: int = 0
    coupon_code: Optional[str] = None


def percentage_of(amount: int, percentage: int) -> int:
    """floor(amount * percentage / 100) em aritmética inteira"""
    return (amount * percentage) // 100


class PricingResolver:
    """Resolve o preço de (plano, modalidade, período, primeiro ciclo)"""

    def __init__(self, default_enrollment_fee: int):
        self.default_enrollment_fee = int(default_enrollment_fee)

    def resolve(self, plan_id, modalidade_id, period, is_first_cycle, coupon_code=None, now=None):
        if period not in PERIODS:
            raise ValidationError(f'Período inválido: {period}')

        plan = db.session.get(Plan, plan_id)
        if plan is None or not plan.is_active:
            raise ValidationError(f'Plano {plan_id} não encontrado')
        if not plan.covers(modalidade_id):
            raise ValidationError(f'Modalidade {modalidade_id} não é atendida pelo plano {plan.name}')

        price = plan.price_for(period)
        if price is None:
            raise PriceNotConfigured(plan_id, period)

        base_price = int(price.amount)
        enrollment_fee = 0
        if is_first_cycle:
            enrollment_fee = plan.enrollment_fee if plan.enrollment_fee is not None else self.default_enrollment_fee

        quote = PriceQuote(
            amount=base_price + enrollment_fee,
            base_price=base_price,
            enrollment_fee=enrollment_fee,
        )

        if coupon_code:
            coupon = self.find_coupon(coupon_code, now=now)
            quote = apply_coupon(quote, coupon)

        return quote

    def find_coupon(self, code, now=None):
        """Busca um cupom utilizável; qualquer problema vira ValidationError"""
        now = now or utcnow()
        coupon = Coupon.query.filter_by(code=code.strip().upper()).first()
        if coupon is None or not coupon.is_active:
            raise ValidationError('Cupom inválido')
        if coupon.valid_from and now < coupon.valid_from:
            raise ValidationError('Cupom ainda não está válido')
        if coupon.valid_until and now > coupon.valid_until:
            raise ValidationError('Cupom expirado')
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            raise ValidationError('Cupom esgotado')
        return coupon

    @staticmethod
    def redeem_coupon(code):
        """
        Incrementa o uso do cupom de forma atômica respeitando o limite.
        Retorna False se o cupom esgotou entre a cotação e a cobrança.
        """
        result = db.session.execute(
            update(Coupon)
            .where(
                Coupon.code == code,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def apply_coupon(quote: PriceQuote, coupon: Coupon) -> PriceQuote:
    """Aplica o desconto do cupom; nenhum componente fica negativo"""
    base_price = quote.base_price
    enrollment_fee = quote.enrollment_fee
    plan_discount = 0
    fee_discount = 0

    if coupon.type == Coupon.PERCENTAGE_AMOUNT:
        plan_discount = percentage_of(base_price, coupon.value)
        fee_discount = percentage_of(enrollment_fee, coupon.value)
    elif coupon.type == Coupon.PERCENTAGE_SUBSCRIPTION:
        plan_discount = percentage_of(base_price, coupon.value)
    elif coupon.type == Coupon.FIXED_SUBSCRIPTION:
        plan_discount = min(coupon.value, base_price)
    elif coupon.type == Coupon.FIXED_AMOUNT:
        # Desconta primeiro do plano, o que sobrar da matrícula
        plan_discount = min(coupon.value, base_price)
        fee_discount = min(coupon.value - plan_discount, enrollment_fee)
    elif coupon.type == Coupon.FREE_ENROLLMENT:
        fee_discount = enrollment_fee
    else:
        raise ValidationError(f'Tipo de cupom desconhecido: {coupon.type}')

    plan_discount = max(0, min(plan_discount, base_price))
    fee_discount = max(0, min(fee_discount, enrollment_fee))
    discount = plan_discount + fee_discount

    logger.info(f"Cupom {coupon.code} aplicado: desconto de {discount} centavos")
    return PriceQuote(
        amount=base_price + enrollment_fee - discount,
        base_price=base_price,
        enrollment_fee=enrollment_fee,
        discount=discount,
        coupon_code=coupon.code,
    )
