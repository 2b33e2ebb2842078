# Importar todos os models
from .catalog import Modalidade, Plan, PlanPrice, Coupon, plan_modalidades, PERIODS, PERIOD_DAYS, MAX_INSTALLMENTS
from .coach import Coach, CoachSubaccount
from .subscription import Subscription
from .payment import CheckoutAttempt, Payment, SplitRecord

__all__ = [
    'Modalidade', 'Plan', 'PlanPrice', 'Coupon', 'plan_modalidades',
    'PERIODS', 'PERIOD_DAYS', 'MAX_INSTALLMENTS',
    'Coach', 'CoachSubaccount', 'Subscription',
    'CheckoutAttempt', 'Payment', 'SplitRecord',
]
