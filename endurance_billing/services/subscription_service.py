# endurance_billing/services/subscription_service.py
import logging
from datetime import timedelta

from sqlalchemy import update

from endurance_billing import db
from endurance_billing.events import emit_subscription_activated
from endurance_billing.models import Subscription, PERIOD_DAYS
from endurance_billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


def cycle_end(start, period):
    return start + timedelta(days=PERIOD_DAYS[period])


class SubscriptionActivator:
    """Ativa a assinatura no primeiro pagamento confirmado e estende nas renovações"""

    def activate_for_payment(self, payment, now=None):
        """
        Chamado uma única vez por pagamento, por quem venceu a transição
        pending -> confirmed do pagamento.
        """
        now = now or utcnow()
        subscription = db.session.get(Subscription, payment.subscription_id) if payment.subscription_id else None
        if subscription is None:
            logger.warning(f"Pagamento {payment.id} confirmado sem assinatura vinculada")
            return None

        paid_at = payment.paid_at or now

        if subscription.status == Subscription.PENDING:
            result = db.session.execute(
                update(Subscription)
                .where(Subscription.id == subscription.id, Subscription.status == Subscription.PENDING)
                .values(
                    status=Subscription.ACTIVE,
                    start_date=paid_at,
                    end_date=cycle_end(paid_at, subscription.period),
                    activated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.session.commit()

            if result.rowcount == 1:
                logger.info(f"Assinatura {subscription.id} ativada (usuário {subscription.user_id})")
                emit_subscription_activated(subscription)
            return subscription

        if payment.is_first_cycle:
            # Primeira cobrança de uma assinatura que já saiu de pending
            logger.info(f"Assinatura {subscription.id} já está {subscription.status}, nada a ativar")
            return subscription

        # Renovação: novo ciclo a partir do fim do atual (ou de agora, se já venceu)
        base = max(subscription.end_date or now, now)
        subscription.end_date = cycle_end(base, payment.period)
        subscription.status = Subscription.ACTIVE
        db.session.commit()
        logger.info(f"Assinatura {subscription.id} renovada até {subscription.end_date:%d/%m/%Y}")
        return subscription

    def expire_overdue(self, now=None):
        """Marca como expiradas as assinaturas ativas com ciclo vencido"""
        now = now or utcnow()
        result = db.session.execute(
            update(Subscription)
            .where(Subscription.status == Subscription.ACTIVE, Subscription.end_date < now)
            .values(status=Subscription.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount:
            logger.info(f"{result.rowcount} assinaturas expiradas")
        return result.rowcount
