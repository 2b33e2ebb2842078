"""
Eventos de domínio do motor de cobrança.

Outros componentes da plataforma (notificações, e-mail) se inscrevem
nestes sinais em vez de serem chamados diretamente.
"""
import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

billing_signals = Namespace()

subscription_activated = billing_signals.signal('subscription.activated')
payment_status_changed = billing_signals.signal('payment.status_changed')
reconciliation_conflict = billing_signals.signal('payment.reconciliation_conflict')
split_transfer_completed = billing_signals.signal('split.transfer_completed')


def emit_subscription_activated(subscription):
    event = {
        'type': 'subscription.activated',
        'userId': subscription.user_id,
        'subscriptionId': subscription.id,
    }
    logger.info(f"Evento subscription.activated: {event}")
    subscription_activated.send(subscription, event=event)
    return event
