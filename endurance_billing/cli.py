# endurance_billing/cli.py
"""
Comandos `flask billing ...`, executados pelo cron/agendador

    flask billing reconcile-pending      # consulta no gateway os pendentes antigos
    flask billing retry-transfers        # repasses na fila ou com lease vencido
    flask billing expire-subscriptions   # assinaturas com ciclo vencido
    flask billing seed-catalog           # modalidades, planos e preços iniciais
"""
import logging

import click
from flask.cli import AppGroup

from endurance_billing import db
from endurance_billing.models import Modalidade, Plan, PlanPrice
from endurance_billing.services import get_reconciler
from endurance_billing.services.subscription_service import SubscriptionActivator

logger = logging.getLogger(__name__)

billing_cli = AppGroup('billing', help='Rotinas do motor de cobrança')

# Valor mensal equivalente (centavos) por plano, modalidade e período
CATALOG = {
    'Essencial': {
        'corrida': {'monthly': 25000, 'quarterly': 18500, 'semiannual': 17500, 'yearly': 16500},
        'triathlon': {'monthly': 32000, 'quarterly': 25000, 'semiannual': 24000, 'yearly': 23000},
    },
    'Premium': {
        'corrida': {'monthly': 39000, 'quarterly': 29000, 'semiannual': 28000, 'yearly': 27000},
        'triathlon': {'monthly': 56000, 'quarterly': 42000, 'semiannual': 41000, 'yearly': 40000},
    },
}
PERIOD_MONTHS = {'monthly': 1, 'quarterly': 3, 'semiannual': 6, 'yearly': 12}
MODALIDADES = {'corrida': 'Corrida', 'triathlon': 'Triathlon'}


@billing_cli.command('reconcile-pending')
@click.option('--older-than', type=int, default=None, help='Segundos desde a criação (padrão: config)')
@click.option('--limit', type=int, default=None, help='Máximo de pagamentos por execução')
def reconcile_pending(older_than, limit):
    """Consulta o gateway para pagamentos pendentes"""
    summary = get_reconciler().poll_pending(older_than_seconds=older_than, limit=limit)
    click.echo(
        f"Verificados: {summary['checked']} | atualizados: {summary['updated']} | "
        f"conflitos: {summary['conflicts']} | erros: {summary['errors']} | órfãos: {summary['orphaned']}"
    )


@billing_cli.command('retry-transfers')
@click.option('--limit', type=int, default=None)
def retry_transfers(limit):
    """Executa os repasses de split na fila e os presos em processing com lease vencido"""
    summary = get_reconciler().retry_queued_transfers(limit=limit)
    click.echo(f"Na fila: {summary['queued']} | concluídos: {summary['completed']}")


@billing_cli.command('expire-subscriptions')
def expire_subscriptions():
    """Marca como expiradas as assinaturas com ciclo vencido"""
    count = SubscriptionActivator().expire_overdue()
    click.echo(f"Assinaturas expiradas: {count}")


@billing_cli.command('seed-catalog')
def seed_catalog():
    """Cria modalidades, planos e preços (idempotente)"""
    modalidades = {}
    for slug, name in MODALIDADES.items():
        modalidade = Modalidade.query.filter_by(slug=slug).first()
        if modalidade is None:
            modalidade = Modalidade(slug=slug, name=name)
            db.session.add(modalidade)
        modalidades[slug] = modalidade
    db.session.flush()

    created = 0
    for plan_name, by_modalidade in CATALOG.items():
        for slug, prices in by_modalidade.items():
            full_name = f'{plan_name} {MODALIDADES[slug]}'
            plan = Plan.query.filter_by(name=full_name).first()
            if plan is None:
                plan = Plan(name=full_name, description=f'Plano {plan_name} de {MODALIDADES[slug].lower()}')
                plan.modalidades.append(modalidades[slug])
                db.session.add(plan)
                db.session.flush()
                created += 1

            for period, monthly in prices.items():
                if plan.price_for(period) is None:
                    db.session.add(PlanPrice(plan_id=plan.id, period=period,
                                             amount=monthly * PERIOD_MONTHS[period]))

    db.session.commit()
    logger.info(f"Catálogo semeado: {created} planos novos")
    click.echo(f"Planos criados: {created}")
