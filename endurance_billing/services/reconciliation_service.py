# endurance_billing/services/reconciliation_service.py
"""
Reconciliação do status dos pagamentos com o gateway

Entradas: webhooks autenticados e consulta periódica (poll) dos pendentes.
Regras:
- status terminal (confirmed, failed, cancelled) nunca muda
- pending -> terminal só via UPDATE ... WHERE status = 'pending'
- terminal diferente do armazenado = conflito, registrado e nunca resolvido sozinho
"""
import logging
from datetime import timedelta

from sqlalchemy import update

from endurance_billing import db
from endurance_billing.events import payment_status_changed, reconciliation_conflict
from endurance_billing.exceptions import (
    GatewayError, PaymentNotFound, ReconciliationConflict, ValidationError,
)
from endurance_billing.models import Payment, SplitRecord
from endurance_billing.services.transfer_service import claimable_filter
from endurance_billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


def transition_payment(payment, new_status, paid_at=None, failure_reason=None) -> bool:
    """
    Transição pending -> terminal, atômica. Retorna False se outro
    processo chegou primeiro (o pagamento já não estava pendente).
    """
    if new_status not in Payment.TERMINAL:
        raise ValueError(f'Status terminal inválido: {new_status}')

    now = utcnow()
    values = {'status': new_status, 'updated_at': now}
    if new_status == Payment.CONFIRMED:
        values['paid_at'] = paid_at or now
    if failure_reason:
        values['failure_reason'] = failure_reason[:255]

    result = db.session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == Payment.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    if result.rowcount != 1:
        return False

    logger.info(f"Pagamento {payment.id}: pending -> {new_status}")
    payment_status_changed.send(payment, old_status=Payment.PENDING, new_status=new_status)
    return True


class PaymentStatusReconciler:

    def __init__(self, gateway, activator, transfers, pending_after_seconds=30, batch_size=100):
        self.gateway = gateway
        self.activator = activator
        self.transfers = transfers
        self.pending_after_seconds = pending_after_seconds
        self.batch_size = batch_size

    def reconcile(self, external_payment_id, reported_status, paid_at=None, reference=None):
        payment = Payment.query.filter_by(external_payment_id=external_payment_id).first()
        if payment is None and reference:
            payment = self._attach_by_reference(reference, external_payment_id)
        if payment is None:
            raise PaymentNotFound(f'Pagamento externo {external_payment_id} não encontrado')
        return self.apply_status(payment, reported_status, paid_at)

    def _attach_by_reference(self, reference, external_payment_id):
        """
        Status que chega antes do checkout gravar o id externo: localiza o
        pagamento pela chave de idempotência e grava o id.
        """
        payment = Payment.query.filter_by(idempotency_key=reference).first()
        if payment is None:
            return None

        db.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.external_payment_id.is_(None))
            .values(external_payment_id=external_payment_id)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        db.session.refresh(payment)

        if payment.external_payment_id != external_payment_id:
            return None
        logger.info(f"Pagamento {payment.id} vinculado à cobrança {external_payment_id} pela referência")
        return payment

    def apply_status(self, payment, reported_status, paid_at=None):
        if reported_status not in (Payment.PENDING,) + Payment.TERMINAL:
            raise GatewayError(f'Status reportado inválido: {reported_status!r}')

        if reported_status == Payment.PENDING:
            if payment.status == Payment.CONFIRMED:
                self._retry_transfer(payment)
            return payment

        if payment.status == Payment.PENDING:
            if transition_payment(payment, reported_status, paid_at=paid_at):
                if reported_status == Payment.CONFIRMED:
                    self.activator.activate_for_payment(payment)
                    self._retry_transfer(payment)
                return payment
            # Perdeu a corrida: outro processo já levou a terminal
            db.session.refresh(payment)

        return self._check_terminal(payment, reported_status)

    def _check_terminal(self, payment, reported_status):
        if payment.status == reported_status:
            if payment.status == Payment.CONFIRMED:
                self._retry_transfer(payment)
            return payment

        logger.error(
            f"CONFLITO de reconciliação no pagamento {payment.id}: "
            f"armazenado={payment.status}, gateway={reported_status}"
        )
        reconciliation_conflict.send(
            payment,
            stored_status=payment.status,
            reported_status=reported_status,
        )
        raise ReconciliationConflict(payment.id, payment.status, reported_status)

    def _retry_transfer(self, payment):
        split = SplitRecord.query.filter_by(payment_id=payment.id).first()
        if split is not None and split.is_claimable(utcnow()):
            self.transfers.execute(split, refresh_subaccount=True)

    def poll_pending(self, older_than_seconds=None, limit=None):
        """
        Consulta no gateway os pagamentos pendentes há mais de N segundos.
        Usado pelo comando `flask billing reconcile-pending`.
        """
        older_than = self.pending_after_seconds if older_than_seconds is None else older_than_seconds
        cutoff = utcnow() - timedelta(seconds=older_than)

        payments = (
            Payment.query
            .filter(Payment.status == Payment.PENDING, Payment.created_at <= cutoff)
            .order_by(Payment.created_at)
            .limit(limit or self.batch_size)
            .all()
        )

        summary = {'checked': 0, 'updated': 0, 'conflicts': 0, 'errors': 0, 'orphaned': 0}
        for payment in payments:
            summary['checked'] += 1

            if not payment.external_payment_id:
                # Checkout interrompido entre gravar o pagamento e a resposta do gateway
                try:
                    charge = self.gateway.find_charge(payment.idempotency_key)
                except GatewayError as e:
                    logger.warning(f"Poll: falha ao procurar cobrança do pagamento {payment.id}: {e}")
                    summary['errors'] += 1
                    continue
                if charge is None:
                    logger.warning(f"Poll: pagamento {payment.id} pendente sem cobrança no gateway")
                    summary['orphaned'] += 1
                    continue
                payment.external_payment_id = charge.external_payment_id
                db.session.commit()

            try:
                status = self.gateway.query_status(payment.external_payment_id)
            except GatewayError as e:
                logger.warning(f"Poll: falha ao consultar pagamento {payment.id}: {e}")
                summary['errors'] += 1
                continue

            if status is None or status == Payment.PENDING:
                continue

            try:
                self.apply_status(payment, status)
                summary['updated'] += 1
            except ReconciliationConflict:
                summary['conflicts'] += 1

        logger.info(f"Poll de pendentes: {summary}")
        return summary

    def retry_queued_transfers(self, limit=None):
        """
        Reprocessa splits de pagamentos já confirmados: os da fila e os
        presos em processing com lease vencido.
        """
        splits = (
            SplitRecord.query
            .join(Payment, SplitRecord.payment_id == Payment.id)
            .filter(claimable_filter(utcnow()), Payment.status == Payment.CONFIRMED)
            .order_by(SplitRecord.created_at)
            .limit(limit or self.batch_size)
            .all()
        )

        completed = 0
        for split in splits:
            if self.transfers.execute(split, refresh_subaccount=True):
                completed += 1

        logger.info(f"Transferências na fila: {completed}/{len(splits)} concluídas")
        return {'queued': len(splits), 'completed': completed}

    def cancel_payment(self, payment_id, user_id=None):
        """Cancelamento pelo usuário de um PIX/boleto ainda pendente"""
        payment = db.session.get(Payment, payment_id)
        if payment is None or (user_id is not None and payment.user_id != str(user_id)):
            raise PaymentNotFound(f'Pagamento {payment_id} não encontrado')

        if payment.method == Payment.CREDIT_CARD:
            raise ValidationError('Pagamentos com cartão não podem ser cancelados')
        if payment.status == Payment.CANCELLED:
            return payment
        if payment.status != Payment.PENDING:
            raise ValidationError(f'Pagamento já está {payment.status}')

        if payment.external_payment_id:
            self.gateway.cancel_charge(payment.external_payment_id)

        if not transition_payment(payment, Payment.CANCELLED, failure_reason='Cancelado pelo usuário'):
            db.session.refresh(payment)
            if payment.status != Payment.CANCELLED:
                raise ValidationError(f'Pagamento já está {payment.status}')

        logger.info(f"Pagamento {payment.id} cancelado pelo usuário {payment.user_id}")
        return payment
