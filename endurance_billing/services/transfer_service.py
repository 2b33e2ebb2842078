# endurance_billing/services/transfer_service.py
"""
Repasse da parte do treinador para a subconta

Exatamente uma transferência por split: o split é reservado com
UPDATE ... WHERE transfer_status = 'queued' antes da chamada ao gateway,
e a referência enviada ao gateway é fixa por pagamento.

Timeout ou erro sem resposta clara não devolve o split para a fila: ele
fica em processing até o lease vencer, e a próxima tentativa procura a
transferência pela referência antes de enviar outra.
"""
import logging
from datetime import timedelta

from sqlalchemy import and_, or_, update

from endurance_billing import db
from endurance_billing.events import split_transfer_completed
from endurance_billing.exceptions import BillingError, GatewayError, GatewayRejected
from endurance_billing.models import Payment, SplitRecord, CoachSubaccount
from endurance_billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


def transfer_reference(payment):
    return f'split-{payment.id}'


def claimable_filter(now):
    """Splits na fila ou em processing com lease vencido"""
    return or_(
        SplitRecord.transfer_status == SplitRecord.QUEUED,
        and_(
            SplitRecord.transfer_status == SplitRecord.PROCESSING,
            or_(SplitRecord.claim_expires_at.is_(None), SplitRecord.claim_expires_at <= now),
        ),
    )


class SplitTransferService:

    def __init__(self, gateway, provisioner=None, claim_lease_seconds=120):
        self.gateway = gateway
        self.provisioner = provisioner
        self.claim_lease_seconds = claim_lease_seconds

    def execute(self, split, refresh_subaccount=False) -> bool:
        """
        Tenta executar a transferência do split. Retorna True se o split
        está concluído ao final; False se continua pendente.
        """
        if split.transfer_status == SplitRecord.COMPLETED:
            return True
        now = utcnow()
        if not split.coach_id or not split.is_claimable(now):
            return False

        payment = split.payment
        if payment.status != Payment.CONFIRMED:
            return False

        if refresh_subaccount and self.provisioner is not None:
            try:
                self.provisioner.refresh(split.coach_id)
            except BillingError as e:
                logger.warning(f"Split do pagamento {payment.id} adiado: {e}")
                return False

        subaccount = CoachSubaccount.query.filter_by(coach_id=split.coach_id).first()
        if subaccount is None or not subaccount.is_active:
            status = subaccount.status if subaccount else 'inexistente'
            logger.info(f"Split do pagamento {payment.id} adiado: subconta {status}")
            return False

        previous_attempts = split.transfer_attempts or 0
        claimed = db.session.execute(
            update(SplitRecord)
            .where(SplitRecord.id == split.id, claimable_filter(now))
            .values(
                transfer_status=SplitRecord.PROCESSING,
                transfer_attempts=SplitRecord.transfer_attempts + 1,
                claim_expires_at=now + timedelta(seconds=self.claim_lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if claimed.rowcount != 1:
            logger.info(f"Split do pagamento {payment.id} já está sendo processado")
            return False

        reference = transfer_reference(payment)
        try:
            result = None
            if previous_attempts:
                # Tentativa anterior pode ter chegado ao gateway
                result = self.gateway.find_transfer(reference, external_payment_id=payment.external_payment_id)
                if result is not None:
                    logger.info(f"Split do pagamento {payment.id}: transferência {result.external_transfer_id} "
                                f"já existia no gateway")
            if result is None:
                result = self.gateway.create_split_transfer(
                    external_payment_id=payment.external_payment_id,
                    wallet_id=subaccount.external_wallet_id,
                    amount=split.coach_amount,
                    reference=reference,
                )
        except GatewayRejected as e:
            logger.warning(f"Transferência do split do pagamento {payment.id} recusada: {e}")
            split.transfer_status = SplitRecord.QUEUED
            split.claim_expires_at = None
            split.last_transfer_error = str(e)[:255]
            db.session.commit()
            return False
        except GatewayError as e:
            logger.warning(f"Transferência do split do pagamento {payment.id} sem confirmação: {e}")
            split.last_transfer_error = str(e)[:255]
            db.session.commit()
            return False

        split.transfer_status = SplitRecord.COMPLETED
        split.external_transfer_id = result.external_transfer_id
        split.transferred_at = utcnow()
        split.claim_expires_at = None
        split.last_transfer_error = None
        db.session.commit()

        logger.info(
            f"Split do pagamento {payment.id}: {split.coach_amount} centavos transferidos "
            f"para o treinador {split.coach_id} ({result.external_transfer_id})"
        )
        split_transfer_completed.send(split)
        return True
