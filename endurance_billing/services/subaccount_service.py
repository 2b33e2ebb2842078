# endurance_billing/services/subaccount_service.py
"""
Provisionamento da subconta do treinador no gateway

No máximo uma subconta por treinador, mesmo com checkouts simultâneos:
a linha em coach_subaccounts (coach_id único) funciona como reserva.
Quem insere a linha chama o gateway; os demais recebem ProvisioningError
e tentam de novo depois.
"""
import logging
from datetime import timedelta

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError

from endurance_billing import db
from endurance_billing.exceptions import GatewayError, ProvisioningError, ValidationError
from endurance_billing.models import Coach, CoachSubaccount
from endurance_billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


class SubaccountProvisioner:

    def __init__(self, gateway, claim_lease_seconds=60):
        self.gateway = gateway
        self.claim_lease_seconds = claim_lease_seconds

    def get(self, coach_id):
        return CoachSubaccount.query.filter_by(coach_id=coach_id).first()

    def ensure(self, coach_id) -> CoachSubaccount:
        """Retorna a subconta do treinador, criando no gateway se preciso"""
        coach = db.session.get(Coach, coach_id)
        if coach is None:
            raise ValidationError(f'Treinador {coach_id} não encontrado')

        subaccount = self.get(coach_id)
        if subaccount is not None and subaccount.is_provisioned:
            return subaccount

        now = utcnow()
        lease = now + timedelta(seconds=self.claim_lease_seconds)

        if subaccount is None:
            subaccount = CoachSubaccount(
                coach_id=coach_id,
                status=CoachSubaccount.PENDING,
                claim_expires_at=lease,
            )
            db.session.add(subaccount)
            try:
                db.session.commit()
            except IntegrityError:
                # Outra requisição reservou primeiro
                db.session.rollback()
                subaccount = self.get(coach_id)
                if subaccount is not None and subaccount.is_provisioned:
                    return subaccount
                logger.info(f"Subconta do treinador {coach_id} já está sendo criada por outra requisição")
                raise ProvisioningError('Subconta do treinador em criação, tente novamente')
        else:
            self._take_over(subaccount, now, lease)

        logger.info(f"Criando subconta no gateway para o treinador {coach_id}")
        try:
            result = self.gateway.create_subaccount(coach)
        except GatewayError as e:
            logger.warning(f"Falha ao criar subconta do treinador {coach_id}: {e}")
            subaccount.claim_expires_at = None
            db.session.commit()
            raise ProvisioningError('Não foi possível criar a subconta do treinador') from e

        subaccount.external_subaccount_id = result.subaccount_id
        subaccount.external_wallet_id = result.wallet_id
        subaccount.status = result.status
        subaccount.claim_expires_at = None
        db.session.commit()

        logger.info(f"Subconta {result.subaccount_id} criada para o treinador {coach_id} ({result.status})")
        return subaccount

    def _take_over(self, subaccount, now, lease):
        """Assume uma reserva abandonada (lease vencido ou liberado)"""
        result = db.session.execute(
            update(CoachSubaccount)
            .where(
                CoachSubaccount.id == subaccount.id,
                CoachSubaccount.external_subaccount_id.is_(None),
                or_(CoachSubaccount.claim_expires_at.is_(None), CoachSubaccount.claim_expires_at < now),
            )
            .values(claim_expires_at=lease, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        if result.rowcount != 1:
            db.session.refresh(subaccount)
            logger.info(f"Subconta do treinador {subaccount.coach_id} já está sendo criada por outra requisição")
            raise ProvisioningError('Subconta do treinador em criação, tente novamente')

        logger.info(f"Reserva de subconta do treinador {subaccount.coach_id} assumida")

    def refresh(self, coach_id):
        """Atualiza status/wallet da subconta a partir do gateway"""
        subaccount = self.get(coach_id)
        if subaccount is None or not subaccount.is_provisioned:
            return subaccount

        try:
            result = self.gateway.get_subaccount(subaccount.external_subaccount_id)
        except GatewayError as e:
            raise ProvisioningError(f'Falha ao consultar subconta do treinador {coach_id}') from e

        if result.status != subaccount.status or result.wallet_id != subaccount.external_wallet_id:
            logger.info(f"Subconta do treinador {coach_id}: {subaccount.status} -> {result.status}")
            subaccount.status = result.status
            subaccount.external_wallet_id = result.wallet_id
            db.session.commit()
        return subaccount
