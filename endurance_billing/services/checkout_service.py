# endurance_billing/services/checkout_service.py
"""
Orquestração do checkout

validating -> pricing -> provisioning -> charging -> splitting -> done (ou failed)

Cada tentativa é identificada pela chave de idempotência e gravada em
checkout_attempts antes de qualquer passo. Reenviar a mesma chave devolve
o resultado gravado sem cobrar de novo; uma tentativa que falhou ou cujo
lease venceu é retomada do ponto em que parou.
"""
import hashlib
import json
import logging
from calendar import timegm
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from endurance_billing import db
from endurance_billing.exceptions import (
    BillingError, CheckoutInProgress, GatewayError, GatewayRejected, ValidationError,
)
from endurance_billing.models import (
    CheckoutAttempt, Coach, Payment, SplitRecord, Subscription, MAX_INSTALLMENTS, PERIODS,
)
from endurance_billing.services.card_validator import CreditCard, validate_card
from endurance_billing.services.gateways import ChargeRequest, Payer
from endurance_billing.services.pricing_service import PriceQuote, apply_coupon
from endurance_billing.services.reconciliation_service import transition_payment
from endurance_billing.utils.dates import utcnow, isoformat
from endurance_billing.utils.money import format_brl

logger = logging.getLogger(__name__)


def _to_int(data, key, violations, required=True):
    value = data.get(key)
    if value is None or value == '':
        if required:
            violations.append(f'{key} é obrigatório')
        return None
    if isinstance(value, bool):
        violations.append(f'{key} deve ser um número inteiro')
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        violations.append(f'{key} deve ser um número inteiro')
        return None


@dataclass
class CheckoutRequest:
    user_id: str
    plan_id: int
    modalidade_id: int
    period: str
    payment_method: str
    coach_id: Optional[int] = None
    subscription_id: Optional[int] = None
    credit_card: Optional[CreditCard] = None
    payer: Optional[Payer] = None
    installment_count: Optional[int] = None
    coupon_code: Optional[str] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data, idempotency_key=None):
        """Monta a requisição a partir do JSON (camelCase) enviado pela UI"""
        if not isinstance(data, dict):
            raise ValidationError('Corpo da requisição deve ser um objeto JSON')

        violations = []
        user_id = str(data.get('userId') or '').strip()
        if not user_id:
            violations.append('userId é obrigatório')
        plan_id = _to_int(data, 'planId', violations)
        modalidade_id = _to_int(data, 'modalidadeId', violations)
        coach_id = _to_int(data, 'coachId', violations, required=False)
        subscription_id = _to_int(data, 'subscriptionId', violations, required=False)
        installment_count = _to_int(data, 'installmentCount', violations, required=False)

        period = str(data.get('period') or '').strip().lower()
        if not period:
            violations.append('period é obrigatório')
        method = str(data.get('paymentMethod') or '').strip().lower()
        if not method:
            violations.append('paymentMethod é obrigatório')

        if violations:
            raise ValidationError(violations)

        card = data.get('creditCard')
        return cls(
            user_id=user_id,
            plan_id=plan_id,
            modalidade_id=modalidade_id,
            period=period,
            payment_method=method,
            coach_id=coach_id,
            subscription_id=subscription_id,
            credit_card=CreditCard.from_dict(card) if card else None,
            payer=Payer.from_dict(user_id, data.get('payer')),
            installment_count=installment_count,
            coupon_code=(data.get('couponCode') or '').strip().upper() or None,
            idempotency_key=(idempotency_key or data.get('idempotencyKey') or '').strip() or None,
        )

    @property
    def is_first_cycle(self):
        return self.subscription_id is None

    def snapshot(self):
        """Cópia segura para persistir: cartão mascarado, sem CVV"""
        return {
            'userId': self.user_id,
            'planId': self.plan_id,
            'modalidadeId': self.modalidade_id,
            'coachId': self.coach_id,
            'subscriptionId': self.subscription_id,
            'period': self.period,
            'paymentMethod': self.payment_method,
            'installmentCount': self.installment_count,
            'couponCode': self.coupon_code,
            'creditCard': self.credit_card.masked() if self.credit_card else None,
        }


@dataclass
class CheckoutResult:
    success: bool
    payment_id: Optional[int]
    status: str
    amount: int
    idempotency_key: str
    subscription_id: Optional[int] = None
    due_date: Optional[str] = None
    pix_qr_code: Optional[str] = None
    pix_copy_paste: Optional[str] = None
    bank_slip_url: Optional[str] = None
    error: Optional[str] = None
    replayed: bool = field(default=False, compare=False)

    @classmethod
    def from_payment(cls, payment, idempotency_key):
        return cls(
            success=payment.status in (Payment.PENDING, Payment.CONFIRMED),
            payment_id=payment.id,
            status=payment.status,
            amount=payment.amount,
            idempotency_key=idempotency_key,
            subscription_id=payment.subscription_id,
            due_date=isoformat(payment.due_date),
            pix_qr_code=payment.pix_qr_code,
            pix_copy_paste=payment.pix_copy_paste,
            bank_slip_url=payment.bank_slip_url,
            error=payment.failure_reason if payment.status == Payment.FAILED else None,
        )

    def to_dict(self):
        return {
            'success': self.success,
            'paymentId': self.payment_id,
            'subscriptionId': self.subscription_id,
            'status': self.status,
            'amount': self.amount,
            'dueDate': self.due_date,
            'pixQrCode': self.pix_qr_code,
            'pixCopyPaste': self.pix_copy_paste,
            'bankSlipUrl': self.bank_slip_url,
            'idempotencyKey': self.idempotency_key,
            'error': self.error,
        }

    def to_json(self):
        data = asdict(self)
        data.pop('replayed')
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw, replayed=False):
        return cls(**json.loads(raw), replayed=replayed)


def derive_idempotency_key(request: CheckoutRequest, now=None, bucket_seconds=300) -> str:
    """
    Chave para quando a UI não envia uma: mesma seleção do mesmo usuário
    dentro da mesma janela de tempo = mesma tentativa.
    """
    now = now or utcnow()
    bucket = timegm(now.utctimetuple()) // bucket_seconds
    raw = '|'.join(str(part if part is not None else '') for part in (
        request.user_id, request.plan_id, request.modalidade_id, request.coach_id,
        request.subscription_id, request.period, request.payment_method, bucket,
    ))
    return hashlib.sha256(raw.encode()).hexdigest()


class CheckoutOrchestrator:

    def __init__(self, gateway, pricing, splitter, provisioner, activator, transfers,
                 lease_seconds=60, bucket_seconds=300, pix_due_minutes=30, boleto_due_days=3):
        self.gateway = gateway
        self.pricing = pricing
        self.splitter = splitter
        self.provisioner = provisioner
        self.activator = activator
        self.transfers = transfers
        self.lease_seconds = lease_seconds
        self.bucket_seconds = bucket_seconds
        self.pix_due_minutes = pix_due_minutes
        self.boleto_due_days = boleto_due_days

    # ------------------------------------------------------------------
    # Entrada
    # ------------------------------------------------------------------

    def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        key = request.idempotency_key or derive_idempotency_key(request, bucket_seconds=self.bucket_seconds)
        attempt, resumed = self._claim(key, request)

        if attempt.is_resolved:
            logger.info(f"Checkout {key[:12]}: resultado já existente devolvido")
            return CheckoutResult.from_json(attempt.result_json, replayed=True)

        try:
            return self._run(attempt, request, key, resumed)
        except BillingError as e:
            self._fail(attempt, e.code)
            raise
        except Exception:
            logger.exception(f"Checkout {key[:12]}: erro inesperado")
            self._fail(attempt, 'internal_error')
            raise

    def _claim(self, key, request):
        """
        Reserva a tentativa pela chave. Retorna (attempt, resumed).
        Só uma requisição por vez segura o lease de uma chave.
        """
        now = utcnow()
        lease = now + timedelta(seconds=self.lease_seconds)

        attempt = CheckoutAttempt.query.filter_by(idempotency_key=key).first()
        if attempt is None:
            attempt = CheckoutAttempt(
                idempotency_key=key,
                user_id=request.user_id,
                request_json=json.dumps(request.snapshot()),
                state=CheckoutAttempt.VALIDATING,
                lease_expires_at=lease,
            )
            db.session.add(attempt)
            try:
                db.session.commit()
                logger.info(f"Checkout {key[:12]}: tentativa criada para usuário {request.user_id}")
                return attempt, False
            except IntegrityError:
                db.session.rollback()
                attempt = CheckoutAttempt.query.filter_by(idempotency_key=key).first()

        if attempt.is_resolved:
            return attempt, False
        if attempt.user_id != request.user_id:
            raise ValidationError('Chave de idempotência já utilizada')

        lease_alive = attempt.lease_expires_at is not None and attempt.lease_expires_at > now
        if attempt.state != CheckoutAttempt.FAILED and lease_alive:
            raise CheckoutInProgress(f'Checkout {key[:12]} em andamento')

        lease_guard = (
            CheckoutAttempt.lease_expires_at.is_(None) if attempt.lease_expires_at is None
            else CheckoutAttempt.lease_expires_at == attempt.lease_expires_at
        )
        result = db.session.execute(
            update(CheckoutAttempt)
            .where(CheckoutAttempt.id == attempt.id, CheckoutAttempt.state == attempt.state, lease_guard)
            .values(lease_expires_at=lease, error_code=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount != 1:
            raise CheckoutInProgress(f'Checkout {key[:12]} em andamento')

        logger.info(f"Checkout {key[:12]}: retomando tentativa (estado anterior {attempt.state})")
        return attempt, True

    def _set_state(self, attempt, state):
        attempt.state = state
        db.session.commit()

    def _fail(self, attempt, code):
        db.session.rollback()
        attempt.state = CheckoutAttempt.FAILED
        attempt.error_code = code
        attempt.lease_expires_at = None
        db.session.commit()
        logger.info(f"Checkout {attempt.idempotency_key[:12]}: falhou ({code})")

    # ------------------------------------------------------------------
    # Passos
    # ------------------------------------------------------------------

    def _run(self, attempt, request, key, resumed):
        payment = Payment.query.filter_by(idempotency_key=key).first()

        if payment is None:
            self._set_state(attempt, CheckoutAttempt.VALIDATING)
            coach, subscription = self._validate(request)

            self._set_state(attempt, CheckoutAttempt.PRICING)
            quote = self._price(request, subscription)
            split = self.splitter.calculate(
                quote.amount,
                tier=coach.level if coach else None,
                has_coach=coach is not None,
                coach_id=coach.id if coach else None,
            )

            self._set_state(attempt, CheckoutAttempt.PROVISIONING)
            if coach is not None:
                self.provisioner.ensure(coach.id)

            self._set_state(attempt, CheckoutAttempt.CHARGING)
            payment = self._persist_payment(request, key, quote, split, subscription)
        elif payment.external_payment_id is None and payment.method == Payment.CREDIT_CARD:
            # Retomada de cartão: os dados do cartão não são persistidos, valida de novo
            self._validate_card(request)

        attempt.payment_id = payment.id
        self._set_state(attempt, CheckoutAttempt.CHARGING)
        if payment.status == Payment.PENDING and self._needs_charge(payment):
            self._charge(payment, request, key, resumed)

        self._set_state(attempt, CheckoutAttempt.SPLITTING)
        db.session.refresh(payment)
        if payment.status == Payment.CONFIRMED and payment.split is not None:
            self.transfers.execute(payment.split)

        db.session.refresh(payment)
        result = CheckoutResult.from_payment(payment, key)
        attempt.state = CheckoutAttempt.DONE
        attempt.result_json = result.to_json()
        attempt.lease_expires_at = None
        db.session.commit()

        logger.info(f"Checkout {key[:12]}: concluído, pagamento {payment.id} {payment.status}")
        return result

    def _validate_card(self, request):
        if request.credit_card is None:
            raise ValidationError('Dados do cartão são obrigatórios')
        card_result = validate_card(request.credit_card)
        if not card_result.is_valid:
            raise ValidationError(card_result.violations)

    def _validate(self, request):
        """Junta todas as violações antes de falhar"""
        violations = []

        if request.payment_method not in Payment.METHODS:
            violations.append(f'Método de pagamento inválido: {request.payment_method}')
        if request.period not in PERIODS:
            violations.append(f'Período inválido: {request.period}')

        if request.payment_method == Payment.CREDIT_CARD:
            violations.extend(validate_card(request.credit_card).violations)
            if request.installment_count is not None and request.period in MAX_INSTALLMENTS:
                maximum = MAX_INSTALLMENTS[request.period]
                if not 1 <= request.installment_count <= maximum:
                    violations.append(f'Parcelamento permitido para {request.period}: 1 a {maximum}x')
        elif request.installment_count not in (None, 1):
            violations.append('Parcelamento disponível apenas no cartão de crédito')

        coach = None
        if request.coach_id is not None:
            coach = db.session.get(Coach, request.coach_id)
            if coach is None:
                violations.append(f'Treinador {request.coach_id} não encontrado')

        subscription = None
        if request.subscription_id is not None:
            subscription = db.session.get(Subscription, request.subscription_id)
            if subscription is None or subscription.user_id != request.user_id:
                violations.append(f'Assinatura {request.subscription_id} não encontrada')
            elif subscription.status not in (Subscription.ACTIVE, Subscription.EXPIRED):
                violations.append(f'Assinatura {subscription.id} não pode ser renovada ({subscription.status})')

        if violations:
            raise ValidationError(violations)
        return coach, subscription

    def _price(self, request, subscription):
        quote = self.pricing.resolve(
            plan_id=request.plan_id,
            modalidade_id=request.modalidade_id,
            period=request.period,
            is_first_cycle=request.is_first_cycle,
        )

        # Renovação no mesmo plano e período mantém o valor travado na assinatura
        if subscription is not None and subscription.plan_id == request.plan_id \
                and subscription.period == request.period:
            quote = PriceQuote(amount=subscription.amount, base_price=subscription.amount, enrollment_fee=0)

        if request.coupon_code:
            quote = apply_coupon(quote, self.pricing.find_coupon(request.coupon_code))

        if quote.amount <= 0:
            raise ValidationError('Valor final da cobrança deve ser maior que zero')
        return quote

    def _due_date(self, method, now):
        if method == Payment.PIX:
            return now + timedelta(minutes=self.pix_due_minutes)
        if method == Payment.BOLETO:
            return now + timedelta(days=self.boleto_due_days)
        return now

    def _persist_payment(self, request, key, quote, split, subscription):
        """
        Grava assinatura (pendente), pagamento (pendente) e split antes de
        chamar o gateway: uma resposta perdida nunca deixa cobrança sem registro.
        """
        now = utcnow()

        if quote.coupon_code and not self.pricing.redeem_coupon(quote.coupon_code):
            db.session.rollback()
            raise ValidationError('Cupom esgotado')

        if subscription is None:
            subscription = Subscription(
                user_id=request.user_id,
                plan_id=request.plan_id,
                modalidade_id=request.modalidade_id,
                coach_id=request.coach_id,
                status=Subscription.PENDING,
                period=request.period,
                amount=quote.base_price,
            )
            db.session.add(subscription)

        payment = Payment(
            subscription=subscription,
            user_id=request.user_id,
            coach_id=request.coach_id,
            plan_id=request.plan_id,
            modalidade_id=request.modalidade_id,
            period=request.period,
            amount=quote.amount,
            base_price=quote.base_price,
            enrollment_fee=quote.enrollment_fee,
            discount=quote.discount,
            coupon_code=quote.coupon_code,
            is_first_cycle=request.is_first_cycle,
            method=request.payment_method,
            installment_count=request.installment_count if request.payment_method == Payment.CREDIT_CARD else None,
            status=Payment.PENDING,
            idempotency_key=key,
            due_date=self._due_date(request.payment_method, now),
        )
        db.session.add(payment)

        has_transfer = request.coach_id is not None and split.coach_amount > 0
        db.session.add(SplitRecord(
            payment=payment,
            coach_id=request.coach_id,
            coach_amount=split.coach_amount,
            platform_amount=split.platform_amount,
            percentage_applied=split.percentage_applied,
            transfer_status=SplitRecord.QUEUED if has_transfer else SplitRecord.NOT_APPLICABLE,
        ))

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = Payment.query.filter_by(idempotency_key=key).first()
            if existing is None:
                raise
            return existing

        logger.info(
            f"Pagamento {payment.id} criado: {format_brl(payment.amount)} via {payment.method} "
            f"(coach={split.coach_amount}, plataforma={split.platform_amount})"
        )
        return payment

    @staticmethod
    def _needs_charge(payment):
        if payment.external_payment_id is None:
            return True
        # Cobrança criada, mas o QR Code não veio na resposta
        return payment.method == Payment.PIX and not payment.pix_copy_paste

    def _charge(self, payment, request, key, resumed):
        charge = None
        if resumed or payment.external_payment_id:
            # Chamada anterior pode ter chegado ao gateway sem resposta
            charge = self.gateway.find_charge(key)
            if charge is not None:
                logger.info(f"Pagamento {payment.id}: cobrança {charge.external_payment_id} já existia no gateway")
            elif payment.external_payment_id:
                raise GatewayError(f'Cobrança {payment.external_payment_id} não localizada no gateway')

        if charge is None:
            charge_request = ChargeRequest(
                amount=payment.amount,
                method=payment.method,
                payer=request.payer or Payer(user_id=request.user_id),
                reference=key,
                description=f'Assinatura {payment.period} - plano {payment.plan_id}',
                due_date=payment.due_date,
                card=request.credit_card,
                installment_count=payment.installment_count,
                metadata={'payment_id': str(payment.id), 'user_id': payment.user_id},
            )
            try:
                charge = self.gateway.create_charge(charge_request)
            except GatewayRejected as e:
                logger.info(f"Pagamento {payment.id} recusado pelo gateway: {e.message}")
                transition_payment(payment, Payment.FAILED, failure_reason=e.message)
                return

        payment.external_payment_id = charge.external_payment_id
        payment.pix_qr_code = charge.pix_qr_code
        payment.pix_copy_paste = charge.pix_copy_paste
        payment.bank_slip_url = charge.bank_slip_url
        if charge.due_date:
            payment.due_date = charge.due_date
        db.session.commit()

        if payment.method == Payment.PIX and charge.status == Payment.PENDING and not charge.pix_copy_paste:
            raise GatewayError(f'Pagamento {payment.id}: QR Code PIX indisponível')

        if charge.status != Payment.PENDING:
            won = transition_payment(payment, charge.status, failure_reason=charge.failure_reason)
            if won and charge.status == Payment.CONFIRMED:
                db.session.refresh(payment)
                self.activator.activate_for_payment(payment)
