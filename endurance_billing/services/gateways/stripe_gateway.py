"""
Integração com Stripe Connect

Subconta do treinador = conta Express conectada; o wallet_id é o id da
conta (acct_...), usado como destination das transferências.
"""
import logging
from datetime import datetime, timezone

import stripe

from endurance_billing.exceptions import (
    GatewayError, GatewayRejected, GatewayTimeout, InvalidWebhookSignature,
)
from .base import (
    PaymentGateway, ChargeResult, TransferResult, SubaccountResult, WebhookEvent,
    PENDING, CONFIRMED, FAILED, CANCELLED,
)

logger = logging.getLogger(__name__)

INTENT_STATUS = {
    'succeeded': CONFIRMED,
    'processing': PENDING,
    'requires_action': PENDING,
    'requires_confirmation': PENDING,
    'requires_capture': PENDING,
    'requires_payment_method': FAILED,
    'canceled': CANCELLED,
}

EVENT_STATUS = {
    'payment_intent.succeeded': CONFIRMED,
    'payment_intent.processing': PENDING,
    'payment_intent.payment_failed': FAILED,
    'payment_intent.canceled': CANCELLED,
}


def _timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _metadata(obj):
    metadata = getattr(obj, 'metadata', None)
    return metadata if isinstance(metadata, dict) else {}


def normalize_status(status):
    if status not in INTENT_STATUS:
        raise GatewayError(f'Status Stripe desconhecido: {status!r}')
    return INTENT_STATUS[status]


class StripeGateway(PaymentGateway):
    name = 'stripe'

    def __init__(self, secret_key, webhook_secret=None, timeout=20.0):
        if not secret_key:
            raise GatewayError('STRIPE_SECRET_KEY não configurada')
        stripe.api_key = secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        self.webhook_secret = webhook_secret or ''

    def _call(self, operation, *args, **kwargs):
        try:
            return operation(*args, **kwargs)
        except stripe.CardError as e:
            message = getattr(e, 'user_message', None) or str(e)
            logger.info(f"Stripe: cartão recusado - {message}")
            raise GatewayRejected(f'Cartão recusado: {message}') from e
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe: requisição inválida - {e}")
            raise GatewayRejected(f'Stripe recusou a operação: {e}') from e
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe: falha de conexão - {e}")
            raise GatewayTimeout(f'Falha de conexão com a Stripe: {e}') from e
        except stripe.StripeError as e:
            logger.error(f"Stripe: erro - {e}")
            raise GatewayError(f'Erro Stripe: {e}') from e

    # ------------------------------------------------------------------
    # Cobranças
    # ------------------------------------------------------------------

    def create_charge(self, request):
        payer = request.payer
        billing_details = {'name': payer.name, 'email': payer.email}

        if request.method == 'credit_card':
            card = request.card
            payment_method_data = {
                'type': 'card',
                'card': {
                    'number': card.digits,
                    'exp_month': int(card.expiry_month),
                    'exp_year': int(card.expiry_year),
                    'cvc': card.cvv,
                },
                'billing_details': {**billing_details, 'name': payer.name or card.holder_name},
            }
        elif request.method == 'pix':
            payment_method_data = {'type': 'pix', 'billing_details': billing_details}
        elif request.method == 'boleto':
            payment_method_data = {
                'type': 'boleto',
                'boleto': {'tax_id': payer.cpf_cnpj},
                'billing_details': {
                    **billing_details,
                    'address': {'postal_code': payer.postal_code, 'line1': payer.address_number, 'country': 'BR'},
                },
            }
        else:
            raise GatewayError(f'Método de pagamento não suportado: {request.method}')

        params = {
            'amount': request.amount,
            'currency': 'brl',
            'payment_method_types': [payment_method_data['type']],
            'payment_method_data': payment_method_data,
            'confirm': True,
            'description': request.description,
            'metadata': {**request.metadata, 'reference': request.reference},
        }
        if request.method == 'credit_card' and request.installment_count and request.installment_count > 1:
            params['payment_method_options'] = {
                'card': {'installments': {'enabled': True, 'plan': {
                    'count': request.installment_count, 'interval': 'month', 'type': 'fixed_count',
                }}},
            }

        intent = self._call(stripe.PaymentIntent.create, idempotency_key=request.reference, **params)
        return self._charge_result(intent)

    def find_charge(self, reference):
        found = self._call(stripe.PaymentIntent.search, query=f"metadata['reference']:'{reference}'")
        data = list(getattr(found, 'data', None) or [])
        return self._charge_result(data[0]) if data else None

    def _charge_result(self, intent):
        status = normalize_status(getattr(intent, 'status', None))
        result = {
            'external_payment_id': getattr(intent, 'id', None),
            'status': status,
        }

        next_action = getattr(intent, 'next_action', None)
        pix = getattr(next_action, 'pix_display_qr_code', None) if next_action else None
        boleto = getattr(next_action, 'boleto_display_details', None) if next_action else None
        if pix:
            result['pix_qr_code'] = getattr(pix, 'image_url_png', None)
            result['pix_copy_paste'] = getattr(pix, 'data', None)
            result['due_date'] = _timestamp(getattr(pix, 'expires_at', None))
        if boleto:
            result['bank_slip_url'] = getattr(boleto, 'hosted_voucher_url', None)
            result['due_date'] = _timestamp(getattr(boleto, 'expires_at', None))

        last_error = getattr(intent, 'last_payment_error', None)
        if status == FAILED and last_error:
            result['failure_reason'] = getattr(last_error, 'message', None)

        logger.info(f"Stripe: PaymentIntent {result['external_payment_id']} -> {status}")
        return ChargeResult(**result)

    def query_status(self, external_payment_id):
        intent = self._call(stripe.PaymentIntent.retrieve, external_payment_id)
        return normalize_status(getattr(intent, 'status', None))

    def cancel_charge(self, external_payment_id):
        self._call(stripe.PaymentIntent.cancel, external_payment_id)

    # ------------------------------------------------------------------
    # Split e subcontas (Connect)
    # ------------------------------------------------------------------

    def create_split_transfer(self, external_payment_id, wallet_id, amount, reference):
        transfer = self._call(
            stripe.Transfer.create,
            amount=amount,
            currency='brl',
            destination=wallet_id,
            transfer_group=external_payment_id,
            metadata={'reference': reference, 'payment_intent': external_payment_id},
            idempotency_key=reference,
        )
        return TransferResult(external_transfer_id=getattr(transfer, 'id', None), status='done')

    def find_transfer(self, reference, external_payment_id=None):
        if not external_payment_id:
            return None
        found = self._call(stripe.Transfer.list, transfer_group=external_payment_id, limit=100)
        for transfer in getattr(found, 'data', None) or []:
            if _metadata(transfer).get('reference') == reference and not getattr(transfer, 'reversed', False):
                return TransferResult(external_transfer_id=transfer.id, status='done')
        return None

    def create_subaccount(self, coach):
        account = self._call(
            stripe.Account.create,
            type='express',
            country='BR',
            email=coach.email,
            business_type='individual',
            capabilities={'transfers': {'requested': True}},
            metadata={'coach_id': str(coach.id)},
            idempotency_key=f'coach-subaccount-{coach.id}',
        )
        return self._subaccount_result(account)

    def get_subaccount(self, subaccount_id):
        account = self._call(stripe.Account.retrieve, subaccount_id)
        return self._subaccount_result(account)

    @staticmethod
    def _subaccount_result(account):
        requirements = getattr(account, 'requirements', None)
        disabled_reason = getattr(requirements, 'disabled_reason', None) if requirements else None
        if disabled_reason and str(disabled_reason).startswith('rejected'):
            status = 'suspended'
        elif getattr(account, 'payouts_enabled', False) or getattr(account, 'details_submitted', False):
            status = 'active'
        else:
            status = 'pending'
        account_id = getattr(account, 'id', None)
        return SubaccountResult(subaccount_id=account_id, wallet_id=account_id, status=status)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook(self, body, headers):
        signature = headers.get('Stripe-Signature') or ''
        if not self.webhook_secret or not signature:
            raise InvalidWebhookSignature()
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignature() from e
        except ValueError as e:
            raise GatewayError(f'Webhook Stripe com payload inválido: {e}') from e

        obj = event.data.object
        reference = None
        if getattr(obj, 'object', None) == 'payment_intent':
            payment_id = obj.id
            reference = _metadata(obj).get('reference')
        else:
            # charge.refunded, charge.dispute.* etc. referenciam o PaymentIntent
            payment_id = getattr(obj, 'payment_intent', None) or getattr(obj, 'id', None)

        status = EVENT_STATUS.get(event.type)
        paid_at = _timestamp(getattr(event, 'created', None)) if status == CONFIRMED else None
        return WebhookEvent(
            event=event.type,
            external_payment_id=payment_id or '',
            status=status,
            paid_at=paid_at,
            reference=reference,
        )
