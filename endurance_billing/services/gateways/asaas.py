"""
Integração com a API v3 do Asaas

Docs:
- POST /customers, POST /payments, GET /payments/{id}/pixQrCode
- POST /transfers (walletId da subconta), GET /transfers, POST /accounts (subconta)
Valores trafegam em reais com duas casas; aqui dentro tudo é centavo.
"""
import hmac
import logging
import re

import requests

from endurance_billing.exceptions import (
    GatewayError, GatewayRejected, GatewayTimeout, InvalidWebhookSignature,
)
from endurance_billing.utils.money import cents_to_decimal
from .base import (
    PaymentGateway, ChargeResult, TransferResult, SubaccountResult, WebhookEvent,
    load_json_object, gateway_datetime,
    PENDING, CONFIRMED, FAILED, CANCELLED,
)

logger = logging.getLogger(__name__)

WEBHOOK_TOKEN_HEADER = 'asaas-access-token'

BILLING_TYPES = {
    'pix': 'PIX',
    'boleto': 'BOLETO',
    'credit_card': 'CREDIT_CARD',
}

# Status Asaas -> status normalizado. None = ignorado pelo motor (estornos, chargebacks)
STATUS_MAP = {
    'PENDING': PENDING,
    'AWAITING_RISK_ANALYSIS': PENDING,
    'OVERDUE': PENDING,
    'CONFIRMED': CONFIRMED,
    'RECEIVED': CONFIRMED,
    'RECEIVED_IN_CASH': CONFIRMED,
    'DELETED': CANCELLED,
    'REFUNDED': None,
    'REFUND_REQUESTED': None,
    'REFUND_IN_PROGRESS': None,
    'CHARGEBACK_REQUESTED': None,
    'CHARGEBACK_DISPUTE': None,
    'AWAITING_CHARGEBACK_REVERSAL': None,
    'DUNNING_REQUESTED': None,
    'DUNNING_RECEIVED': None,
}

EVENT_STATUS = {
    'PAYMENT_CONFIRMED': CONFIRMED,
    'PAYMENT_RECEIVED': CONFIRMED,
    'PAYMENT_DELETED': CANCELLED,
    'PAYMENT_CREDIT_CARD_CAPTURE_REFUSED': FAILED,
    'PAYMENT_REPROVED_BY_RISK_ANALYSIS': FAILED,
}


# 4xx que significam recusa da operação. 401/403/404/429 são erro de
# configuração ou limite e não dizem nada sobre a cobrança.
REJECTION_HTTP_STATUSES = (400, 422)

# Transferências que não saíram; qualquer outro status conta como enviada
DEAD_TRANSFER_STATUSES = ('FAILED', 'CANCELLED')


def normalize_status(status):
    if not status:
        raise GatewayError('Asaas não retornou status do pagamento')
    key = str(status).strip().upper()
    if key not in STATUS_MAP:
        raise GatewayError(f'Status Asaas desconhecido: {status}')
    return STATUS_MAP[key]


def _only_digits(value):
    return re.sub(r'\D+', '', value or '')


class AsaasGateway(PaymentGateway):
    name = 'asaas'

    def __init__(self, api_key, base_url, webhook_token=None, timeout=20.0):
        if not api_key:
            raise GatewayError('ASAAS_API_KEY não configurada')
        self.api_key = api_key
        self.base_url = (base_url or '').rstrip('/')
        self.webhook_token = webhook_token or ''
        self.timeout = timeout

    def _request(self, method, path, payload=None, params=None):
        url = f'{self.base_url}{path}'
        headers = {
            'access_token': self.api_key,
            'Content-Type': 'application/json',
            'User-Agent': 'endurance-billing',
        }
        try:
            resp = requests.request(method, url, json=payload, params=params,
                                    headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            logger.warning(f"Asaas: timeout em {method} {path}")
            raise GatewayTimeout(f'Asaas não respondeu em {self.timeout}s ({method} {path})') from exc
        except requests.ConnectionError as exc:
            logger.warning(f"Asaas: falha de conexão em {method} {path}")
            raise GatewayTimeout(f'Falha de conexão com o Asaas: {exc}') from exc
        except requests.RequestException as exc:
            raise GatewayError(f'Erro na requisição ao Asaas: {exc}') from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError as exc:
            snippet = (resp.text or '').strip()[:300]
            logger.warning(f"Asaas: JSON inválido em {method} {path} (HTTP {resp.status_code}): {snippet}")
            raise GatewayError(f'Resposta inválida do Asaas (HTTP {resp.status_code})') from exc

        if resp.status_code in REJECTION_HTTP_STATUSES:
            errors = body.get('errors') if isinstance(body, dict) else None
            if errors:
                message = '; '.join(e.get('description') or e.get('code') or '' for e in errors)
            else:
                message = f'HTTP {resp.status_code}'
            logger.warning(f"Asaas recusou {method} {path}: {message}")
            raise GatewayRejected(f'Asaas recusou a operação: {message}')
        if not resp.ok:
            logger.warning(f"Asaas: HTTP {resp.status_code} em {method} {path}")
            raise GatewayError(f'Erro no Asaas (HTTP {resp.status_code})')
        if not isinstance(body, dict):
            raise GatewayError('Resposta inesperada do Asaas')
        return body

    # ------------------------------------------------------------------
    # Clientes
    # ------------------------------------------------------------------

    def ensure_customer(self, payer):
        if payer.customer_id:
            return payer.customer_id

        document = _only_digits(payer.cpf_cnpj)
        if document:
            found = self._request('GET', '/customers', params={'cpfCnpj': document})
            data = found.get('data') or []
            if data:
                return data[0]['id']

        created = self._request('POST', '/customers', {
            'name': payer.name,
            'email': payer.email,
            'cpfCnpj': document,
            'mobilePhone': _only_digits(payer.phone),
            'postalCode': _only_digits(payer.postal_code),
            'addressNumber': payer.address_number,
            'externalReference': payer.user_id,
        })
        customer_id = created.get('id')
        if not customer_id:
            raise GatewayError('Asaas não retornou id do cliente')
        logger.info(f"Asaas: cliente {customer_id} criado para usuário {payer.user_id}")
        return customer_id

    # ------------------------------------------------------------------
    # Cobranças
    # ------------------------------------------------------------------

    def create_charge(self, request):
        billing_type = BILLING_TYPES.get(request.method)
        if billing_type is None:
            raise GatewayError(f'Método de pagamento não suportado: {request.method}')

        payload = {
            'customer': self.ensure_customer(request.payer),
            'billingType': billing_type,
            'value': str(cents_to_decimal(request.amount)),
            'dueDate': (request.due_date.date().isoformat() if request.due_date else None),
            'description': request.description,
            'externalReference': request.reference,
        }

        if request.method == 'credit_card':
            card = request.card
            payload['creditCard'] = {
                'holderName': card.holder_name,
                'number': card.digits,
                'expiryMonth': card.expiry_month,
                'expiryYear': card.expiry_year,
                'ccv': card.cvv,
            }
            payload['creditCardHolderInfo'] = {
                'name': request.payer.name or card.holder_name,
                'email': request.payer.email,
                'cpfCnpj': _only_digits(request.payer.cpf_cnpj),
                'postalCode': _only_digits(request.payer.postal_code),
                'addressNumber': request.payer.address_number,
                'phone': _only_digits(request.payer.phone),
            }
            if request.installment_count and request.installment_count > 1:
                payload['installmentCount'] = request.installment_count
                payload['totalValue'] = payload.pop('value')

        body = self._request('POST', '/payments', payload)
        return self._charge_result(body, request.method)

    def find_charge(self, reference):
        body = self._request('GET', '/payments', params={'externalReference': reference})
        data = [item for item in body.get('data') or [] if item.get('status') != 'DELETED']
        if not data:
            return None
        item = data[0]
        method = {v: k for k, v in BILLING_TYPES.items()}.get(item.get('billingType'), 'pix')
        return self._charge_result(item, method)

    def _charge_result(self, body, method):
        payment_id = body.get('id')
        status = normalize_status(body.get('status'))
        if status is None:
            raise GatewayError(f"Cobrança {payment_id} em estado inesperado: {body.get('status')}")

        result = {
            'external_payment_id': payment_id,
            'status': status,
            'bank_slip_url': body.get('bankSlipUrl'),
            'due_date': gateway_datetime(body.get('dueDate'), 'dueDate'),
        }
        if method == 'pix' and payment_id and status == PENDING:
            # A cobrança já existe: falha no QR Code não pode perder o id
            try:
                qr = self._request('GET', f'/payments/{payment_id}/pixQrCode')
            except GatewayError as e:
                logger.warning(f"Asaas: QR Code da cobrança {payment_id} indisponível: {e.message}")
            else:
                result['pix_qr_code'] = qr.get('encodedImage')
                result['pix_copy_paste'] = qr.get('payload')
                result['due_date'] = gateway_datetime(qr.get('expirationDate'), 'expirationDate') \
                    or result['due_date']

        logger.info(f"Asaas: cobrança {payment_id} ({method}) -> {status}")
        return ChargeResult(**result)

    def query_status(self, external_payment_id):
        body = self._request('GET', f'/payments/{external_payment_id}')
        if body.get('deleted'):
            return CANCELLED
        return normalize_status(body.get('status'))

    def cancel_charge(self, external_payment_id):
        body = self._request('DELETE', f'/payments/{external_payment_id}')
        if body.get('deleted') is not True:
            raise GatewayError(f'Asaas não confirmou o cancelamento de {external_payment_id}')

    # ------------------------------------------------------------------
    # Split e subcontas
    # ------------------------------------------------------------------

    def create_split_transfer(self, external_payment_id, wallet_id, amount, reference):
        body = self._request('POST', '/transfers', {
            'value': str(cents_to_decimal(amount)),
            'walletId': wallet_id,
            'description': f'Repasse do pagamento {external_payment_id}',
            'externalReference': reference,
        })
        return TransferResult(external_transfer_id=body.get('id'), status=(body.get('status') or '').lower())

    def find_transfer(self, reference, external_payment_id=None):
        # POST /transfers não deduplica por externalReference
        body = self._request('GET', '/transfers', params={'externalReference': reference})
        for item in body.get('data') or []:
            if item.get('externalReference') != reference:
                continue
            if str(item.get('status') or '').upper() in DEAD_TRANSFER_STATUSES:
                continue
            logger.info(f"Asaas: transferência {item.get('id')} encontrada para {reference}")
            return TransferResult(external_transfer_id=item.get('id'),
                                  status=str(item.get('status') or '').lower())
        return None

    def create_subaccount(self, coach):
        body = self._request('POST', '/accounts', {
            'name': coach.name,
            'email': coach.email,
            'cpfCnpj': _only_digits(coach.cpf_cnpj),
            'mobilePhone': _only_digits(coach.mobile_phone),
            'address': coach.address_street,
            'addressNumber': coach.address_number,
            'complement': coach.address_complement,
            'province': coach.province,
            'postalCode': _only_digits(coach.postal_code),
        })
        return SubaccountResult(
            subaccount_id=body.get('id'),
            wallet_id=body.get('walletId'),
            status=self._subaccount_status(body),
        )

    def get_subaccount(self, subaccount_id):
        body = self._request('GET', '/accounts', params={'id': subaccount_id})
        data = body.get('data') or []
        if not data:
            raise GatewayError(f'Subconta {subaccount_id} não encontrada no Asaas')
        account = data[0]
        return SubaccountResult(
            subaccount_id=account.get('id'),
            wallet_id=account.get('walletId'),
            status=self._subaccount_status(account),
        )

    @staticmethod
    def _subaccount_status(account):
        raw = (account.get('accountStatus') or account.get('status') or '').upper()
        if raw in ('REJECTED', 'DISABLED', 'BLOCKED'):
            return 'suspended'
        if raw in ('PENDING', 'AWAITING_APPROVAL', 'AWAITING_ACTION_AUTHORIZATION'):
            return 'pending'
        return 'active' if account.get('walletId') else 'pending'

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook(self, body, headers):
        token = headers.get(WEBHOOK_TOKEN_HEADER) or ''
        if not self.webhook_token or not hmac.compare_digest(token, self.webhook_token):
            raise InvalidWebhookSignature()

        payload = load_json_object(body, 'webhook Asaas')
        event = payload.get('event') or ''
        payment = payload.get('payment') or {}
        if not isinstance(payment, dict):
            raise GatewayError('Webhook Asaas com campo payment inválido')

        status = EVENT_STATUS.get(event)
        if status is None and payment.get('status'):
            status = STATUS_MAP.get(str(payment['status']).upper())

        return WebhookEvent(
            event=event,
            external_payment_id=payment.get('id') or '',
            status=status,
            paid_at=gateway_datetime(payment.get('confirmedDate') or payment.get('paymentDate'), 'paymentDate'),
            reference=payment.get('externalReference'),
        )
