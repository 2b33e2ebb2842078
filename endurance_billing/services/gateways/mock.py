"""
Gateway simulado, determinístico

Usado nos testes e em ambientes sem credenciais do processador:
- PIX/boleto: nasce pendente e é confirmado após MOCK_SETTLE_SECONDS
- Cartão: confirmado ou recusado na hora (taxa de recusa configurável, RNG com semente)
- Webhook assinado com HMAC-SHA256 do corpo (header X-Webhook-Signature)
"""
import hashlib
import hmac
import itertools
import logging
import random
from datetime import timedelta

from endurance_billing.exceptions import GatewayError, InvalidWebhookSignature
from endurance_billing.utils.dates import utcnow
from .base import (
    PaymentGateway, ChargeResult, TransferResult, SubaccountResult, WebhookEvent,
    load_json_object, gateway_datetime,
    PENDING, CONFIRMED, FAILED, CANCELLED, PAYMENT_STATUSES,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'


class MockGateway(PaymentGateway):
    name = 'mock'

    def __init__(self, webhook_secret, settle_seconds=30, card_decline_rate=0.1,
                 subaccount_status='active', seed=42, clock=None):
        self.webhook_secret = webhook_secret or ''
        self.settle_seconds = settle_seconds
        self.card_decline_rate = card_decline_rate
        self.subaccount_status = subaccount_status
        self.clock = clock or utcnow
        self._rng = random.Random(seed)
        self._ids = itertools.count(1)
        self.charges = {}
        self.subaccounts = {}
        self.transfers = {}
        self.calls = []

    def _next_id(self, prefix):
        return f'{prefix}_{next(self._ids):06d}'

    def calls_to(self, operation):
        return [c for c in self.calls if c[0] == operation]

    # ------------------------------------------------------------------
    # Cobranças
    # ------------------------------------------------------------------

    def create_charge(self, request):
        self.calls.append(('create_charge', request.reference))

        # Mesmo comportamento de uma chave de idempotência real
        for charge_id, charge in self.charges.items():
            if charge['reference'] == request.reference:
                return self._to_result(charge_id)

        now = self.clock()
        charge_id = self._next_id('mock_pay')
        charge = {
            'reference': request.reference,
            'amount': request.amount,
            'method': request.method,
            'created_at': now,
            'status': PENDING,
            'due_date': request.due_date,
            'forced': False,
        }

        if request.method == 'credit_card':
            approved = self._rng.random() >= self.card_decline_rate
            charge['status'] = CONFIRMED if approved else FAILED
            charge['forced'] = True
            if not approved:
                charge['failure_reason'] = 'Pagamento recusado pelo emissor'
        elif request.method == 'pix':
            charge['pix_copy_paste'] = (
                '00020126580014br.gov.bcb.pix0136' + charge_id +
                f"5204000053039865406{request.amount / 100:.2f}5802BR5913ENDURANCE ON6014Belo Horizonte6304"
            )
            charge['pix_qr_code'] = 'data:image/png;base64,' + hashlib.sha256(charge_id.encode()).hexdigest()
            charge['due_date'] = request.due_date or now + timedelta(minutes=30)
        elif request.method == 'boleto':
            charge['bank_slip_url'] = f'https://mock-gateway.local/boleto/{charge_id}.pdf'
            charge['due_date'] = request.due_date or now + timedelta(days=3)
        else:
            raise GatewayError(f'Método de pagamento não suportado: {request.method}')

        self.charges[charge_id] = charge
        logger.info(f"[mock] Cobrança {charge_id} criada ({request.method}, {request.amount}) -> {charge['status']}")
        return self._to_result(charge_id)

    def find_charge(self, reference):
        self.calls.append(('find_charge', reference))
        for charge_id, charge in self.charges.items():
            if charge['reference'] == reference:
                return self._to_result(charge_id)
        return None

    def _to_result(self, charge_id):
        charge = self.charges[charge_id]
        return ChargeResult(
            external_payment_id=charge_id,
            status=self._current_status(charge),
            pix_qr_code=charge.get('pix_qr_code'),
            pix_copy_paste=charge.get('pix_copy_paste'),
            bank_slip_url=charge.get('bank_slip_url'),
            due_date=charge.get('due_date'),
            failure_reason=charge.get('failure_reason'),
        )

    def _current_status(self, charge):
        if charge['status'] == PENDING and not charge['forced']:
            elapsed = (self.clock() - charge['created_at']).total_seconds()
            if elapsed >= self.settle_seconds:
                charge['status'] = CONFIRMED
        return charge['status']

    def query_status(self, external_payment_id):
        self.calls.append(('query_status', external_payment_id))
        charge = self.charges.get(external_payment_id)
        if charge is None:
            raise GatewayError(f'Pagamento {external_payment_id} não existe no gateway')
        return self._current_status(charge)

    def set_status(self, external_payment_id, status):
        """Força um status (simula o processador); útil em dev e testes"""
        if status not in PAYMENT_STATUSES:
            raise ValueError(status)
        charge = self.charges[external_payment_id]
        charge['status'] = status
        charge['forced'] = True

    def cancel_charge(self, external_payment_id):
        self.calls.append(('cancel_charge', external_payment_id))
        charge = self.charges.get(external_payment_id)
        if charge is None:
            raise GatewayError(f'Pagamento {external_payment_id} não existe no gateway')
        if self._current_status(charge) != PENDING:
            raise GatewayError(f'Pagamento {external_payment_id} não está pendente')
        charge['status'] = CANCELLED
        charge['forced'] = True

    # ------------------------------------------------------------------
    # Split e subcontas
    # ------------------------------------------------------------------

    def create_split_transfer(self, external_payment_id, wallet_id, amount, reference):
        self.calls.append(('create_split_transfer', reference))
        for transfer_id, transfer in self.transfers.items():
            if transfer['reference'] == reference:
                return TransferResult(external_transfer_id=transfer_id, status='done')

        transfer_id = self._next_id('mock_tra')
        self.transfers[transfer_id] = {
            'reference': reference,
            'payment': external_payment_id,
            'wallet_id': wallet_id,
            'amount': amount,
        }
        logger.info(f"[mock] Transferência {transfer_id}: {amount} -> {wallet_id}")
        return TransferResult(external_transfer_id=transfer_id, status='done')

    def find_transfer(self, reference, external_payment_id=None):
        self.calls.append(('find_transfer', reference))
        for transfer_id, transfer in self.transfers.items():
            if transfer['reference'] == reference:
                return TransferResult(external_transfer_id=transfer_id, status='done')
        return None

    def create_subaccount(self, coach):
        self.calls.append(('create_subaccount', coach.id))
        subaccount_id = self._next_id('mock_acc')
        wallet_id = self._next_id('mock_wal')
        self.subaccounts[subaccount_id] = {'wallet_id': wallet_id, 'status': self.subaccount_status}
        return SubaccountResult(subaccount_id=subaccount_id, wallet_id=wallet_id, status=self.subaccount_status)

    def get_subaccount(self, subaccount_id):
        self.calls.append(('get_subaccount', subaccount_id))
        account = self.subaccounts.get(subaccount_id)
        if account is None:
            raise GatewayError(f'Subconta {subaccount_id} não existe no gateway')
        return SubaccountResult(subaccount_id=subaccount_id, wallet_id=account['wallet_id'],
                                status=account['status'])

    def set_subaccount_status(self, subaccount_id, status):
        self.subaccounts[subaccount_id]['status'] = status

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def parse_webhook(self, body, headers):
        signature = headers.get(SIGNATURE_HEADER) or ''
        if not self.webhook_secret or not hmac.compare_digest(signature, self.sign(body)):
            raise InvalidWebhookSignature()

        payload = load_json_object(body, 'webhook mock')
        status = payload.get('status')
        return WebhookEvent(
            event=payload.get('event') or 'payment.updated',
            external_payment_id=payload.get('externalPaymentId') or '',
            status=status.lower() if isinstance(status, str) else None,
            paid_at=gateway_datetime(payload.get('paidAt'), 'paidAt'),
            reference=payload.get('reference'),
        )
