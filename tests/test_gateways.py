# tests/test_gateways.py
"""
Testes dos adaptadores de gateway (mock, Asaas, Stripe)
Chamadas de rede sempre mockadas.
"""
import hashlib
import hmac
import json
import pytest
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests
import stripe

from endurance_billing.exceptions import (
    GatewayError, GatewayRejected, GatewayTimeout, InvalidWebhookSignature,
)
from endurance_billing.services.card_validator import CreditCard
from endurance_billing.services.gateways import (
    ChargeRequest, ChargeResult, MockGateway, Payer, build_gateway,
)
from endurance_billing.services.gateways.asaas import AsaasGateway
from endurance_billing.services.gateways.stripe_gateway import StripeGateway

NOW = datetime(2026, 10, 19, 12, 0, 0)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def charge_request(method='pix', amount=25000, reference='key-1', **kwargs):
    return ChargeRequest(
        amount=amount,
        method=method,
        payer=Payer(user_id='user-1', name='Maria', email='maria@example.com',
                    cpf_cnpj='52998224725', customer_id=kwargs.pop('customer_id', None)),
        reference=reference,
        **kwargs,
    )


def fake_response(status_code=200, body=None, invalid_json=False):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.content = b'{}'
    resp.text = '<html>erro</html>'
    if invalid_json:
        resp.json.side_effect = ValueError('no json')
    else:
        resp.json.return_value = body if body is not None else {}
    return resp


class TestChargeResultSchema:

    def test_rejects_unknown_status(self):
        with pytest.raises(GatewayError):
            ChargeResult(external_payment_id='x', status='PAID')

    def test_rejects_missing_id(self):
        with pytest.raises(GatewayError):
            ChargeResult(external_payment_id='', status='pending')


class TestMockGateway:

    @pytest.fixture
    def clock(self):
        return Clock(NOW)

    @pytest.fixture
    def mock_gateway(self, clock):
        return MockGateway(webhook_secret='segredo', settle_seconds=30, card_decline_rate=0.0, clock=clock)

    def test_pix_is_pending_then_confirmed_after_settle(self, mock_gateway, clock):
        result = mock_gateway.create_charge(charge_request('pix'))
        assert result.status == 'pending'
        assert result.pix_copy_paste and result.pix_qr_code
        assert result.due_date == NOW + timedelta(minutes=30)

        clock.now = NOW + timedelta(seconds=29)
        assert mock_gateway.query_status(result.external_payment_id) == 'pending'
        clock.now = NOW + timedelta(seconds=30)
        assert mock_gateway.query_status(result.external_payment_id) == 'confirmed'

    def test_boleto_has_slip_url(self, mock_gateway):
        result = mock_gateway.create_charge(charge_request('boleto'))
        assert result.status == 'pending'
        assert result.bank_slip_url.endswith('.pdf')

    def test_card_confirmed_or_declined(self, clock):
        approve = MockGateway('s', card_decline_rate=0.0, clock=clock)
        decline = MockGateway('s', card_decline_rate=1.0, clock=clock)
        assert approve.create_charge(charge_request('credit_card')).status == 'confirmed'
        declined = decline.create_charge(charge_request('credit_card'))
        assert declined.status == 'failed'
        assert declined.failure_reason

    def test_same_reference_returns_same_charge(self, mock_gateway):
        first = mock_gateway.create_charge(charge_request(reference='abc'))
        second = mock_gateway.create_charge(charge_request(reference='abc'))
        assert first.external_payment_id == second.external_payment_id
        assert len(mock_gateway.charges) == 1
        assert mock_gateway.find_charge('abc').external_payment_id == first.external_payment_id
        assert mock_gateway.find_charge('outra') is None

    def test_cancel_pending_charge(self, mock_gateway):
        result = mock_gateway.create_charge(charge_request('boleto'))
        mock_gateway.cancel_charge(result.external_payment_id)
        assert mock_gateway.query_status(result.external_payment_id) == 'cancelled'

    def test_cancel_confirmed_charge_fails(self, mock_gateway):
        result = mock_gateway.create_charge(charge_request('credit_card'))
        with pytest.raises(GatewayError):
            mock_gateway.cancel_charge(result.external_payment_id)

    def test_transfer_is_idempotent_by_reference(self, mock_gateway):
        first = mock_gateway.create_split_transfer('pay_1', 'wal_1', 30800, 'split-1')
        second = mock_gateway.create_split_transfer('pay_1', 'wal_1', 30800, 'split-1')
        assert first.external_transfer_id == second.external_transfer_id
        assert len(mock_gateway.transfers) == 1
        assert mock_gateway.find_transfer('split-1').external_transfer_id == first.external_transfer_id
        assert mock_gateway.find_transfer('split-2') is None

    def test_subaccount_status_from_config(self, clock):
        gw = MockGateway('s', subaccount_status='pending', clock=clock)
        coach = SimpleNamespace(id=1)
        created = gw.create_subaccount(coach)
        assert created.status == 'pending'
        gw.set_subaccount_status(created.subaccount_id, 'active')
        assert gw.get_subaccount(created.subaccount_id).status == 'active'

    def test_webhook_signature(self, mock_gateway):
        body = json.dumps({'event': 'payment.confirmed', 'externalPaymentId': 'mock_pay_000001',
                           'status': 'CONFIRMED'}).encode()
        signature = hmac.new(b'segredo', body, hashlib.sha256).hexdigest()

        event = mock_gateway.parse_webhook(body, {'X-Webhook-Signature': signature})
        assert event.external_payment_id == 'mock_pay_000001'
        assert event.status == 'confirmed'

        with pytest.raises(InvalidWebhookSignature):
            mock_gateway.parse_webhook(body, {'X-Webhook-Signature': 'errada'})
        with pytest.raises(InvalidWebhookSignature):
            mock_gateway.parse_webhook(body, {})

    def test_malformed_webhook_payloads(self, mock_gateway):
        for payload in ([1, 2], {'externalPaymentId': 'mock_pay_000001', 'status': 'CONFIRMED', 'paidAt': 'ontem'}):
            body = json.dumps(payload).encode()
            with pytest.raises(GatewayError):
                mock_gateway.parse_webhook(body, {'X-Webhook-Signature': mock_gateway.sign(body)})

    def test_webhook_carries_reference(self, mock_gateway):
        body = json.dumps({'externalPaymentId': 'mock_pay_000001', 'status': 'CONFIRMED',
                           'reference': 'chave-1'}).encode()
        event = mock_gateway.parse_webhook(body, {'X-Webhook-Signature': mock_gateway.sign(body)})
        assert event.reference == 'chave-1'


class TestAsaasGateway:

    @pytest.fixture
    def asaas(self):
        return AsaasGateway(api_key='$aact_test', base_url='https://sandbox.asaas.com/api/v3/',
                            webhook_token='token-webhook', timeout=5)

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_create_pix_charge(self, mock_request, asaas):
        mock_request.side_effect = [
            fake_response(200, {'id': 'pay_123', 'status': 'PENDING', 'dueDate': '2026-10-19'}),
            fake_response(200, {'encodedImage': 'iVBOR...', 'payload': '000201...',
                                'expirationDate': '2026-10-19 12:30:00'}),
        ]

        result = asaas.create_charge(charge_request('pix', due_date=NOW, customer_id='cus_1'))

        assert result.external_payment_id == 'pay_123'
        assert result.status == 'pending'
        assert result.pix_copy_paste == '000201...'
        method, url = mock_request.call_args_list[0][0]
        payload = mock_request.call_args_list[0][1]['json']
        assert method == 'POST'
        assert url == 'https://sandbox.asaas.com/api/v3/payments'
        assert payload['value'] == '250.00'
        assert payload['billingType'] == 'PIX'
        assert payload['externalReference'] == 'key-1'
        assert payload['customer'] == 'cus_1'
        assert mock_request.call_args_list[0][1]['headers']['access_token'] == '$aact_test'
        assert mock_request.call_args_list[0][1]['timeout'] == 5

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_creates_customer_when_missing(self, mock_request, asaas):
        mock_request.side_effect = [
            fake_response(200, {'data': []}),
            fake_response(200, {'id': 'cus_novo'}),
            fake_response(200, {'id': 'pay_9', 'status': 'PENDING', 'bankSlipUrl': 'https://boleto'}),
        ]
        result = asaas.create_charge(charge_request('boleto', due_date=NOW))
        assert result.bank_slip_url == 'https://boleto'
        assert mock_request.call_args_list[1][0] == ('POST', 'https://sandbox.asaas.com/api/v3/customers')
        assert mock_request.call_args_list[2][1]['json']['customer'] == 'cus_novo'

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_card_with_installments(self, mock_request, asaas):
        mock_request.return_value = fake_response(200, {'id': 'pay_c', 'status': 'CONFIRMED'})
        card = CreditCard.from_dict({'holderName': 'Maria', 'number': '4539 1488 0343 6467',
                                     'expiryMonth': '12', 'expiryYear': '2035', 'ccv': '123'})
        result = asaas.create_charge(charge_request('credit_card', amount=324000, due_date=NOW, card=card,
                                                    installment_count=12, customer_id='cus_1'))
        payload = mock_request.call_args[1]['json']
        assert result.status == 'confirmed'
        assert payload['creditCard']['number'] == '4539148803436467'
        assert payload['installmentCount'] == 12
        assert payload['totalValue'] == '3240.00'
        assert 'value' not in payload

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_timeout_and_connection_errors(self, mock_request, asaas):
        mock_request.side_effect = requests.Timeout('lento')
        with pytest.raises(GatewayTimeout):
            asaas.query_status('pay_1')
        mock_request.side_effect = requests.ConnectionError('fora do ar')
        with pytest.raises(GatewayTimeout):
            asaas.query_status('pay_1')

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_http_errors(self, mock_request, asaas):
        mock_request.return_value = fake_response(400, {'errors': [{'code': 'invalid_creditCard',
                                                                    'description': 'Cartão recusado'}]})
        with pytest.raises(GatewayRejected) as exc:
            asaas.query_status('pay_1')
        assert 'Cartão recusado' in exc.value.message

        mock_request.return_value = fake_response(422, {'errors': [{'code': 'invalid_value'}]})
        with pytest.raises(GatewayRejected):
            asaas.query_status('pay_1')

        mock_request.return_value = fake_response(502, {})
        with pytest.raises(GatewayError) as exc:
            asaas.query_status('pay_1')
        assert not isinstance(exc.value, GatewayRejected)

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_auth_rate_limit_and_not_found_are_not_rejections(self, mock_request, asaas):
        for status_code in (401, 403, 404, 429):
            mock_request.return_value = fake_response(status_code, {'errors': [{'code': 'qualquer'}]})
            with pytest.raises(GatewayError) as exc:
                asaas.create_charge(charge_request('pix', due_date=NOW, customer_id='cus_1'))
            assert not isinstance(exc.value, GatewayRejected), status_code

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_pix_charge_kept_when_qr_code_fails(self, mock_request, asaas):
        mock_request.side_effect = [
            fake_response(200, {'id': 'pay_qr', 'status': 'PENDING', 'dueDate': '2026-10-19'}),
            fake_response(429, {}),
        ]
        result = asaas.create_charge(charge_request('pix', due_date=NOW, customer_id='cus_1'))
        assert result.external_payment_id == 'pay_qr'
        assert result.status == 'pending'
        assert result.pix_copy_paste is None

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_malformed_payloads(self, mock_request, asaas):
        mock_request.return_value = fake_response(200, invalid_json=True)
        with pytest.raises(GatewayError):
            asaas.query_status('pay_1')

        mock_request.return_value = fake_response(200, {'id': 'pay_1', 'status': 'ALGO_NOVO'})
        with pytest.raises(GatewayError):
            asaas.query_status('pay_1')

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_status_mapping(self, mock_request, asaas):
        for raw, expected in [('RECEIVED', 'confirmed'), ('OVERDUE', 'pending'),
                              ('CONFIRMED', 'confirmed'), ('REFUNDED', None)]:
            mock_request.return_value = fake_response(200, {'id': 'pay_1', 'status': raw})
            assert asaas.query_status('pay_1') == expected

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_transfer_sends_wallet_and_decimal_value(self, mock_request, asaas):
        mock_request.return_value = fake_response(200, {'id': 'tra_1', 'status': 'PENDING'})
        result = asaas.create_split_transfer('pay_1', 'wal_1', 30800, 'split-1')
        payload = mock_request.call_args[1]['json']
        assert result.external_transfer_id == 'tra_1'
        assert payload == {'value': '308.00', 'walletId': 'wal_1',
                           'description': 'Repasse do pagamento pay_1', 'externalReference': 'split-1'}

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_find_transfer_by_reference(self, mock_request, asaas):
        mock_request.return_value = fake_response(200, {'data': [
            {'id': 'tra_0', 'externalReference': 'split-1', 'status': 'FAILED'},
            {'id': 'tra_9', 'externalReference': 'split-9', 'status': 'DONE'},
            {'id': 'tra_1', 'externalReference': 'split-1', 'status': 'PENDING'},
        ]})
        found = asaas.find_transfer('split-1')
        assert found.external_transfer_id == 'tra_1'
        method, url = mock_request.call_args[0]
        assert (method, url) == ('GET', 'https://sandbox.asaas.com/api/v3/transfers')
        assert mock_request.call_args[1]['params'] == {'externalReference': 'split-1'}

        mock_request.return_value = fake_response(200, {'data': []})
        assert asaas.find_transfer('split-1') is None

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_subaccount(self, mock_request, asaas):
        mock_request.return_value = fake_response(200, {'id': 'acc_1', 'walletId': 'wal_1'})
        coach = SimpleNamespace(id=1, name='Carlos', email='c@c.com', cpf_cnpj='123.456.789-09',
                                mobile_phone='31999990000', address_street='Rua', address_number='1',
                                address_complement=None, province='Centro', postal_code='30110-000')
        result = asaas.create_subaccount(coach)
        assert result.wallet_id == 'wal_1'
        assert result.status == 'active'
        assert mock_request.call_args[1]['json']['cpfCnpj'] == '12345678909'

    def test_webhook_token(self, asaas):
        body = json.dumps({'event': 'PAYMENT_RECEIVED',
                           'payment': {'id': 'pay_1', 'status': 'RECEIVED', 'paymentDate': '2026-10-19'}}).encode()
        event = asaas.parse_webhook(body, {'asaas-access-token': 'token-webhook'})
        assert event.status == 'confirmed'
        assert event.paid_at == datetime(2026, 10, 19)

        with pytest.raises(InvalidWebhookSignature):
            asaas.parse_webhook(body, {'asaas-access-token': 'outro'})

    def test_refund_webhook_is_ignored(self, asaas):
        body = json.dumps({'event': 'PAYMENT_REFUNDED', 'payment': {'id': 'pay_1', 'status': 'REFUNDED'}}).encode()
        event = asaas.parse_webhook(body, {'asaas-access-token': 'token-webhook'})
        assert event.status is None

    def test_webhook_reference_and_malformed_payloads(self, asaas):
        headers = {'asaas-access-token': 'token-webhook'}
        body = json.dumps({'event': 'PAYMENT_CONFIRMED',
                           'payment': {'id': 'pay_1', 'externalReference': 'chave-1'}}).encode()
        assert asaas.parse_webhook(body, headers).reference == 'chave-1'

        for payload in ([1, 2], {'event': 'PAYMENT_CONFIRMED', 'payment': 'pay_1'},
                        {'event': 'PAYMENT_CONFIRMED', 'payment': {'id': 'pay_1', 'paymentDate': '19/10/2026'}}):
            with pytest.raises(GatewayError):
                asaas.parse_webhook(json.dumps(payload).encode(), headers)

    def test_requires_api_key(self):
        with pytest.raises(GatewayError):
            AsaasGateway(api_key='', base_url='https://sandbox.asaas.com/api/v3')


class TestStripeGateway:

    @pytest.fixture
    def stripe_gateway(self):
        return StripeGateway(secret_key='sk_test_123', webhook_secret='whsec_test', timeout=5)

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.PaymentIntent.create')
    def test_card_charge_uses_idempotency_key(self, mock_create, stripe_gateway):
        mock_create.return_value = SimpleNamespace(id='pi_1', status='succeeded', next_action=None,
                                                   last_payment_error=None)
        card = CreditCard.from_dict({'holderName': 'Maria', 'number': '4539148803436467',
                                     'expiryMonth': '12', 'expiryYear': '2035', 'ccv': '123'})
        result = stripe_gateway.create_charge(charge_request('credit_card', amount=44000, card=card))

        assert result.status == 'confirmed'
        kwargs = mock_create.call_args[1]
        assert kwargs['idempotency_key'] == 'key-1'
        assert kwargs['amount'] == 44000
        assert kwargs['currency'] == 'brl'
        assert kwargs['payment_method_data']['type'] == 'card'

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.PaymentIntent.create')
    def test_pix_charge_exposes_qr_code(self, mock_create, stripe_gateway):
        pix = SimpleNamespace(data='000201pix', image_url_png='https://qr.png', expires_at=1760880000)
        mock_create.return_value = SimpleNamespace(
            id='pi_2', status='requires_action', last_payment_error=None,
            next_action=SimpleNamespace(pix_display_qr_code=pix, boleto_display_details=None),
        )
        result = stripe_gateway.create_charge(charge_request('pix'))
        assert result.status == 'pending'
        assert result.pix_copy_paste == '000201pix'
        assert result.due_date is not None

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.PaymentIntent.create')
    def test_errors_are_normalized(self, mock_create, stripe_gateway):
        card = CreditCard.from_dict({'holderName': 'Maria', 'number': '4000000000000002',
                                     'expiryMonth': '12', 'expiryYear': '2035', 'ccv': '123'})
        mock_create.side_effect = stripe.CardError('Your card was declined.', None, 'card_declined')
        with pytest.raises(GatewayRejected):
            stripe_gateway.create_charge(charge_request('credit_card', card=card))

        mock_create.side_effect = stripe.APIConnectionError('rede')
        with pytest.raises(GatewayTimeout):
            stripe_gateway.create_charge(charge_request('credit_card', card=card))

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.Transfer.create')
    def test_transfer_to_connected_account(self, mock_transfer, stripe_gateway):
        mock_transfer.return_value = SimpleNamespace(id='tr_1')
        result = stripe_gateway.create_split_transfer('pi_1', 'acct_1', 30800, 'split-5')
        assert result.external_transfer_id == 'tr_1'
        kwargs = mock_transfer.call_args[1]
        assert kwargs['destination'] == 'acct_1'
        assert kwargs['idempotency_key'] == 'split-5'

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.Transfer.list')
    def test_find_transfer_in_transfer_group(self, mock_list, stripe_gateway):
        mock_list.return_value = SimpleNamespace(data=[
            SimpleNamespace(id='tr_outra', metadata={'reference': 'split-4'}, reversed=False),
            SimpleNamespace(id='tr_1', metadata={'reference': 'split-5'}, reversed=False),
        ])
        found = stripe_gateway.find_transfer('split-5', external_payment_id='pi_1')
        assert found.external_transfer_id == 'tr_1'
        assert mock_list.call_args[1]['transfer_group'] == 'pi_1'

        assert stripe_gateway.find_transfer('split-6', external_payment_id='pi_1') is None

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.Account.create')
    def test_subaccount_pending_until_onboarding(self, mock_account, stripe_gateway):
        mock_account.return_value = SimpleNamespace(id='acct_9', payouts_enabled=False,
                                                    details_submitted=False, requirements=None)
        result = stripe_gateway.create_subaccount(SimpleNamespace(id=3, email='c@c.com'))
        assert result.status == 'pending'
        assert result.wallet_id == 'acct_9'

    @patch('endurance_billing.services.gateways.stripe_gateway.stripe.Webhook.construct_event')
    def test_webhook(self, mock_construct, stripe_gateway):
        mock_construct.return_value = SimpleNamespace(
            type='payment_intent.succeeded', created=1760880000,
            data=SimpleNamespace(object=SimpleNamespace(object='payment_intent', id='pi_1')),
        )
        event = stripe_gateway.parse_webhook(b'{}', {'Stripe-Signature': 't=1,v1=abc'})
        assert event.external_payment_id == 'pi_1'
        assert event.status == 'confirmed'

        mock_construct.side_effect = stripe.SignatureVerificationError('assinatura', 't=1,v1=abc')
        with pytest.raises(InvalidWebhookSignature):
            stripe_gateway.parse_webhook(b'{}', {'Stripe-Signature': 't=1,v1=abc'})

    def test_webhook_without_signature(self, stripe_gateway):
        with pytest.raises(InvalidWebhookSignature):
            stripe_gateway.parse_webhook(b'{}', {})


class TestBuildGateway:

    def test_default_is_mock(self):
        assert isinstance(build_gateway({'WEBHOOK_SECRET': 'x'}), MockGateway)

    def test_unknown_gateway(self):
        with pytest.raises(ValueError):
            build_gateway({'PAYMENT_GATEWAY': 'paypal'})

    def test_asaas_requires_key(self):
        with pytest.raises(GatewayError):
            build_gateway({'PAYMENT_GATEWAY': 'asaas'})
