# tests/test_checkout_service.py
"""
Testes do fluxo completo de checkout com o gateway mock
"""
import pytest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from endurance_billing.events import subscription_activated
from endurance_billing.exceptions import (
    CheckoutInProgress, GatewayError, GatewayRejected, GatewayTimeout, PriceNotConfigured, UnknownTier,
    ValidationError,
)
from endurance_billing.models import (
    CheckoutAttempt, CoachSubaccount, Coupon, Payment, SplitRecord, Subscription,
)
from endurance_billing.services import get_checkout_service, get_reconciler
from endurance_billing.services.checkout_service import (
    CheckoutRequest, CheckoutResult, derive_idempotency_key,
)
from endurance_billing.services.gateways.asaas import AsaasGateway
from endurance_billing.utils.dates import utcnow


def run_checkout(data, key=None):
    request = CheckoutRequest.from_dict(data, idempotency_key=key)
    return get_checkout_service().checkout(request)


class TestCheckoutRequest:

    def test_collects_every_missing_field(self):
        with pytest.raises(ValidationError) as exc:
            CheckoutRequest.from_dict({'planId': 'abc'})
        violations = exc.value.violations
        assert 'userId é obrigatório' in violations
        assert 'planId deve ser um número inteiro' in violations
        assert 'modalidadeId é obrigatório' in violations
        assert 'period é obrigatório' in violations

    def test_snapshot_masks_card(self, card_checkout_data):
        request = CheckoutRequest.from_dict(card_checkout_data())
        snapshot = request.snapshot()
        assert snapshot['creditCard']['last4'] == '6467'
        assert '123' not in str(snapshot['creditCard'])

    def test_derived_key_is_stable_within_bucket(self, checkout_data):
        request = CheckoutRequest.from_dict(checkout_data())
        now = utcnow().replace(minute=0, second=10)
        same = derive_idempotency_key(request, now=now + timedelta(seconds=60))
        assert derive_idempotency_key(request, now=now) == same
        assert derive_idempotency_key(request, now=now + timedelta(seconds=300)) != same

        other = CheckoutRequest.from_dict(checkout_data(paymentMethod='boleto'))
        assert derive_idempotency_key(other, now=now) != derive_idempotency_key(request, now=now)

    def test_result_json_round_trip_keeps_fields(self):
        result = CheckoutResult(success=True, payment_id=1, status='pending', amount=25000,
                                idempotency_key='k', pix_copy_paste='000201')
        restored = CheckoutResult.from_json(result.to_json(), replayed=True)
        assert restored == result
        assert restored.replayed is True


class TestPixCheckout:

    def test_pix_without_coach(self, db, gateway, plan_essencial, corrida, checkout_data):
        result = run_checkout(checkout_data(planId=plan_essencial.id), key='pix-1')

        assert result.success is True
        assert result.status == 'pending'
        assert result.amount == 25000
        assert result.pix_copy_paste
        assert result.replayed is False

        payment = db.session.get(Payment, result.payment_id)
        assert payment.split.transfer_status == SplitRecord.NOT_APPLICABLE
        assert payment.split.coach_amount == 0
        assert payment.split.platform_amount == 25000
        assert payment.subscription.status == Subscription.PENDING

        attempt = CheckoutAttempt.query.filter_by(idempotency_key='pix-1').one()
        assert attempt.state == CheckoutAttempt.DONE
        assert attempt.lease_expires_at is None

    def test_pix_confirmed_by_poll_activates_subscription(self, db, gateway, plan_essencial, checkout_data):
        result = run_checkout(checkout_data(planId=plan_essencial.id), key='pix-2')

        gateway.clock = lambda: utcnow() + timedelta(seconds=31)
        received = []

        def on_activated(sender, **kwargs):
            received.append(kwargs['event'])

        with subscription_activated.connected_to(on_activated):
            summary = get_reconciler().poll_pending(older_than_seconds=0)

        assert summary['updated'] == 1
        payment = db.session.get(Payment, result.payment_id)
        assert payment.status == Payment.CONFIRMED
        assert payment.paid_at is not None

        subscription = payment.subscription
        assert subscription.status == Subscription.ACTIVE
        assert subscription.end_date - subscription.start_date == timedelta(days=30)
        assert received == [{
            'type': 'subscription.activated',
            'userId': 'user-1',
            'subscriptionId': subscription.id,
        }]

    def test_boleto_due_date(self, db, plan_essencial, checkout_data):
        before = utcnow()
        result = run_checkout(checkout_data(planId=plan_essencial.id, paymentMethod='boleto'), key='bol-1')
        payment = db.session.get(Payment, result.payment_id)
        assert result.bank_slip_url
        assert payment.due_date >= before + timedelta(days=3)


class TestCardCheckout:

    def test_card_with_senior_coach(self, db, gateway, senior_coach, active_subaccount, card_checkout_data):
        data = card_checkout_data(coachId=senior_coach.id)
        result = run_checkout(data, key='card-1')

        assert result.success is True
        assert result.status == 'confirmed'
        assert result.amount == 44000

        payment = db.session.get(Payment, result.payment_id)
        split = payment.split
        assert split.coach_amount == 30800
        assert split.platform_amount == 13200
        assert split.percentage_applied == 70
        assert split.transfer_status == SplitRecord.COMPLETED
        assert payment.subscription.status == Subscription.ACTIVE

        transfers = list(gateway.transfers.values())
        assert len(transfers) == 1
        assert transfers[0]['wallet_id'] == 'wal_fixture'
        assert transfers[0]['amount'] == 30800
        assert transfers[0]['reference'] == f'split-{payment.id}'

    def test_pending_subaccount_queues_transfer(self, db, gateway, senior_coach, card_checkout_data):
        gateway.subaccount_status = 'pending'
        result = run_checkout(card_checkout_data(coachId=senior_coach.id), key='card-2')

        payment = db.session.get(Payment, result.payment_id)
        assert payment.status == Payment.CONFIRMED
        assert payment.split.transfer_status == SplitRecord.QUEUED
        assert gateway.transfers == {}

        subaccount = CoachSubaccount.query.filter_by(coach_id=senior_coach.id).one()
        gateway.set_subaccount_status(subaccount.external_subaccount_id, 'active')

        summary = get_reconciler().retry_queued_transfers()
        assert summary == {'queued': 1, 'completed': 1}

        splits = SplitRecord.query.filter_by(payment_id=payment.id).all()
        assert len(splits) == 1
        assert splits[0].transfer_status == SplitRecord.COMPLETED
        assert splits[0].transfer_attempts == 1

    def test_declined_card(self, db, gateway, card_checkout_data):
        gateway.card_decline_rate = 1.0
        result = run_checkout(card_checkout_data(), key='card-3')

        assert result.success is False
        assert result.status == 'failed'
        assert result.error == 'Pagamento recusado pelo emissor'
        payment = db.session.get(Payment, result.payment_id)
        assert payment.subscription.status == Subscription.PENDING

    def test_installments_limit_per_period(self, db, gateway, card_checkout_data):
        with pytest.raises(ValidationError) as exc:
            run_checkout(card_checkout_data(installmentCount=3), key='card-4')
        assert 'Parcelamento permitido para monthly: 1 a 1x' in exc.value.violations
        assert gateway.calls_to('create_charge') == []

    def test_yearly_installments(self, db, gateway, card_checkout_data):
        result = run_checkout(card_checkout_data(period='yearly', installmentCount=12), key='card-5')
        payment = db.session.get(Payment, result.payment_id)
        assert payment.installment_count == 12
        assert payment.amount == 324000 + 5000


class TestValidationFailures:

    def test_invalid_card_fails_attempt(self, db, gateway, card_checkout_data):
        data = card_checkout_data(creditCard={'holderName': 'Maria Silva', 'number': '4539148803436468',
                                             'expiryMonth': '12', 'expiryYear': '2035', 'ccv': '123'})
        with pytest.raises(ValidationError) as exc:
            run_checkout(data, key='bad-card')

        assert exc.value.violations == ['Número do cartão inválido']
        attempt = CheckoutAttempt.query.filter_by(idempotency_key='bad-card').one()
        assert attempt.state == CheckoutAttempt.FAILED
        assert attempt.error_code == 'validation_error'
        assert Payment.query.count() == 0
        assert gateway.calls_to('create_charge') == []

    def test_unknown_coach(self, db, checkout_data):
        with pytest.raises(ValidationError):
            run_checkout(checkout_data(coachId=999), key='no-coach')

    def test_coach_without_level_is_never_charged(self, db, gateway, coach_sem_nivel, checkout_data):
        with pytest.raises(UnknownTier):
            run_checkout(checkout_data(coachId=coach_sem_nivel.id), key='no-tier')

        attempt = CheckoutAttempt.query.filter_by(idempotency_key='no-tier').one()
        assert attempt.error_code == 'unknown_tier'
        assert Payment.query.count() == 0
        assert gateway.calls_to('create_charge') == []
        assert gateway.calls_to('create_subaccount') == []

    def test_period_without_price(self, db, gateway, checkout_data):
        with pytest.raises(PriceNotConfigured):
            run_checkout(checkout_data(period='weekly'), key='weekly')
        assert gateway.calls_to('create_charge') == []

    def test_zero_amount_is_rejected(self, db, gateway, plan_essencial, checkout_data):
        db.session.add(Coupon(code='TUDO', name='Tudo', type=Coupon.PERCENTAGE_AMOUNT, value=100))
        db.session.commit()
        with pytest.raises(ValidationError):
            run_checkout(checkout_data(planId=plan_essencial.id, couponCode='tudo'), key='zero')
        assert gateway.calls_to('create_charge') == []


class TestIdempotency:

    def test_same_key_charges_once(self, db, gateway, checkout_data):
        first = run_checkout(checkout_data(), key='same-key')
        second = run_checkout(checkout_data(), key='same-key')

        assert second.replayed is True
        assert first == second
        assert len(gateway.calls_to('create_charge')) == 1
        assert Payment.query.count() == 1

    def test_derived_key_without_header(self, db, gateway, checkout_data):
        fixed = utcnow()
        with patch('endurance_billing.services.checkout_service.utcnow', return_value=fixed):
            first = run_checkout(checkout_data())
            second = run_checkout(checkout_data())

        assert second.replayed is True
        assert first.payment_id == second.payment_id
        assert len(gateway.calls_to('create_charge')) == 1

    def test_key_from_other_user(self, db, checkout_data):
        run_checkout(checkout_data(), key='shared')
        CheckoutAttempt.query.filter_by(idempotency_key='shared').update({'state': CheckoutAttempt.FAILED})
        db.session.commit()

        with pytest.raises(ValidationError):
            run_checkout(checkout_data(userId='user-2'), key='shared')

    def test_live_lease_blocks_concurrent_request(self, db, gateway, checkout_data):
        db.session.add(CheckoutAttempt(
            idempotency_key='busy',
            user_id='user-1',
            request_json='{}',
            state=CheckoutAttempt.CHARGING,
            lease_expires_at=utcnow() + timedelta(seconds=60),
        ))
        db.session.commit()

        with pytest.raises(CheckoutInProgress):
            run_checkout(checkout_data(), key='busy')
        assert gateway.calls_to('create_charge') == []

    def test_expired_lease_is_resumed(self, db, gateway, checkout_data):
        db.session.add(CheckoutAttempt(
            idempotency_key='stale',
            user_id='user-1',
            request_json='{}',
            state=CheckoutAttempt.PRICING,
            lease_expires_at=utcnow() - timedelta(seconds=1),
        ))
        db.session.commit()

        result = run_checkout(checkout_data(), key='stale')
        assert result.success is True
        assert len(gateway.calls_to('create_charge')) == 1


class TestTimeoutRecovery:

    def test_timeout_before_gateway_created_charge(self, db, gateway, checkout_data):
        with patch.object(gateway, 'create_charge', side_effect=GatewayTimeout('sem resposta')):
            with pytest.raises(GatewayTimeout):
                run_checkout(checkout_data(), key='timeout-1')

        payment = Payment.query.filter_by(idempotency_key='timeout-1').one()
        assert payment.status == Payment.PENDING
        assert payment.external_payment_id is None
        attempt = CheckoutAttempt.query.filter_by(idempotency_key='timeout-1').one()
        assert attempt.state == CheckoutAttempt.FAILED
        assert attempt.error_code == 'gateway_timeout'

        result = run_checkout(checkout_data(), key='timeout-1')
        assert result.success is True
        assert result.payment_id == payment.id
        assert len(gateway.charges) == 1
        assert Payment.query.count() == 1

    def test_timeout_after_gateway_created_charge(self, db, gateway, checkout_data):
        real_create = gateway.create_charge

        def lost_response(request):
            real_create(request)
            raise GatewayTimeout('resposta perdida')

        with patch.object(gateway, 'create_charge', side_effect=lost_response):
            with pytest.raises(GatewayTimeout):
                run_checkout(checkout_data(), key='timeout-2')

        result = run_checkout(checkout_data(), key='timeout-2')

        assert result.success is True
        assert len(gateway.charges) == 1
        assert len(gateway.calls_to('create_charge')) == 1
        assert len(gateway.calls_to('find_charge')) == 1
        payment = db.session.get(Payment, result.payment_id)
        assert payment.external_payment_id == next(iter(gateway.charges))

    def test_card_resume_requires_card_again(self, db, gateway, checkout_data, card_checkout_data):
        with patch.object(gateway, 'create_charge', side_effect=GatewayTimeout('sem resposta')):
            with pytest.raises(GatewayTimeout):
                run_checkout(card_checkout_data(), key='timeout-3')

        with pytest.raises(ValidationError):
            run_checkout(checkout_data(paymentMethod='credit_card'), key='timeout-3')

        result = run_checkout(card_checkout_data(), key='timeout-3')
        assert result.status == 'confirmed'


class TestCouponsAndRenewal:

    def test_coupon_is_redeemed_once(self, db, checkout_data):
        coupon = Coupon(code='DEZ', name='Dez', type=Coupon.PERCENTAGE_SUBSCRIPTION, value=10)
        db.session.add(coupon)
        db.session.commit()

        result = run_checkout(checkout_data(couponCode='dez'), key='coupon-1')
        run_checkout(checkout_data(couponCode='dez'), key='coupon-1')

        assert result.amount == 39000 - 3900 + 5000
        db.session.refresh(coupon)
        assert coupon.used_count == 1
        payment = db.session.get(Payment, result.payment_id)
        assert payment.coupon_code == 'DEZ'
        assert payment.discount == 3900

    def test_renewal_keeps_locked_amount_and_extends_cycle(self, db, plan_essencial, active_subscription,
                                                            card_checkout_data):
        previous_end = active_subscription.end_date
        data = card_checkout_data(planId=plan_essencial.id, subscriptionId=active_subscription.id)

        result = run_checkout(data, key='renew-1')

        assert result.amount == 24000
        payment = db.session.get(Payment, result.payment_id)
        assert payment.enrollment_fee == 0
        assert payment.is_first_cycle is False

        db.session.refresh(active_subscription)
        assert active_subscription.status == Subscription.ACTIVE
        assert active_subscription.end_date == previous_end + timedelta(days=30)

    def test_pending_subscription_cannot_be_renewed(self, db, plan_essencial, corrida, checkout_data):
        sub = Subscription(user_id='user-1', plan_id=plan_essencial.id, modalidade_id=corrida.id,
                           status=Subscription.PENDING, period='monthly', amount=25000)
        db.session.add(sub)
        db.session.commit()

        with pytest.raises(ValidationError):
            run_checkout(checkout_data(planId=plan_essencial.id, subscriptionId=sub.id), key='renew-2')

    def test_other_users_subscription(self, db, plan_essencial, active_subscription, checkout_data):
        data = checkout_data(userId='user-2', planId=plan_essencial.id, subscriptionId=active_subscription.id)
        with pytest.raises(ValidationError):
            run_checkout(data, key='renew-3')


def asaas_response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.content = b'{}'
    resp.json.return_value = body if body is not None else {}
    return resp


class TestAsaasCheckout:

    @pytest.fixture
    def asaas(self, app):
        gateway = AsaasGateway(api_key='$aact_test', base_url='https://sandbox.asaas.com/api/v3')
        app.extensions['payment_gateway'] = gateway
        return gateway

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_rate_limit_keeps_payment_pending(self, mock_request, db, asaas, checkout_data):
        mock_request.return_value = asaas_response(429, {'errors': [{'code': 'too_many_requests'}]})

        with pytest.raises(GatewayError) as exc:
            run_checkout(checkout_data(), key='asaas-429')

        assert not isinstance(exc.value, GatewayRejected)
        payment = Payment.query.filter_by(idempotency_key='asaas-429').one()
        assert payment.status == Payment.PENDING
        assert CheckoutAttempt.query.filter_by(idempotency_key='asaas-429').one().state == CheckoutAttempt.FAILED

        mock_request.return_value = None
        mock_request.side_effect = [
            asaas_response(200, {'data': []}),                            # GET /payments?externalReference
            asaas_response(200, {'data': [{'id': 'cus_1'}]}),             # GET /customers
            asaas_response(200, {'id': 'pay_1', 'status': 'PENDING'}),    # POST /payments
            asaas_response(200, {'encodedImage': 'img', 'payload': '000201'}),
        ]
        result = run_checkout(checkout_data(), key='asaas-429')

        assert result.status == Payment.PENDING
        assert result.pix_copy_paste == '000201'
        db.session.refresh(payment)
        assert payment.external_payment_id == 'pay_1'

    @patch('endurance_billing.services.gateways.asaas.requests.request')
    def test_qr_code_failure_keeps_charge_id(self, mock_request, db, asaas, checkout_data):
        mock_request.side_effect = [
            asaas_response(200, {'data': [{'id': 'cus_1'}]}),
            asaas_response(200, {'id': 'pay_7', 'status': 'PENDING'}),
            asaas_response(429, {}),
        ]

        with pytest.raises(GatewayError):
            run_checkout(checkout_data(), key='asaas-qr')

        payment = Payment.query.filter_by(idempotency_key='asaas-qr').one()
        assert payment.external_payment_id == 'pay_7'
        assert payment.status == Payment.PENDING

        mock_request.side_effect = [
            asaas_response(200, {'data': [{'id': 'pay_7', 'status': 'PENDING', 'billingType': 'PIX'}]}),
            asaas_response(200, {'encodedImage': 'img', 'payload': '000201'}),
        ]
        result = run_checkout(checkout_data(), key='asaas-qr')

        assert result.payment_id == payment.id
        assert result.pix_copy_paste == '000201'
        posts = [c for c in mock_request.call_args_list if c[0][0] == 'POST']
        assert len(posts) == 1
