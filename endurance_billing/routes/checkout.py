# endurance_billing/routes/checkout.py
from flask import Blueprint, request, jsonify
import logging

from endurance_billing import db
from endurance_billing.exceptions import (
    BillingError, CheckoutInProgress, GatewayError, PaymentNotFound, PriceNotConfigured,
    ProvisioningError, UnknownTier, ValidationError,
)
from endurance_billing.models import Payment, Subscription
from endurance_billing.services import get_checkout_service, get_reconciler
from endurance_billing.services.checkout_service import CheckoutRequest
from endurance_billing.services.ledger_service import coach_earnings
from endurance_billing.utils.dates import parse_datetime

bp = Blueprint('checkout', __name__)
logger = logging.getLogger(__name__)


@bp.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({'success': False, 'error': e.code, 'violations': e.violations}), 422


@bp.errorhandler(PriceNotConfigured)
def handle_price_not_configured(e):
    return jsonify({'success': False, 'error': e.code, 'message': e.message}), 422


@bp.errorhandler(UnknownTier)
def handle_unknown_tier(e):
    logger.error(f"Configuração inválida: {e.message}")
    return jsonify({'success': False, 'error': e.code,
                    'message': 'Treinador sem nível de comissão configurado'}), 422


@bp.errorhandler(PaymentNotFound)
def handle_not_found(e):
    return jsonify({'success': False, 'error': e.code}), 404


@bp.errorhandler(CheckoutInProgress)
@bp.errorhandler(ProvisioningError)
@bp.errorhandler(GatewayError)
def handle_retryable(e):
    # Detalhes de gateway/provisionamento ficam só no log
    logger.warning(f"Checkout não concluído ({e.code}): {e.message}")
    return jsonify({
        'success': False,
        'status': 'processing',
        'error': e.code,
        'message': 'Pagamento em processamento, tente novamente em instantes',
    }), 202


@bp.errorhandler(BillingError)
def handle_billing_error(e):
    logger.error(f"Erro no checkout ({e.code}): {e.message}")
    return jsonify({'success': False, 'error': 'internal_error'}), 500


@bp.route('/checkout', methods=['POST'])
def checkout():
    """Processa o checkout de uma assinatura"""
    data = request.get_json(silent=True)
    checkout_request = CheckoutRequest.from_dict(data, idempotency_key=request.headers.get('Idempotency-Key'))

    logger.info(
        f"Checkout: usuário {checkout_request.user_id}, plano {checkout_request.plan_id}, "
        f"{checkout_request.period}, {checkout_request.payment_method}"
    )
    result = get_checkout_service().checkout(checkout_request)
    return jsonify(result.to_dict()), 200 if result.replayed else 201


@bp.route('/checkout/<int:payment_id>/status', methods=['GET'])
def checkout_status(payment_id):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound()

    subscription = db.session.get(Subscription, payment.subscription_id) if payment.subscription_id else None
    return jsonify({
        'payment': payment.to_dict(),
        'subscription': subscription.to_dict() if subscription else None,
    })


@bp.route('/payments', methods=['GET'])
def list_payments():
    user_id = (request.args.get('userId') or '').strip()
    if not user_id:
        raise ValidationError('userId é obrigatório')

    payments = Payment.query.filter_by(user_id=user_id).order_by(
        Payment.created_at.desc(), Payment.id.desc()
    ).all()
    return jsonify({'payments': [p.to_dict() for p in payments]})


@bp.route('/payments/<int:payment_id>/cancel', methods=['POST'])
def cancel_payment(payment_id):
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId') or request.args.get('userId')

    payment = get_reconciler().cancel_payment(payment_id, user_id=user_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})


@bp.route('/coaches/<int:coach_id>/earnings', methods=['GET'])
def earnings(coach_id):
    try:
        start = parse_datetime(request.args.get('start'))
        end = parse_datetime(request.args.get('end'))
    except ValueError:
        raise ValidationError('Datas devem estar no formato ISO (AAAA-MM-DD)')

    return jsonify(coach_earnings(coach_id, start=start, end=end))
