# endurance_billing/routes/webhooks.py
from flask import Blueprint, request, jsonify
import logging

from endurance_billing.exceptions import (
    GatewayError, InvalidWebhookSignature, PaymentNotFound, ReconciliationConflict,
)
from endurance_billing.services import get_gateway, get_reconciler

bp = Blueprint('webhooks', __name__, url_prefix='/webhooks')
logger = logging.getLogger(__name__)


@bp.route('/payments', methods=['POST'])
def payment_webhook():
    """Recebe notificações de status do gateway configurado"""
    gateway = get_gateway()
    payload = request.get_data()

    try:
        event = gateway.parse_webhook(payload, request.headers)
    except InvalidWebhookSignature:
        logger.warning(f"Webhook {gateway.name} com assinatura inválida de {request.remote_addr}")
        return jsonify({'error': 'Invalid signature'}), 401
    except GatewayError as e:
        logger.error(f"Webhook {gateway.name} inválido: {e.message}")
        return jsonify({'error': 'Invalid payload'}), 400

    logger.info(f"Webhook {gateway.name}: {event.event} ({event.external_payment_id}) -> {event.status}")

    if event.status is None:
        return jsonify({'status': 'ignored'}), 200

    try:
        payment = get_reconciler().reconcile(
            event.external_payment_id, event.status, paid_at=event.paid_at, reference=event.reference,
        )
    except PaymentNotFound:
        logger.warning(f"Webhook para pagamento desconhecido: {event.external_payment_id}")
        return jsonify({'status': 'ignored'}), 200
    except ReconciliationConflict as e:
        return jsonify({'status': 'conflict', 'paymentId': e.payment_id}), 409

    return jsonify({'status': 'success', 'paymentStatus': payment.status}), 200
