import logging

from .base import (
    PaymentGateway, Payer, ChargeRequest, ChargeResult, TransferResult,
    SubaccountResult, WebhookEvent,
)
from .mock import MockGateway

logger = logging.getLogger(__name__)


def build_gateway(config):
    """Instancia o gateway configurado em PAYMENT_GATEWAY"""
    name = (config.get('PAYMENT_GATEWAY') or 'mock').lower()
    timeout = config.get('GATEWAY_TIMEOUT', 20.0)

    if name == 'asaas':
        from .asaas import AsaasGateway
        gateway = AsaasGateway(
            api_key=config.get('ASAAS_API_KEY'),
            base_url=config.get('ASAAS_BASE_URL'),
            webhook_token=config.get('ASAAS_WEBHOOK_TOKEN'),
            timeout=timeout,
        )
    elif name == 'stripe':
        from .stripe_gateway import StripeGateway
        gateway = StripeGateway(
            secret_key=config.get('STRIPE_SECRET_KEY'),
            webhook_secret=config.get('STRIPE_WEBHOOK_SECRET'),
            timeout=timeout,
        )
    elif name == 'mock':
        gateway = MockGateway(
            webhook_secret=config.get('WEBHOOK_SECRET'),
            settle_seconds=config.get('MOCK_SETTLE_SECONDS', 30),
            card_decline_rate=config.get('MOCK_CARD_DECLINE_RATE', 0.1),
            subaccount_status=config.get('MOCK_SUBACCOUNT_STATUS', 'active'),
            seed=config.get('MOCK_RANDOM_SEED', 42),
        )
    else:
        raise ValueError(f'PAYMENT_GATEWAY desconhecido: {name}')

    logger.info(f"Gateway de pagamento: {gateway.name}")
    return gateway


__all__ = [
    'PaymentGateway', 'Payer', 'ChargeRequest', 'ChargeResult', 'TransferResult',
    'SubaccountResult', 'WebhookEvent', 'MockGateway', 'build_gateway',
]
