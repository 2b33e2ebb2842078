"""
Montagem dos serviços a partir da configuração da aplicação.
Nenhum serviço lê current_app diretamente: tudo chega pelo construtor.
"""
from flask import current_app


def get_gateway():
    return current_app.extensions['payment_gateway']


def get_provisioner():
    from .subaccount_service import SubaccountProvisioner
    return SubaccountProvisioner(
        get_gateway(),
        claim_lease_seconds=current_app.config['SUBACCOUNT_CLAIM_LEASE_SECONDS'],
    )


def get_transfer_service():
    from .transfer_service import SplitTransferService
    return SplitTransferService(
        get_gateway(),
        provisioner=get_provisioner(),
        claim_lease_seconds=current_app.config['TRANSFER_CLAIM_LEASE_SECONDS'],
    )


def get_reconciler():
    from .reconciliation_service import PaymentStatusReconciler
    from .subscription_service import SubscriptionActivator
    config = current_app.config
    return PaymentStatusReconciler(
        get_gateway(),
        activator=SubscriptionActivator(),
        transfers=get_transfer_service(),
        pending_after_seconds=config['RECONCILE_PENDING_AFTER_SECONDS'],
        batch_size=config['RECONCILE_BATCH_SIZE'],
    )


def get_checkout_service():
    from .checkout_service import CheckoutOrchestrator
    from .pricing_service import PricingResolver
    from .split_service import SplitCalculator
    from .subscription_service import SubscriptionActivator
    config = current_app.config
    return CheckoutOrchestrator(
        gateway=get_gateway(),
        pricing=PricingResolver(config['ENROLLMENT_FEE_CENTS']),
        splitter=SplitCalculator(config['COMMISSION_PERCENTAGES']),
        provisioner=get_provisioner(),
        activator=SubscriptionActivator(),
        transfers=get_transfer_service(),
        lease_seconds=config['CHECKOUT_LEASE_SECONDS'],
        bucket_seconds=config['IDEMPOTENCY_BUCKET_SECONDS'],
        pix_due_minutes=config['PIX_DUE_MINUTES'],
        boleto_due_days=config['BOLETO_DUE_DAYS'],
    )
