"""
Taxonomia de erros do motor de cobrança.

Erros de validação e configuração voltam para quem chamou com detalhe
suficiente para corrigir a requisição. Erros de gateway e provisionamento
podem ser repetidos com a mesma chave de idempotência. Conflitos de
reconciliação nunca são resolvidos automaticamente.
"""


class BillingError(Exception):
    """Erro base do motor de cobrança"""

    code = 'billing_error'
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(BillingError):
    """Dados da requisição inválidos"""

    code = 'validation_error'

    def __init__(self, violations):
        if isinstance(violations, str):
            violations = [violations]
        self.violations = list(violations)
        super().__init__('; '.join(self.violations))


class PriceNotConfigured(BillingError):
    """Plano sem preço configurado para o período"""

    code = 'price_not_configured'

    def __init__(self, plan_id, period):
        self.plan_id = plan_id
        self.period = period
        super().__init__(f'Plano {plan_id} não tem preço para o período {period}')


class UnknownTier(BillingError):
    """Treinador sem nível de comissão reconhecido"""

    code = 'unknown_tier'

    def __init__(self, tier, coach_id=None):
        self.tier = tier
        self.coach_id = coach_id
        super().__init__(f'Nível de comissão desconhecido: {tier!r} (coach={coach_id})')


class ProvisioningError(BillingError):
    """Falha ao criar ou buscar a subconta do treinador"""

    code = 'provisioning_error'
    retryable = True


class GatewayError(BillingError):
    """Falha na chamada ao gateway de pagamento"""

    code = 'gateway_error'
    retryable = True


class GatewayTimeout(GatewayError):
    """Gateway não respondeu dentro do tempo limite"""

    code = 'gateway_timeout'


class GatewayRejected(GatewayError):
    """Gateway recusou explicitamente a operação"""

    code = 'gateway_rejected'
    retryable = False


class CheckoutInProgress(BillingError):
    """Já existe um checkout em andamento com esta chave"""

    code = 'checkout_in_progress'
    retryable = True


class PaymentNotFound(BillingError):
    """Pagamento não encontrado"""

    code = 'payment_not_found'


class ReconciliationConflict(BillingError):
    """Gateway reportou status terminal diferente do armazenado"""

    code = 'reconciliation_conflict'

    def __init__(self, payment_id, stored_status, reported_status):
        self.payment_id = payment_id
        self.stored_status = stored_status
        self.reported_status = reported_status
        super().__init__(
            f'Pagamento {payment_id}: armazenado={stored_status}, gateway={reported_status}'
        )


class InvalidWebhookSignature(BillingError):
    """Assinatura do webhook inválida"""

    code = 'invalid_webhook_signature'
