"""
Interface do gateway de pagamento

Toda resposta do gateway é normalizada aqui, na borda, nos dataclasses
abaixo. Payload malformado vira GatewayError e não chega ao resto do sistema.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from endurance_billing.exceptions import GatewayError
from endurance_billing.utils.dates import parse_datetime

PENDING = 'pending'
CONFIRMED = 'confirmed'
FAILED = 'failed'
CANCELLED = 'cancelled'
PAYMENT_STATUSES = (PENDING, CONFIRMED, FAILED, CANCELLED)

SUBACCOUNT_STATUSES = ('pending', 'active', 'suspended')


@dataclass
class Payer:
    user_id: str
    name: str = ''
    email: str = ''
    cpf_cnpj: str = ''
    phone: str = ''
    postal_code: str = ''
    address_number: str = ''
    customer_id: Optional[str] = None

    @classmethod
    def from_dict(cls, user_id, data):
        data = data or {}
        return cls(
            user_id=str(user_id),
            name=(data.get('name') or '').strip(),
            email=(data.get('email') or '').strip(),
            cpf_cnpj=(data.get('cpfCnpj') or data.get('cpf_cnpj') or '').strip(),
            phone=(data.get('phone') or data.get('mobilePhone') or '').strip(),
            postal_code=(data.get('postalCode') or data.get('postal_code') or '').strip(),
            address_number=(data.get('addressNumber') or data.get('address_number') or '').strip(),
            customer_id=data.get('customerId') or data.get('customer_id'),
        )


@dataclass
class ChargeRequest:
    amount: int
    method: str
    payer: Payer
    reference: str  # chave de idempotência, repassada ao gateway
    description: str = ''
    due_date: Optional[datetime] = None
    card: Optional[object] = None  # CreditCard, nunca persistido
    installment_count: Optional[int] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ChargeResult:
    external_payment_id: str
    status: str
    pix_qr_code: Optional[str] = None
    pix_copy_paste: Optional[str] = None
    bank_slip_url: Optional[str] = None
    due_date: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if not self.external_payment_id:
            raise GatewayError('Gateway não retornou o id do pagamento')
        if self.status not in PAYMENT_STATUSES:
            raise GatewayError(f'Status de pagamento desconhecido: {self.status!r}')


@dataclass
class TransferResult:
    external_transfer_id: str
    status: str

    def __post_init__(self):
        if not self.external_transfer_id:
            raise GatewayError('Gateway não retornou o id da transferência')


@dataclass
class SubaccountResult:
    subaccount_id: str
    wallet_id: str
    status: str

    def __post_init__(self):
        if not self.subaccount_id or not self.wallet_id:
            raise GatewayError('Gateway não retornou subaccount_id/wallet_id')
        if self.status not in SUBACCOUNT_STATUSES:
            raise GatewayError(f'Status de subconta desconhecido: {self.status!r}')


@dataclass
class WebhookEvent:
    event: str
    external_payment_id: str
    status: Optional[str]  # None = evento que o motor ignora (ex.: estorno)
    paid_at: Optional[datetime] = None
    reference: Optional[str] = None  # chave de idempotência enviada na criação

    def __post_init__(self):
        if not self.external_payment_id:
            raise GatewayError('Webhook sem id de pagamento')
        if self.status is not None and self.status not in PAYMENT_STATUSES:
            raise GatewayError(f'Status de webhook desconhecido: {self.status!r}')


def load_json_object(body, source='gateway'):
    """Corpo JSON que precisa ser um objeto; qualquer outra coisa é GatewayError"""
    try:
        payload = json.loads(body or b'{}')
    except ValueError as exc:
        raise GatewayError(f'JSON inválido ({source}): {exc}') from exc
    if not isinstance(payload, dict):
        raise GatewayError(f'Payload inesperado ({source}): esperado objeto JSON')
    return payload


def gateway_datetime(value, field_name='data'):
    try:
        return parse_datetime(value)
    except (TypeError, ValueError) as exc:
        raise GatewayError(f'Campo {field_name} com data inválida: {value!r}') from exc


class PaymentGateway(ABC):
    """Contrato comum dos gateways (mock, Asaas, Stripe)"""

    name = 'base'

    @abstractmethod
    def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Cria a cobrança. Cartão resolve na hora; PIX/boleto ficam pendentes."""

    def find_charge(self, reference: str) -> Optional[ChargeResult]:
        """
        Procura uma cobrança já criada com esta referência. Usado ao retomar
        um checkout cuja chamada anterior terminou sem resposta.
        """
        return None

    @abstractmethod
    def create_split_transfer(self, external_payment_id: str, wallet_id: str,
                              amount: int, reference: str) -> TransferResult:
        """Transfere a parte do treinador para a subconta"""

    def find_transfer(self, reference: str, external_payment_id: Optional[str] = None) -> Optional[TransferResult]:
        """
        Procura uma transferência já enviada com esta referência. Uma
        transferência que terminou em timeout pode ter sido executada.
        """
        return None

    @abstractmethod
    def query_status(self, external_payment_id: str) -> Optional[str]:
        """Status atual do pagamento no gateway (normalizado)"""

    @abstractmethod
    def create_subaccount(self, coach) -> SubaccountResult:
        pass

    @abstractmethod
    def get_subaccount(self, subaccount_id: str) -> SubaccountResult:
        pass

    @abstractmethod
    def cancel_charge(self, external_payment_id: str) -> None:
        pass

    @abstractmethod
    def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        """Autentica e normaliza o webhook; InvalidWebhookSignature se inválido"""
