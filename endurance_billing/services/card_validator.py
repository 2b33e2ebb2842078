# endurance_billing/services/card_validator.py
"""
Validação de dados de cartão de crédito

Função pura: nenhuma chamada de rede, nenhum efeito colateral.
Retorna TODAS as regras violadas para o formulário exibir de uma vez.
"""
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional


@dataclass
class CreditCard:
    holder_name: str = ''
    number: str = ''
    expiry_month: str = ''
    expiry_year: str = ''
    cvv: str = ''

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            holder_name=str(data.get('holderName') or data.get('holder_name') or ''),
            number=str(data.get('number') or ''),
            expiry_month=str(data.get('expiryMonth') or data.get('expiry_month') or ''),
            expiry_year=str(data.get('expiryYear') or data.get('expiry_year') or ''),
            cvv=str(data.get('ccv') or data.get('cvv') or ''),
        )

    @property
    def digits(self):
        """Número sem espaços e traços; outros caracteres são mantidos e reprovam a validação"""
        return _strip_separators(self.number)

    def masked(self):
        """Representação segura para logs e snapshots"""
        digits = self.digits
        return {
            'holderName': self.holder_name,
            'last4': digits[-4:] if len(digits) >= 4 else '',
            'expiryMonth': self.expiry_month,
            'expiryYear': self.expiry_year,
        }


@dataclass
class CardValidationResult:
    violations: List[str] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.violations


def _strip_separators(value: str) -> str:
    return re.sub(r'[\s-]+', '', value or '')


def _is_ascii_digits(value: str) -> bool:
    return bool(re.fullmatch(r'[0-9]+', value or ''))


def luhn_check(number: str) -> bool:
    """
    Algoritmo de Luhn: da direita para a esquerda, dobra um dígito sim
    outro não (subtraindo 9 quando passa de 9); válido se soma % 10 == 0.
    """
    if not _is_ascii_digits(number):
        return False

    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def _parse_expiry(month: str, year: str):
    month = (month or '').strip()
    year = (year or '').strip()
    if not month.isdigit() or not year.isdigit():
        return None
    exp_month = int(month)
    exp_year = int(year)
    if len(year) == 2:
        exp_year += 2000
    if not 1 <= exp_month <= 12:
        return None
    return exp_month, exp_year


def validate_card(card: Optional[CreditCard], today: Optional[date] = None) -> CardValidationResult:
    """Valida os campos do cartão contra todas as regras"""
    result = CardValidationResult()
    if card is None:
        result.violations.append('Dados do cartão são obrigatórios')
        return result

    today = today or date.today()

    if not card.holder_name.strip():
        result.violations.append('Nome do titular é obrigatório')

    digits = card.digits
    if digits and not _is_ascii_digits(digits):
        result.violations.append('Número do cartão deve conter apenas dígitos')
    elif not 13 <= len(digits) <= 19:
        result.violations.append('Número do cartão deve ter entre 13 e 19 dígitos')
    elif not luhn_check(digits):
        result.violations.append('Número do cartão inválido')

    expiry = _parse_expiry(card.expiry_month, card.expiry_year)
    if expiry is None:
        result.violations.append('Data de validade inválida')
    else:
        exp_month, exp_year = expiry
        if (exp_year, exp_month) < (today.year, today.month):
            result.violations.append('Cartão vencido')

    cvv = (card.cvv or '').strip()
    if not (cvv.isdigit() and 3 <= len(cvv) <= 4):
        result.violations.append('CVV deve ter 3 ou 4 dígitos')

    return result
