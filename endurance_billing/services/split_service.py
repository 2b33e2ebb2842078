# endurance_billing/services/split_service.py
"""
Divisão do valor entre treinador e plataforma

Regra única de arredondamento do sistema:
    coach_amount    = floor(amount * percentual / 100)
    platform_amount = amount - coach_amount
O resto do arredondamento fica sempre com a plataforma.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from endurance_billing.exceptions import UnknownTier


class CommissionTier(str, Enum):
    JUNIOR = 'junior'
    PLENO = 'pleno'
    SENIOR = 'senior'
    ESPECIALISTA = 'especialista'


DEFAULT_COMMISSION_PERCENTAGES = {
    CommissionTier.JUNIOR.value: 60,
    CommissionTier.PLENO.value: 65,
    CommissionTier.SENIOR.value: 70,
    CommissionTier.ESPECIALISTA.value: 75,
}


@dataclass(frozen=True)
class SplitResult:
    amount: int
    coach_amount: int
    platform_amount: int
    percentage_applied: int

    @property
    def coach_percentage(self):
        return self.percentage_applied

    @property
    def platform_percentage(self):
        return 100 - self.percentage_applied


class SplitCalculator:

    def __init__(self, percentages: Optional[Dict[str, int]] = None):
        table = dict(percentages or DEFAULT_COMMISSION_PERCENTAGES)
        for tier, percentage in table.items():
            if not 0 <= int(percentage) <= 100:
                raise ValueError(f'Percentual inválido para {tier}: {percentage}')
        self.percentages = {str(k).lower(): int(v) for k, v in table.items()}

    def percentage_for(self, tier, coach_id=None) -> int:
        if tier is None:
            raise UnknownTier(tier, coach_id)
        key = tier.value if isinstance(tier, CommissionTier) else str(tier).strip().lower()
        if key not in self.percentages:
            raise UnknownTier(tier, coach_id)
        return self.percentages[key]

    def calculate(self, amount: int, tier=None, has_coach=True, coach_id=None) -> SplitResult:
        """
        Calcula o split. Sem treinador (assinatura autodirigida) tudo vai
        para a plataforma; com treinador o nível precisa ser reconhecido.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError('amount deve ser inteiro em centavos')
        if amount < 0:
            raise ValueError('amount não pode ser negativo')

        if not has_coach:
            return SplitResult(amount=amount, coach_amount=0, platform_amount=amount, percentage_applied=0)

        percentage = self.percentage_for(tier, coach_id)
        coach_amount = (amount * percentage) // 100
        return SplitResult(
            amount=amount,
            coach_amount=coach_amount,
            platform_amount=amount - coach_amount,
            percentage_applied=percentage,
        )
