"""
Conversões de dinheiro. Todo valor interno é inteiro em centavos.
"""
from decimal import Decimal


def cents_to_decimal(amount_cents: int) -> Decimal:
    """Centavos -> Decimal em reais, sem passar por float"""
    return (Decimal(int(amount_cents)) / 100).quantize(Decimal('0.01'))


def format_brl(amount_cents: int) -> str:
    """Formata centavos como moeda brasileira: 25000 -> 'R$ 250,00'"""
    value = cents_to_decimal(amount_cents)
    inteiro, _, centavos = f"{abs(value):.2f}".partition('.')
    grupos = []
    while inteiro:
        grupos.insert(0, inteiro[-3:])
        inteiro = inteiro[:-3]
    sinal = '-' if value < 0 else ''
    return f"{sinal}R$ {'.'.join(grupos)},{centavos}"
