"""Parsing helpers for amounts, quantities and dates received as JSON."""
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

AR_DECIMAL_PATTERN = re.compile(r"^(?:\d{1,3}(?:\.\d{3})+|\d+),\d{1,2}$")


def parse_money(value, allow_negative: bool = False, maximum: Optional[Decimal] = None) -> Decimal:
    """
    Parse a monetary value to Decimal without rounding it.

    Accepts JSON numbers, numeric strings ("12.50") and strings in the
    comma-decimal format used by the POS money inputs ("1.234,56").

    Raises:
        ValueError: if the value is empty, not numeric, negative or above ``maximum``.
    """
    if value is None or isinstance(value, bool):
        raise ValueError('Monto inválido')

    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            raise ValueError('Monto inválido')
        if AR_DECIMAL_PATTERN.match(cleaned):
            cleaned = cleaned.replace('.', '').replace(',', '.')
    else:
        cleaned = str(value)

    try:
        decimal_value = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        raise ValueError('Monto inválido')

    if not decimal_value.is_finite():
        raise ValueError('Monto inválido')
    if decimal_value < 0 and not allow_negative:
        raise ValueError('El valor no puede ser negativo')
    if maximum is not None and decimal_value > maximum:
        raise ValueError(f'El valor supera el máximo permitido ({maximum})')

    return decimal_value


def parse_quantity(value, minimum: int = 1) -> int:
    """
    Parse a unit count. Integral floats/strings ("3", 3.0) are accepted,
    fractional ones are not.

    Raises:
        ValueError: if the value is not an integer >= minimum.
    """
    if value is None or isinstance(value, bool):
        raise ValueError('Cantidad inválida')
    if isinstance(value, int):
        quantity = value
    else:
        try:
            decimal_value = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError('Cantidad inválida')
        if not decimal_value.is_finite() or decimal_value != decimal_value.to_integral_value():
            raise ValueError('La cantidad debe ser un número entero')
        quantity = int(decimal_value)

    if quantity < minimum:
        raise ValueError(f'La cantidad debe ser mayor o igual a {minimum}')
    return quantity


def parse_optional_int(value, minimum: int = 0) -> Optional[int]:
    """Like parse_quantity but None/'' mean "not set"."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_quantity(value, minimum=minimum)


def parse_date(value) -> Optional[date]:
    """
    Parse an ISO date ("2024-03-01"); a full ISO timestamp keeps its date part.

    Raises:
        ValueError: if the value is not a valid date.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError('Fecha inválida. Usá AAAA-MM-DD')

    cleaned = value.strip()
    try:
        return date.fromisoformat(cleaned[:10])
    except ValueError:
        raise ValueError('Fecha inválida. Usá AAAA-MM-DD')
