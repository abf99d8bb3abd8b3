"""Денежные расчёты для оценки имущества."""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

_TWO_PLACES = Decimal("0.01")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def round_money(value: Any) -> Decimal:
    return _to_decimal(value).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def line_total(qty: Any, price: Any) -> Decimal:
    """Стоимость позиции: количество × цена, с округлением до копеек."""

    return round_money(_to_decimal(qty) * _to_decimal(price))


def total_value(lines: Iterable[tuple[Any, Any]]) -> Decimal:
    """Сумма ``qty * price`` по всем позициям."""

    total = sum((line_total(qty, price) for qty, price in lines), Decimal("0"))
    return round_money(total)


def format_money(value: Any, symbol: str = "R") -> str:
    """Отформатировать сумму с разделителями тысяч."""

    amount = round_money(value)
    formatted = f"{amount:,.2f}".replace(",", " ")
    return f"{symbol} {formatted}"
