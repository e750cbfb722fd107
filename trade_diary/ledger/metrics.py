"""
Close metrics for a position slice.

Pure functions shared by the FIFO close path, the partial-close (split) path
and manual closes.

Rounding:
- Money (invested, received, commission, P/L, P/L %) to 6 decimal places.
- Quantities to 12 decimal places.
Both round half away from zero. Inputs are coerced through ``str`` into
Decimal so float inputs carry no binary representation error into the
rounding step.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Union

MONEY_PLACES = 6
QUANTITY_PLACES = 12

_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)
_QUANTITY_QUANTUM = Decimal(1).scaleb(-QUANTITY_PLACES)
_MS_PER_MINUTE = Decimal("60000")

Number = Union[Decimal, int, float, str]


def _dec(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    """Round a money figure to 6 places, half away from zero."""
    return _dec(value).quantize(_MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def round_quantity(value: Number) -> Decimal:
    """Round a quantity to 12 places, half away from zero."""
    return _dec(value).quantize(_QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)


def duration_minutes(entry_time: int, exit_time: int) -> int:
    """Whole minutes between two epoch-ms timestamps, never negative."""
    minutes = (Decimal(exit_time) - Decimal(entry_time)) / _MS_PER_MINUTE
    return max(0, int(minutes.quantize(Decimal(1), rounding=ROUND_HALF_UP)))


@dataclass(frozen=True)
class ClosedMetrics:
    """Economic outcome of closing ``quantity`` units of a position."""
    invested: Decimal
    received: Decimal
    commission: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal
    duration_minutes: int


def close_metrics(
    quantity: Number,
    entry_price: Number,
    exit_price: Number,
    entry_commission: Number,
    exit_commission: Number,
    entry_time: int,
    exit_time: int,
) -> ClosedMetrics:
    """
    Compute close metrics for a quantity bought at ``entry_price`` and sold
    at ``exit_price``.

    Commission is the sum of the (already prorated) entry and exit
    commissions. P/L is net of commission. P/L percent is relative to the
    invested amount and is 0 when nothing was invested.
    """
    qty = _dec(quantity)
    invested = round_money(qty * _dec(entry_price))
    received = round_money(qty * _dec(exit_price))
    commission = round_money(_dec(entry_commission) + _dec(exit_commission))
    profit_loss = round_money(received - invested - commission)

    if invested > 0:
        profit_loss_percent = round_money(profit_loss / invested * 100)
    else:
        profit_loss_percent = round_money(0)

    return ClosedMetrics(
        invested=invested,
        received=received,
        commission=commission,
        profit_loss=profit_loss,
        profit_loss_percent=profit_loss_percent,
        duration_minutes=duration_minutes(entry_time, exit_time),
    )
