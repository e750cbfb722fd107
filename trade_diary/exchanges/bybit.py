"""
Bybit execution records → RawFill.

Maps rows of ``/v5/execution/list`` (category=spot). Fetching, signing and
cursor pagination belong to the caller.
"""
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional

from trade_diary.domain.models import RawFill, parse_decimal, parse_side


def _fee_in_quote(
    symbol: str, fee: Optional[Decimal], price: Optional[Decimal], fee_currency: str
) -> Optional[Decimal]:
    """
    Spot buys are charged in the base coin. Convert to quote currency using
    the fill price when the fee currency is the symbol's base.
    """
    if fee is None or not fee_currency or price is None:
        return fee
    if symbol.startswith(fee_currency) and not symbol.endswith(fee_currency):
        return fee * price
    return fee


def parse_execution(row: Mapping[str, Any]) -> RawFill:
    """Map one Bybit execution row."""
    symbol = str(row.get("symbol") or "").strip().upper()
    price = parse_decimal(row.get("execPrice"))
    fee = parse_decimal(row.get("execFee"))
    exec_time = parse_decimal(row.get("execTime"))
    fee_currency = str(row.get("feeCurrency") or "").strip().upper()
    return RawFill(
        symbol=symbol,
        side=parse_side(row.get("side")),
        quantity=parse_decimal(row.get("execQty")),
        price=price,
        fee=_fee_in_quote(symbol, fee, price, fee_currency),
        time=int(exec_time) if exec_time is not None else None,
        order_id=str(row["orderId"]) if row.get("orderId") else None,
        exec_id=str(row["execId"]) if row.get("execId") else None,
    )


def parse_executions(rows: Iterable[Mapping[str, Any]]) -> List[RawFill]:
    return [parse_execution(row) for row in rows]
