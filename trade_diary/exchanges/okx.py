"""
OKX spot fills → RawFill.

Maps rows of ``/api/v5/trade/fills-history`` and ``fills-archive``
(instType=SPOT). OKX reports fees as negative numbers (a charge) in
``feeCcy``; buys are usually charged in the base currency.
"""
from typing import Any, Iterable, List, Mapping

from trade_diary.domain.models import RawFill, parse_decimal, parse_side


def normalize_inst_id(inst_id: str) -> str:
    """'BTC-USDT' → 'BTCUSDT'."""
    return str(inst_id or "").replace("-", "").strip().upper()


def parse_fill(row: Mapping[str, Any]) -> RawFill:
    """Map one OKX fill row."""
    inst_id = str(row.get("instId") or "").strip().upper()
    base_ccy = inst_id.split("-")[0] if "-" in inst_id else ""
    price = parse_decimal(row.get("fillPx"))
    fee = parse_decimal(row.get("fee"))
    fee_ccy = str(row.get("feeCcy") or "").strip().upper()

    if fee is not None:
        fee = abs(fee)
        if base_ccy and fee_ccy == base_ccy and price is not None:
            fee = fee * price

    ts = parse_decimal(row.get("ts") or row.get("fillTime"))
    exec_id = row.get("tradeId") or row.get("billId")
    return RawFill(
        symbol=normalize_inst_id(inst_id),
        side=parse_side(row.get("side")),
        quantity=parse_decimal(row.get("fillSz")),
        price=price,
        fee=fee,
        time=int(ts) if ts is not None else None,
        order_id=str(row["ordId"]) if row.get("ordId") else None,
        exec_id=str(exec_id) if exec_id else None,
    )


def parse_fills(rows: Iterable[Mapping[str, Any]]) -> List[RawFill]:
    return [parse_fill(row) for row in rows]
