"""
Execution normalizer: raw exchange fills to canonical executions.

Exchanges report one order as several partial fills. Matching needs one
execution per order, so fills are grouped and aggregated:

    key      (symbol, side, order_id)            when order_id is present
             (symbol, side, exec_id or time)     otherwise
    quantity sum of fill quantities
    fee      sum of |fill fee|
    price    notional-weighted average (sum(qty * price) / sum(qty))
    time     earliest fill for BUY, latest fill for SELL

A buy "begins" at its first fill and a sell "completes" at its last.

Malformed data is upstream noise, not an error: unparseable fills and groups
that fail Execution validation or exceed decimal precision are dropped
with a DEBUG log. Fill rows
repeated with the same exec_id (overlapping fetch pages) count once.

The output is sorted ascending by time with ties kept in first-seen order,
so the same input always yields the same matching sequence.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from trade_diary.domain.models import Execution, RawFill, Side
from trade_diary.exceptions import ValidationError
from trade_diary.ledger.metrics import round_money, round_quantity
from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)

GroupKey = Tuple[str, Side, str, Optional[str]]


@dataclass
class _FillGroup:
    symbol: str
    side: Side
    order_id: Optional[str]
    exec_id: Optional[str]
    quantity: Decimal = Decimal("0")
    notional: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    times: List[int] = field(default_factory=list)

    def add(self, fill: RawFill) -> None:
        self.quantity += fill.quantity
        self.notional += fill.quantity * fill.price
        self.fee += abs(fill.fee or Decimal("0"))
        if fill.time is not None and fill.time > 0:
            self.times.append(fill.time)

    def representative_time(self) -> Optional[int]:
        if not self.times:
            return None
        return min(self.times) if self.side == Side.BUY else max(self.times)


def group_key(fill: RawFill) -> GroupKey:
    """Grouping key for a fill. Kept stable across re-fetches of the same window."""
    if fill.order_id:
        return (fill.symbol, fill.side, "order", fill.order_id)
    if fill.exec_id:
        return (fill.symbol, fill.side, "exec", fill.exec_id)
    return (fill.symbol, fill.side, "time", str(fill.time) if fill.time is not None else None)


def synthesize_exec_id(side: Side, symbol: str, time: int) -> str:
    """Deterministic execution id for fills that carry neither order nor exec id."""
    return f"{side.value.lower()}_{symbol}_{time}"


def _is_usable(fill: RawFill) -> bool:
    if not fill.symbol or fill.side is None:
        return False
    if fill.quantity is None or fill.price is None:
        return False
    return fill.quantity > 0 and fill.price > 0


def _build_execution(group: _FillGroup) -> Optional[Execution]:
    time = group.representative_time()
    if time is None:
        logger.debug("Dropping fill group without time", symbol=group.symbol, side=group.side.value)
        return None

    try:
        quantity = round_quantity(group.quantity)
        price = round_quantity(group.notional / group.quantity)
        # Notional and fee feed money figures, which must fit as well
        round_money(quantity * price)
        round_money(group.fee)
    except InvalidOperation:
        logger.debug(
            "Dropping fill group outside decimal range",
            symbol=group.symbol,
            quantity=str(group.quantity),
        )
        return None
    if quantity <= 0:
        logger.debug("Dropping fill group with non-positive quantity", symbol=group.symbol)
        return None

    exec_id = group.order_id or group.exec_id or synthesize_exec_id(group.side, group.symbol, time)
    try:
        return Execution(
            symbol=group.symbol,
            side=group.side,
            exec_id=exec_id,
            quantity=quantity,
            price=price,
            fee=group.fee,
            time=time,
            order_id=group.order_id,
        )
    except ValidationError as e:
        logger.debug("Dropping invalid execution", symbol=group.symbol, exec_id=exec_id, error=str(e))
        return None


def normalize_fills(fills: Iterable[Union[RawFill, Mapping[str, Any]]]) -> List[Execution]:
    """
    Collapse raw fills into a chronologically sorted execution sequence.

    Args:
        fills: RawFill instances or plain dicts (see RawFill.from_dict)

    Returns:
        Executions sorted ascending by time (stable)
    """
    groups: Dict[GroupKey, _FillGroup] = {}
    seen_fill_ids: Set[Tuple[str, Side, str]] = set()
    received = 0
    dropped = 0
    duplicates = 0

    for item in fills:
        received += 1
        fill = item if isinstance(item, RawFill) else RawFill.from_dict(item)

        if not _is_usable(fill):
            dropped += 1
            logger.debug("Dropping malformed fill", fill=repr(fill))
            continue

        if fill.exec_id:
            fill_key = (fill.symbol, fill.side, fill.exec_id)
            if fill_key in seen_fill_ids:
                duplicates += 1
                continue
            seen_fill_ids.add(fill_key)

        key = group_key(fill)
        group = groups.get(key)
        if group is None:
            group = _FillGroup(
                symbol=fill.symbol,
                side=fill.side,
                order_id=fill.order_id,
                exec_id=fill.exec_id,
            )
            groups[key] = group
        group.add(fill)

    executions = []
    for group in groups.values():
        execution = _build_execution(group)
        if execution is None:
            dropped += 1
            continue
        executions.append(execution)

    # sorted() is stable: equal times keep first-seen group order
    executions = sorted(executions, key=lambda e: e.time)

    logger.debug(
        "Fills normalized",
        fills_received=received,
        executions=len(executions),
        dropped=dropped,
        duplicate_fills=duplicates,
    )
    return executions
