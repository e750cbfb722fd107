"""
Diary statistics.

Simple aggregation over an owner's positions. P/L figures come from CLOSED
positions only; OPEN positions count towards totals. Dust closures are
bookkeeping, not trades, and are left out entirely.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List

from trade_diary.domain.models import Position, PositionStatus, SOURCE_DUST
from trade_diary.ledger.metrics import round_money

_ZERO = Decimal("0")


@dataclass(frozen=True)
class DiaryStats:
    total_trades: int
    open_trades: int
    closed_trades: int
    total_pl: Decimal
    avg_pl: Decimal
    avg_pl_percent: Decimal
    avg_duration_minutes: int
    avg_win: Decimal
    avg_loss: Decimal
    win_rate_percent: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            k: (str(v) if isinstance(v, Decimal) else v)
            for k, v in asdict(self).items()
        }


def _mean(values: List[Decimal]) -> Decimal:
    if not values:
        return _ZERO
    return sum(values, _ZERO) / len(values)


def compute_stats(positions: Iterable[Position]) -> DiaryStats:
    """
    Aggregate trade statistics.

    Wins are closed positions with P/L > 0, losses those with P/L < 0;
    breakeven trades count in the denominator of the win rate only.
    """
    positions = [p for p in positions if p.source != SOURCE_DUST]
    closed = [p for p in positions if p.status == PositionStatus.CLOSED]
    open_count = sum(1 for p in positions if p.status == PositionStatus.OPEN)

    pls = [p.profit_loss or _ZERO for p in closed]
    pl_percents = [p.profit_loss_percent or _ZERO for p in closed]
    durations = [Decimal(p.duration_minutes or 0) for p in closed]
    wins = [pl for pl in pls if pl > 0]
    losses = [pl for pl in pls if pl < 0]

    win_rate = Decimal(len(wins)) / len(closed) * 100 if closed else _ZERO

    return DiaryStats(
        total_trades=len(positions),
        open_trades=open_count,
        closed_trades=len(closed),
        total_pl=round_money(sum(pls, _ZERO)),
        avg_pl=round_money(_mean(pls)),
        avg_pl_percent=round_money(_mean(pl_percents)),
        avg_duration_minutes=int(_mean(durations).quantize(Decimal(1), rounding=ROUND_HALF_UP)),
        avg_win=round_money(_mean(wins)),
        avg_loss=round_money(_mean(losses)),
        win_rate_percent=round_money(win_rate),
    )
