"""
Position ledger: FIFO matching of executions against positions.

The ledger is the only writer of position lifecycle state:

    BUY execution   → one new OPEN position (skipped if its exec id was
                      already ingested for the owner)
    SELL execution  → closes the oldest OPEN positions for the symbol first,
                      splitting the last one touched on a partial match
    manual close    → closes one OPEN position at a caller-supplied price

Status only moves OPEN → CLOSED. Positions are never deleted.

Replays are harmless: a BUY whose exec id already opened a position and a
SELL whose exec id already closed one are both skipped, and a sell only
considers positions entered at or before its own time.

Commission proration on a sell:
    entry share = position.commission / position.quantity × matched
                  (current values, which already reflect earlier splits)
    exit share  = execution.fee / execution.quantity × matched
                  (one sell may close several positions)

Executions must arrive in the normalizer's chronological order; out of
order processing breaks FIFO semantics.
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from trade_diary.domain.models import (
    Execution,
    Position,
    PositionStatus,
    Side,
    SOURCE_IMPORT,
    now_ms,
    parse_decimal,
)
from trade_diary.domain.protocols import PositionStore
from trade_diary.exceptions import (
    PositionClosedError,
    PositionNotFoundError,
    ValidationError,
)
from trade_diary.ledger.metrics import (
    ClosedMetrics,
    close_metrics,
    round_money,
    round_quantity,
)
from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_DUST_EPSILON = Decimal("0.000001")


@dataclass
class SellMatchResult:
    """Outcome of matching one SELL execution."""
    closed_count: int = 0
    unmatched_quantity: Decimal = Decimal("0")
    closed_positions: List[Position] = field(default_factory=list)
    replayed: bool = False


def _apply_close(position: Position, metrics: ClosedMetrics, **changes) -> Position:
    return replace(
        position,
        status=PositionStatus.CLOSED,
        remaining_quantity=Decimal("0"),
        invested_amount=metrics.invested,
        received_amount=metrics.received,
        commission_amount=metrics.commission,
        profit_loss=metrics.profit_loss,
        profit_loss_percent=metrics.profit_loss_percent,
        duration_minutes=metrics.duration_minutes,
        **changes,
    )


class PositionLedger:
    """FIFO matcher over a PositionStore."""

    def __init__(self, store: PositionStore, dust_epsilon: Decimal = DEFAULT_DUST_EPSILON):
        if dust_epsilon <= 0:
            raise ValueError(f"dust_epsilon must be positive, got {dust_epsilon}")
        self.store = store
        self.dust_epsilon = dust_epsilon

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def apply_buy(self, owner_id: int, execution: Execution, source: str = SOURCE_IMPORT) -> Optional[Position]:
        """
        Open a position from a BUY execution.

        Returns the new position, or None when the execution was already
        ingested for this owner.
        """
        if execution.side != Side.BUY:
            raise ValidationError(f"apply_buy called with {execution.side.value} execution")

        existing = self.store.find_by_buy_exec_id(owner_id, execution.exec_id)
        if existing is not None:
            logger.debug(
                "Buy execution already ingested, skipping",
                owner_id=owner_id,
                symbol=execution.symbol,
                exec_id=execution.exec_id,
                position_id=existing.id,
            )
            return None

        position = self.store.insert(
            Position(
                owner_id=owner_id,
                symbol=execution.symbol,
                status=PositionStatus.OPEN,
                quantity=execution.quantity,
                remaining_quantity=execution.quantity,
                entry_price=execution.price,
                entry_time=execution.time,
                invested_amount=round_money(execution.quantity * execution.price),
                commission_amount=execution.fee,
                buy_exec_id=execution.exec_id,
                source=source,
                created_at=now_ms(),
            )
        )
        logger.info(
            "Position opened",
            owner_id=owner_id,
            position_id=position.id,
            symbol=position.symbol,
            quantity=str(position.quantity),
            entry_price=str(position.entry_price),
            exec_id=execution.exec_id,
        )
        return position

    def apply_sell(self, owner_id: int, execution: Execution, source: str = SOURCE_IMPORT) -> SellMatchResult:
        """
        Match a SELL execution against OPEN positions, oldest first.

        Quantity left over when no OPEN position remains is reported as
        ``unmatched_quantity`` (holdings acquired outside the tracked window).
        A sell whose exec id already closed a position for this owner is a
        replay and is skipped.
        """
        if execution.side != Side.SELL:
            raise ValidationError(f"apply_sell called with {execution.side.value} execution")

        result = SellMatchResult()

        already = self.store.find_by_sell_exec_id(owner_id, execution.exec_id)
        if already is not None:
            result.replayed = True
            logger.debug(
                "Sell execution already matched, skipping",
                owner_id=owner_id,
                symbol=execution.symbol,
                exec_id=execution.exec_id,
                position_id=already.id,
            )
            return result

        eps = self.dust_epsilon
        still_to_close = execution.quantity
        exit_fee_per_unit = execution.fee / execution.quantity

        while still_to_close > eps:
            # A sell never closes a position opened after it
            position = self.store.next_open_position(
                owner_id, execution.symbol, opened_by=execution.time
            )
            if position is None:
                break

            remaining = position.remaining_quantity
            matched = min(remaining, still_to_close)

            entry_commission = (
                position.commission_amount / position.quantity * matched
                if position.quantity > 0
                else Decimal("0")
            )
            exit_commission = exit_fee_per_unit * matched

            metrics = close_metrics(
                quantity=matched,
                entry_price=position.entry_price,
                exit_price=execution.price,
                entry_commission=entry_commission,
                exit_commission=exit_commission,
                entry_time=position.entry_time,
                exit_time=execution.time,
            )

            if remaining - matched <= eps:
                closed = self.store.update(
                    _apply_close(
                        position,
                        metrics,
                        quantity=matched,
                        exit_price=execution.price,
                        exit_time=execution.time,
                        sell_exec_id=execution.exec_id,
                    )
                )
            else:
                closed = self._split(position, matched, metrics, execution, source)

            result.closed_positions.append(closed)
            result.closed_count += 1
            still_to_close = round_quantity(still_to_close - matched)

            logger.info(
                "Position closed by sell",
                owner_id=owner_id,
                position_id=closed.id,
                symbol=execution.symbol,
                matched_quantity=str(matched),
                exit_price=str(execution.price),
                profit_loss=str(metrics.profit_loss),
                split=closed.id != position.id,
                exec_id=execution.exec_id,
            )

        if still_to_close > eps:
            result.unmatched_quantity = still_to_close
            logger.info(
                "Sell quantity without matching open position",
                owner_id=owner_id,
                symbol=execution.symbol,
                unmatched_quantity=str(still_to_close),
                exec_id=execution.exec_id,
            )

        return result

    def _split(
        self,
        position: Position,
        matched: Decimal,
        metrics: ClosedMetrics,
        execution: Execution,
        source: str,
    ) -> Position:
        """
        Shrink ``position`` by ``matched`` and record the matched slice as a
        new CLOSED position. The original keeps its id for the unmatched
        remainder.
        """
        commission_per_unit = position.commission_amount / position.quantity
        remaining_after = round_quantity(position.remaining_quantity - matched)
        quantity_after = round_quantity(position.quantity - matched)

        remainder = replace(
            position,
            quantity=quantity_after,
            remaining_quantity=remaining_after,
            invested_amount=round_money(quantity_after * position.entry_price),
            commission_amount=round_money(commission_per_unit * quantity_after),
        )
        closed_slice = Position(
            owner_id=position.owner_id,
            symbol=position.symbol,
            status=PositionStatus.CLOSED,
            quantity=matched,
            remaining_quantity=Decimal("0"),
            entry_price=position.entry_price,
            entry_time=position.entry_time,
            exit_price=execution.price,
            exit_time=execution.time,
            invested_amount=metrics.invested,
            received_amount=metrics.received,
            commission_amount=metrics.commission,
            profit_loss=metrics.profit_loss,
            profit_loss_percent=metrics.profit_loss_percent,
            duration_minutes=metrics.duration_minutes,
            buy_exec_id=position.buy_exec_id,
            sell_exec_id=execution.exec_id,
            source=source,
            created_at=now_ms(),
        )
        _, closed = self.store.apply_split(remainder, closed_slice)
        return closed

    # ------------------------------------------------------------------
    # Manual close
    # ------------------------------------------------------------------

    def close_manually(
        self,
        owner_id: int,
        position_id: int,
        exit_price,
        exit_time: Optional[int] = None,
        exit_commission=Decimal("0"),
    ) -> Position:
        """
        Close one OPEN position at a caller-supplied price, bypassing FIFO.

        Raises:
            ValidationError: exit price not positive, exit time invalid, or
                figures too large for decimal precision
            PositionNotFoundError: no such position for this owner
            PositionClosedError: position is already CLOSED
        """
        price = parse_decimal(exit_price)
        if price is None or price <= 0:
            raise ValidationError(f"exit_price must be positive, got {exit_price!r}")
        commission = parse_decimal(exit_commission)
        if commission is None:
            raise ValidationError(f"exit_commission must be numeric, got {exit_commission!r}")
        commission = abs(commission)
        if exit_time is None:
            exit_time = now_ms()
        elif exit_time <= 0:
            raise ValidationError(f"exit_time must be positive, got {exit_time!r}")

        position = self.store.get(owner_id, position_id)
        if position is None:
            raise PositionNotFoundError(f"Position {position_id} not found")
        if not position.is_open:
            raise PositionClosedError(f"Position {position_id} is already closed")

        try:
            metrics = close_metrics(
                quantity=position.quantity,
                entry_price=position.entry_price,
                exit_price=price,
                entry_commission=position.commission_amount,
                exit_commission=commission,
                entry_time=position.entry_time,
                exit_time=exit_time,
            )
        except InvalidOperation as e:
            raise ValidationError(f"exit figures out of range for position {position_id}") from e
        closed = self.store.update(
            _apply_close(position, metrics, exit_price=price, exit_time=exit_time)
        )
        logger.info(
            "Position closed manually",
            owner_id=owner_id,
            position_id=position_id,
            symbol=closed.symbol,
            exit_price=str(price),
            profit_loss=str(metrics.profit_loss),
        )
        return closed
