"""
Dust reconciliation.

Repeated proration can leave OPEN positions holding a remaining quantity
below any economically meaningful size. Left alone they would inflate the
open-position count and stall the symbol's FIFO queue, so after every
ingestion batch they are force-closed with zero economic impact.
"""
from dataclasses import replace
from decimal import Decimal
from typing import List

from trade_diary.domain.models import Position, PositionStatus, SOURCE_DUST
from trade_diary.domain.protocols import PositionStore
from trade_diary.ledger.metrics import round_money
from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)


def close_as_dust(position: Position) -> Position:
    """Zeroed, CLOSED copy of a dust position, tagged with the dust source."""
    zero_money = round_money(0)
    zero_qty = Decimal("0")
    return replace(
        position,
        status=PositionStatus.CLOSED,
        quantity=zero_qty,
        remaining_quantity=zero_qty,
        invested_amount=zero_money,
        received_amount=zero_money,
        commission_amount=zero_money,
        profit_loss=zero_money,
        profit_loss_percent=zero_money,
        duration_minutes=0,
        exit_time=position.exit_time if position.exit_time is not None else position.entry_time,
        exit_price=position.exit_price if position.exit_price is not None else position.entry_price,
        source=SOURCE_DUST,
    )


def reconcile_dust(store: PositionStore, owner_id: int, epsilon: Decimal) -> List[Position]:
    """
    Force-close every OPEN position of ``owner_id`` whose remaining quantity
    is within ``epsilon`` of zero.

    Returns:
        The positions closed, in the store's listing order
    """
    closed = []
    for position in store.list_dust_candidates(owner_id, epsilon):
        closed.append(store.update(close_as_dust(position)))
        logger.info(
            "Dust position closed",
            owner_id=owner_id,
            position_id=position.id,
            symbol=position.symbol,
            remaining_quantity=str(position.remaining_quantity),
        )
    return closed
