"""
Ingestion service: the entry point collaborators call.

Wires the normalizer, the FIFO ledger and dust reconciliation together and
serializes work per owner:

    raw fills → normalize_fills → PositionLedger.apply (in time order)
              → reconcile_dust (once per batch) → IngestionSummary

Batches for the same owner never interleave; different owners run
concurrently. Each position mutation commits on its own, so a batch that
fails half-way keeps what it already applied and can simply be retried.
"""
from collections import defaultdict
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import threading

from trade_diary.domain.models import (
    Execution,
    Position,
    PositionStatus,
    RawFill,
    Side,
    SOURCE_IMPORT,
    SOURCE_MANUAL,
    now_ms,
    parse_decimal,
)
from trade_diary.domain.protocols import FillSource, PositionStore
from trade_diary.exceptions import FillSourceError, ValidationError
from trade_diary.ledger.dust import reconcile_dust
from trade_diary.ledger.fifo_matcher import DEFAULT_DUST_EPSILON, PositionLedger
from trade_diary.ledger.metrics import round_money, round_quantity
from trade_diary.ledger.normalizer import normalize_fills, synthesize_exec_id
from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class IngestionSummary:
    """Per-batch counters reported to the scheduling/reporting side."""
    executions_received: int = 0
    buys_created: int = 0
    sell_matches_closed: int = 0
    unmatched_sell_quantity: Decimal = Decimal("0")
    dust_closed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["unmatched_sell_quantity"] = format(self.unmatched_sell_quantity, "f")
        return data


class LedgerService:
    """Owner-serialized facade over PositionLedger."""

    def __init__(
        self,
        store: PositionStore,
        dust_epsilon: Decimal = DEFAULT_DUST_EPSILON,
        default_source: str = SOURCE_IMPORT,
    ):
        self.store = store
        self.ledger = PositionLedger(store, dust_epsilon=dust_epsilon)
        self.dust_epsilon = dust_epsilon
        self.default_source = default_source
        self._owner_locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    @classmethod
    def from_config(cls, store: PositionStore, config) -> "LedgerService":
        """Build from a trade_diary.config.config.Config."""
        return cls(
            store,
            dust_epsilon=config.ledger.dust_epsilon,
            default_source=config.ledger.default_source,
        )

    def _lock_for(self, owner_id: int) -> threading.Lock:
        with self._registry_lock:
            return self._owner_locks[owner_id]

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        owner_id: int,
        fills: Iterable[Union[RawFill, Mapping[str, Any]]],
        source: Optional[str] = None,
    ) -> IngestionSummary:
        """
        Ingest one batch of raw fills for an owner.

        Safe to call again with an overlapping window: buys already ingested
        are skipped.
        """
        source = source or self.default_source
        executions = normalize_fills(fills)

        with self._lock_for(owner_id):
            summary = self._apply_executions(owner_id, executions, source)

        logger.info("Ingestion complete", owner_id=owner_id, source=source, **summary.to_dict())
        return summary

    def sync(self, owner_id: int, fill_source: FillSource) -> IngestionSummary:
        """
        Fetch fills from a collaborator and ingest them.

        Fetch failures propagate unchanged when already FillSourceError;
        other OSError-style failures are wrapped. Prior ledger state is left
        untouched in either case.
        """
        try:
            fills = fill_source.fetch_fills(owner_id)
        except FillSourceError:
            logger.error("Fill fetch failed", owner_id=owner_id, source=fill_source.source)
            raise
        except (OSError, ValueError) as e:
            logger.error("Fill fetch failed", owner_id=owner_id, source=fill_source.source, error=str(e))
            raise FillSourceError(f"Fetching fills from {fill_source.source} failed: {e}") from e
        return self.ingest(owner_id, fills, source=fill_source.source)

    def _apply_executions(
        self, owner_id: int, executions: List[Execution], source: str
    ) -> IngestionSummary:
        summary = IngestionSummary(executions_received=len(executions))
        unmatched = Decimal("0")

        for execution in executions:
            if execution.side == Side.BUY:
                if self.ledger.apply_buy(owner_id, execution, source) is not None:
                    summary.buys_created += 1
            else:
                result = self.ledger.apply_sell(owner_id, execution, source)
                summary.sell_matches_closed += result.closed_count
                unmatched += result.unmatched_quantity

        summary.unmatched_sell_quantity = round_quantity(unmatched)
        summary.dust_closed = len(reconcile_dust(self.store, owner_id, self.dust_epsilon))
        return summary

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def record_manual_buy(
        self,
        owner_id: int,
        symbol: str,
        quantity,
        price,
        fee=Decimal("0"),
        time: Optional[int] = None,
    ) -> Optional[Position]:
        """
        Record a buy entered by hand. Goes through the ledger like any other
        BUY execution, including the idempotency check.
        """
        qty = parse_decimal(quantity)
        px = parse_decimal(price)
        commission = parse_decimal(fee)
        if qty is None or px is None or commission is None:
            raise ValidationError("quantity, price and fee must be numeric")
        time = time if time is not None else now_ms()
        symbol = str(symbol or "").strip().upper()
        try:
            qty = round_quantity(qty)
            round_money(qty * px)
            round_money(commission)
        except InvalidOperation as e:
            raise ValidationError(f"quantity {quantity!r} or price {price!r} out of range") from e

        execution = Execution(
            symbol=symbol,
            side=Side.BUY,
            exec_id=synthesize_exec_id(Side.BUY, symbol, time),
            quantity=qty,
            price=px,
            fee=abs(commission),
            time=time,
        )
        with self._lock_for(owner_id):
            return self.ledger.apply_buy(owner_id, execution, SOURCE_MANUAL)

    def close_position(
        self,
        owner_id: int,
        position_id: int,
        exit_price,
        exit_time: Optional[int] = None,
        exit_commission=Decimal("0"),
    ) -> Position:
        """Manually close one OPEN position (see PositionLedger.close_manually)."""
        with self._lock_for(owner_id):
            return self.ledger.close_manually(
                owner_id,
                position_id,
                exit_price,
                exit_time=exit_time,
                exit_commission=exit_commission,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_positions(self, owner_id: int, status: Optional[PositionStatus] = None) -> List[Position]:
        return self.store.list_positions(owner_id, status)
