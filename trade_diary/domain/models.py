"""
Domain models for the trade diary.

These are the core business objects used throughout the application.
Quantities and money are Decimal; timestamps are integer milliseconds
since the Unix epoch (exchange native).
"""
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import time

from trade_diary.exceptions import InvariantError, ValidationError


class Side(str, Enum):
    """Execution side."""
    BUY = "BUY"
    SELL = "SELL"


class PositionStatus(str, Enum):
    """Position lifecycle status. CLOSED is terminal."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# Provenance tags for Position.source
SOURCE_MANUAL = "manual"
SOURCE_IMPORT = "import"
SOURCE_BYBIT = "bybit"
SOURCE_OKX = "okx"
SOURCE_DUST = "dust"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """
    Coerce an exchange-supplied numeric into Decimal.

    Goes through ``str()`` so floats keep their shortest repr instead of the
    full binary expansion. Returns None for missing, non-numeric or
    non-finite input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            return None
    if not result.is_finite():
        return None
    return result


def parse_side(value: Any) -> Optional[Side]:
    """Parse 'buy' / 'Buy' / 'BUY' style sides. Unknown sides return None."""
    if isinstance(value, Side):
        return value
    text = str(value or "").strip().upper()
    try:
        return Side(text)
    except ValueError:
        return None


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


@dataclass(frozen=True)
class RawFill:
    """
    One exchange fill as delivered by a fill source.

    Fields are loosely typed on purpose: a fill that cannot be parsed keeps
    ``None`` in the offending field and is discarded by the normalizer.
    """
    symbol: str
    side: Optional[Side]
    quantity: Optional[Decimal]
    price: Optional[Decimal]
    fee: Optional[Decimal] = None
    time: Optional[int] = None
    order_id: Optional[str] = None
    exec_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawFill":
        """
        Build a RawFill from a generic dict.

        Accepts both snake_case and camelCase keys (``orderId``, ``execId``,
        ``qty``) so JSON exports can be fed in directly.
        """
        raw_time = parse_decimal(_first(data, "time", "timestamp", "exec_time", "execTime"))
        order_id = _first(data, "order_id", "orderId")
        exec_id = _first(data, "exec_id", "execId")
        return cls(
            symbol=str(_first(data, "symbol") or "").strip().upper(),
            side=parse_side(_first(data, "side")),
            quantity=parse_decimal(_first(data, "quantity", "qty")),
            price=parse_decimal(_first(data, "price")),
            fee=parse_decimal(_first(data, "fee", "commission")),
            time=int(raw_time) if raw_time is not None else None,
            order_id=str(order_id) if order_id is not None else None,
            exec_id=str(exec_id) if exec_id is not None else None,
        )


@dataclass(frozen=True)
class Execution:
    """
    Canonical execution produced by the normalizer from one fill group.

    Invalid executions never reach the matcher: the constructor raises
    ValidationError and the normalizer drops the group.
    """
    symbol: str
    side: Side
    exec_id: str
    quantity: Decimal
    price: Decimal
    fee: Decimal
    time: int
    order_id: Optional[str] = None

    def __post_init__(self):
        """Validate execution."""
        if not self.symbol or self.symbol != self.symbol.upper():
            raise ValidationError(f"Execution symbol must be non-empty uppercase: {self.symbol!r}")
        if not isinstance(self.side, Side):
            raise ValidationError(f"Invalid execution side: {self.side!r}")
        if not self.exec_id:
            raise ValidationError("Execution exec_id must be set")
        if self.quantity <= 0:
            raise ValidationError(f"Execution quantity must be positive: {self.quantity}")
        if self.price <= 0:
            raise ValidationError(f"Execution price must be positive: {self.price}")
        if self.fee < 0:
            raise ValidationError(f"Execution fee must be non-negative: {self.fee}")
        if self.time <= 0:
            raise ValidationError(f"Execution time must be positive: {self.time}")


@dataclass
class Position:
    """
    A tracked holding opened by a BUY execution (a "trade" in reports).

    ``commission_amount`` is the entry commission while OPEN and the total
    entry + exit commission once CLOSED.
    """
    owner_id: int
    symbol: str
    status: PositionStatus
    quantity: Decimal
    remaining_quantity: Decimal
    entry_price: Decimal
    entry_time: int
    invested_amount: Decimal
    commission_amount: Decimal = Decimal("0")
    exit_price: Optional[Decimal] = None
    exit_time: Optional[int] = None
    received_amount: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    profit_loss_percent: Optional[Decimal] = None
    duration_minutes: Optional[int] = None
    buy_exec_id: Optional[str] = None
    sell_exec_id: Optional[str] = None
    source: str = SOURCE_MANUAL
    id: Optional[int] = None
    created_at: Optional[int] = None

    def __post_init__(self):
        """Validate position invariants."""
        if not self.symbol:
            raise InvariantError("Position symbol must be non-empty")
        if self.quantity < 0:
            raise InvariantError(f"Position quantity negative: {self.quantity}")
        if self.remaining_quantity < 0 or self.remaining_quantity > self.quantity:
            raise InvariantError(
                f"Position remaining_quantity {self.remaining_quantity} outside [0, {self.quantity}]"
            )
        if self.status == PositionStatus.OPEN:
            if self.remaining_quantity == 0:
                raise InvariantError("OPEN position must have remaining_quantity > 0")
            if self.exit_price is not None or self.exit_time is not None:
                raise InvariantError("OPEN position must not carry exit price/time")
        else:
            if self.remaining_quantity != 0:
                raise InvariantError("CLOSED position must have remaining_quantity == 0")
            if self.exit_price is None or self.exit_time is None:
                raise InvariantError("CLOSED position must carry exit price and time")
        if self.entry_price <= 0:
            raise InvariantError(f"Position entry_price must be positive: {self.entry_price}")

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (Decimals as strings)."""
        data = asdict(self)
        data["status"] = self.status.value
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data
