"""
Domain protocols (interfaces) for dependency inversion.

The ledger depends on these contracts rather than on the SQLAlchemy
repository or on a specific exchange client.
"""
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from trade_diary.domain.models import Position, PositionStatus, RawFill


@runtime_checkable
class FillSource(Protocol):
    """
    Protocol for upstream fill collaborators.

    Implementations own authentication, request signing, pagination and
    retry. Failures should be raised as FillSourceError.
    """

    source: str

    def fetch_fills(self, owner_id: int) -> List[RawFill]: ...


@runtime_checkable
class PositionStore(Protocol):
    """
    Protocol for position persistence.

    Implemented by trade_diary.storage.repository.PositionRepository. Every
    mutating call is its own transaction.
    """

    def insert(self, position: Position) -> Position: ...

    def update(self, position: Position) -> Position: ...

    def apply_split(self, remainder: Position, closed_slice: Position) -> Tuple[Position, Position]: ...

    def get(self, owner_id: int, position_id: int) -> Optional[Position]: ...

    def find_by_buy_exec_id(self, owner_id: int, buy_exec_id: str) -> Optional[Position]: ...

    def find_by_sell_exec_id(self, owner_id: int, sell_exec_id: str) -> Optional[Position]: ...

    def next_open_position(
        self, owner_id: int, symbol: str, opened_by: Optional[int] = None
    ) -> Optional[Position]: ...

    def list_dust_candidates(self, owner_id: int, epsilon) -> List[Position]: ...

    def list_positions(
        self, owner_id: int, status: Optional[PositionStatus] = None
    ) -> List[Position]: ...
