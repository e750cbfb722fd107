"""
Unit tests for dust reconciliation.
"""
from decimal import Decimal

from trade_diary.domain.models import Position, PositionStatus
from trade_diary.ledger.dust import close_as_dust, reconcile_dust


EPS = Decimal("0.000001")


def _open(repo, remaining: str, owner_id: int = 1, entry_time: int = 1000) -> Position:
    qty = Decimal(remaining)
    return repo.insert(
        Position(
            owner_id=owner_id,
            symbol="BTCUSDT",
            status=PositionStatus.OPEN,
            quantity=qty,
            remaining_quantity=qty,
            entry_price=Decimal("50000"),
            entry_time=entry_time,
            invested_amount=qty * Decimal("50000"),
            commission_amount=Decimal("0.000001"),
            source="bybit",
        )
    )


def test_close_as_dust_zeroes_economics():
    position = Position(
        owner_id=1,
        symbol="BTCUSDT",
        status=PositionStatus.OPEN,
        quantity=Decimal("0.0000003"),
        remaining_quantity=Decimal("0.0000003"),
        entry_price=Decimal("50000"),
        entry_time=1234,
        invested_amount=Decimal("0.015"),
        id=5,
    )

    closed = close_as_dust(position)

    assert closed.id == 5
    assert closed.status == PositionStatus.CLOSED
    assert closed.quantity == Decimal("0")
    assert closed.remaining_quantity == Decimal("0")
    assert closed.invested_amount == Decimal("0")
    assert closed.received_amount == Decimal("0")
    assert closed.commission_amount == Decimal("0")
    assert closed.profit_loss == Decimal("0")
    assert closed.profit_loss_percent == Decimal("0")
    assert closed.duration_minutes == 0
    assert closed.exit_time == 1234
    assert closed.exit_price == Decimal("50000")
    assert closed.source == "dust"


def test_reconcile_closes_only_dust(repo):
    dust = _open(repo, "0.0000005")
    at_epsilon = _open(repo, "0.000001")
    real = _open(repo, "0.01")

    closed = reconcile_dust(repo, 1, EPS)

    assert sorted(p.id for p in closed) == sorted([dust.id, at_epsilon.id])
    assert repo.get(1, dust.id).status == PositionStatus.CLOSED
    assert repo.get(1, dust.id).source == "dust"
    assert repo.get(1, at_epsilon.id).status == PositionStatus.CLOSED
    assert repo.get(1, real.id).status == PositionStatus.OPEN


def test_reconcile_is_per_owner(repo):
    other = _open(repo, "0.0000005", owner_id=2)

    assert reconcile_dust(repo, 1, EPS) == []
    assert repo.get(2, other.id).status == PositionStatus.OPEN


def test_reconcile_nothing_to_do(repo):
    _open(repo, "1")

    assert reconcile_dust(repo, 1, EPS) == []
