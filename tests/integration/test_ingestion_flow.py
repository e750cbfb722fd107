"""
Integration tests for the ingestion flow: raw fills through normalization,
FIFO matching and dust reconciliation into a real (in-memory) database.

Tests:
1. Partial fills of the same order become one position
2. Re-ingesting the same or an overlapping window changes nothing
3. Dust left behind is closed in the same batch
4. Fill source failures propagate and leave the ledger untouched
5. Manual buy / close through the service
6. Batches for one owner serialize
"""
import threading
import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from trade_diary.domain.models import PositionStatus
from trade_diary.exceptions import FillSourceError, ValidationError
from trade_diary.exchanges.file_source import JsonFileFillSource
from trade_diary.ledger.service import IngestionSummary, LedgerService
from trade_diary.reporting.stats import compute_stats


T0 = 1_700_000_000_000
MINUTE = 60_000


def _btc_fills():
    """Two buys (the second in two partial fills) and one sell, unordered."""
    return [
        {"symbol": "BTCUSDT", "side": "Sell", "orderId": "S1", "execId": "s1-a",
         "qty": "1.5", "price": "53000", "fee": "7.95", "time": T0 + 60 * MINUTE},
        {"symbol": "BTCUSDT", "side": "Buy", "orderId": "B2", "execId": "b2-a",
         "qty": "0.25", "price": "52000", "fee": "1.3", "time": T0 + 2 * MINUTE},
        {"symbol": "BTCUSDT", "side": "Buy", "orderId": "B1", "execId": "b1-a",
         "qty": "1.0", "price": "50000", "fee": "5", "time": T0},
        {"symbol": "BTCUSDT", "side": "Buy", "orderId": "B2", "execId": "b2-b",
         "qty": "0.75", "price": "52000", "fee": "3.9", "time": T0 + MINUTE},
    ]


def _snapshot(service, owner_id=1):
    return [p.to_dict() for p in service.list_positions(owner_id)]


def test_end_to_end_ingestion(service):
    summary = service.ingest(1, _btc_fills(), source="bybit")

    assert summary == IngestionSummary(
        executions_received=3,
        buys_created=2,
        sell_matches_closed=2,
        unmatched_sell_quantity=Decimal("0"),
        dust_closed=0,
    )

    open_positions = service.list_positions(1, PositionStatus.OPEN)
    closed_positions = service.list_positions(1, PositionStatus.CLOSED)
    assert len(open_positions) == 1
    assert len(closed_positions) == 2

    remainder = open_positions[0]
    assert remainder.buy_exec_id == "B2"
    assert remainder.quantity == Decimal("0.5")
    assert remainder.invested_amount == Decimal("26000")
    assert remainder.commission_amount == Decimal("2.6")
    # earliest partial fill of the buy order
    assert remainder.entry_time == T0 + MINUTE
    assert remainder.source == "bybit"

    pls = sorted(p.profit_loss for p in closed_positions)
    assert pls == [Decimal("494.75"), Decimal("2989.7")]
    assert all(p.sell_exec_id == "S1" for p in closed_positions)

    stats = compute_stats(service.list_positions(1))
    assert stats.total_trades == 3
    assert stats.open_trades == 1
    assert stats.total_pl == Decimal("3484.45")
    assert stats.win_rate_percent == Decimal("100")


def test_reingesting_same_window_is_idempotent(service):
    service.ingest(1, _btc_fills())
    before = _snapshot(service)

    summary = service.ingest(1, _btc_fills())

    assert summary.buys_created == 0
    assert summary.sell_matches_closed == 0
    assert summary.unmatched_sell_quantity == Decimal("0")
    assert _snapshot(service) == before


def test_overlapping_windows_converge(service):
    fills = _btc_fills()
    buys_only = [f for f in fills if f["side"] == "Buy"]

    first = service.ingest(1, buys_only)
    second = service.ingest(1, fills)
    third = service.ingest(1, list(reversed(fills)))

    assert first.buys_created == 2
    assert second.buys_created == 0
    assert second.sell_matches_closed == 2
    assert third.buys_created == 0
    assert third.sell_matches_closed == 0
    assert len(service.list_positions(1, PositionStatus.OPEN)) == 1
    assert len(service.list_positions(1, PositionStatus.CLOSED)) == 2


def test_later_buy_after_replayed_sell(service):
    sell_first = [
        {"symbol": "ETHUSDT", "side": "BUY", "orderId": "b1", "qty": "1", "price": "2000", "time": T0},
        {"symbol": "ETHUSDT", "side": "SELL", "orderId": "s1", "qty": "1.5", "price": "2100", "time": T0 + MINUTE},
    ]
    later_buy = {"symbol": "ETHUSDT", "side": "BUY", "orderId": "b2", "qty": "1", "price": "2050",
                 "time": T0 + 2 * MINUTE}

    first = service.ingest(1, sell_first)
    second = service.ingest(1, sell_first + [later_buy])

    assert first.unmatched_sell_quantity == Decimal("0.5")
    assert second.buys_created == 1
    assert second.sell_matches_closed == 0
    open_positions = service.list_positions(1, PositionStatus.OPEN)
    assert [p.buy_exec_id for p in open_positions] == ["b2"]


def test_dust_closed_in_same_batch(service):
    summary = service.ingest(1, [
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": "tiny", "qty": "0.0000005",
         "price": "50000", "time": T0},
    ])

    assert summary.buys_created == 1
    assert summary.dust_closed == 1
    [position] = service.list_positions(1)
    assert position.status == PositionStatus.CLOSED
    assert position.source == "dust"
    assert position.quantity == Decimal("0")
    assert position.profit_loss == Decimal("0")


def test_malformed_fills_are_skipped(service):
    summary = service.ingest(1, [
        {"symbol": "BTCUSDT", "side": "BUY", "qty": "nope", "price": "1", "time": T0},
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": "ok", "qty": "1", "price": "100", "time": T0},
        {"side": "BUY", "qty": "1", "price": "100", "time": T0},
    ])

    assert summary.executions_received == 1
    assert summary.buys_created == 1


def test_default_source_used_when_none_given(repo):
    service = LedgerService(repo, default_source="okx")

    service.ingest(1, [{"symbol": "BTCUSDT", "side": "BUY", "orderId": "x", "qty": "1",
                        "price": "1", "time": T0}])

    assert service.list_positions(1)[0].source == "okx"


# ---------------------------------------------------------------------------
# Fill sources
# ---------------------------------------------------------------------------

def test_sync_reads_fill_source(service, tmp_path):
    path = tmp_path / "fills.json"
    path.write_text(
        '[{"symbol": "BTCUSDT", "side": "BUY", "orderId": "f1", "qty": "2", "price": "10", "time": 5}]'
    )

    summary = service.sync(7, JsonFileFillSource(path))

    assert summary.buys_created == 1
    assert service.list_positions(7)[0].source == "import"


def test_sync_propagates_fill_source_error(service):
    service.ingest(1, _btc_fills())
    before = _snapshot(service)
    source = MagicMock()
    source.source = "bybit"
    source.fetch_fills.side_effect = FillSourceError("rate limited")

    with pytest.raises(FillSourceError, match="rate limited"):
        service.sync(1, source)

    assert _snapshot(service) == before


def test_sync_wraps_io_errors(service):
    source = MagicMock()
    source.source = "okx"
    source.fetch_fills.side_effect = ConnectionError("reset by peer")

    with pytest.raises(FillSourceError) as exc_info:
        service.sync(1, source)

    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert service.list_positions(1) == []


# ---------------------------------------------------------------------------
# Manual operations
# ---------------------------------------------------------------------------

def test_manual_buy_then_close(service):
    position = service.record_manual_buy(1, "btcusdt", "0.1", "60000", fee="-0.6", time=T0)

    assert position.symbol == "BTCUSDT"
    assert position.source == "manual"
    assert position.commission_amount == Decimal("0.6")
    assert position.buy_exec_id == f"buy_BTCUSDT_{T0}"

    closed = service.close_position(1, position.id, "61000", exit_time=T0 + 90 * MINUTE, exit_commission="0.61")

    assert closed.status == PositionStatus.CLOSED
    assert closed.profit_loss == Decimal("98.79")
    assert closed.duration_minutes == 90


def test_manual_buy_twice_same_time_is_noop(service):
    assert service.record_manual_buy(1, "BTCUSDT", "1", "100", time=T0) is not None
    assert service.record_manual_buy(1, "BTCUSDT", "1", "100", time=T0) is None


def test_manual_buy_rejects_bad_numbers(service):
    with pytest.raises(ValidationError):
        service.record_manual_buy(1, "BTCUSDT", "abc", "100")
    with pytest.raises(ValidationError):
        service.record_manual_buy(1, "BTCUSDT", "-1", "100")


def test_manual_position_is_matched_by_later_sell(service):
    service.record_manual_buy(1, "BTCUSDT", "1", "100", time=T0)

    summary = service.ingest(1, [
        {"symbol": "BTCUSDT", "side": "SELL", "orderId": "s", "qty": "1", "price": "105", "time": T0 + MINUTE},
    ])

    assert summary.sell_matches_closed == 1
    [closed] = service.list_positions(1)
    assert closed.profit_loss == Decimal("5")
    # full close in place keeps the buy's provenance
    assert closed.source == "manual"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_owner_locks_are_per_owner(service):
    assert service._lock_for(1) is service._lock_for(1)
    assert service._lock_for(1) is not service._lock_for(2)


def _ingest_in_threads(service, batches_by_owner):
    """Run each owner's batches in its own thread; return raised exceptions."""
    errors = []

    def run(owner_id, batches):
        try:
            for batch in batches:
                service.ingest(owner_id, batch)
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [
        threading.Thread(target=run, args=(owner_id, batches))
        for owner_id, batches in batches_by_owner
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def _round_trip_batch(i):
    return [
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": f"b{i}", "qty": "1",
         "price": str(50000 + i), "fee": "1", "time": T0 + i * 2 * MINUTE},
        {"symbol": "BTCUSDT", "side": "SELL", "orderId": f"s{i}", "qty": "0.5",
         "price": str(50100 + i), "fee": "0.5", "time": T0 + (i * 2 + 1) * MINUTE},
    ]


def _economics(service, owner_id):
    return sorted(
        (p.status.value, p.quantity, p.entry_price, str(p.profit_loss))
        for p in service.list_positions(owner_id)
    )


def test_different_owners_ingest_concurrently(service):
    batches = [_round_trip_batch(i) for i in range(15)]
    for batch in batches:
        service.ingest(99, batch)
    expected = _economics(service, 99)

    errors = _ingest_in_threads(service, [(owner, batches) for owner in (1, 2, 3)])

    assert errors == []
    for owner in (1, 2, 3):
        assert _economics(service, owner) == expected


def test_same_owner_batches_serialize(service):
    errors = _ingest_in_threads(service, [(1, [_btc_fills()]) for _ in range(4)])

    assert errors == []
    assert len(service.list_positions(1)) == 3


def test_out_of_range_fill_does_not_abort_batch(service):
    summary = service.ingest(1, [
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": "huge", "qty": "1e20", "price": "1", "time": T0},
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": "ok", "qty": "1", "price": "100", "time": T0},
    ])

    assert summary.executions_received == 1
    assert [p.buy_exec_id for p in service.list_positions(1)] == ["ok"]


def test_manual_buy_out_of_range_is_validation_error(service):
    with pytest.raises(ValidationError):
        service.record_manual_buy(1, "BTCUSDT", "1e20", "100", time=T0)

    assert service.list_positions(1) == []


def test_manual_close_out_of_range_price_is_validation_error(service):
    position = service.record_manual_buy(1, "BTCUSDT", "1000", "100", time=T0)

    with pytest.raises(ValidationError):
        service.close_position(1, position.id, "1e25")

    assert service.list_positions(1, PositionStatus.OPEN)[0].id == position.id


def test_dust_closures_left_out_of_stats(service):
    service.ingest(1, [
        {"symbol": "BTCUSDT", "side": "BUY", "orderId": "win", "qty": "1", "price": "100", "time": T0},
        {"symbol": "BTCUSDT", "side": "SELL", "orderId": "exit", "qty": "1", "price": "110", "time": T0 + MINUTE},
        {"symbol": "ETHUSDT", "side": "BUY", "orderId": "tiny", "qty": "0.0000005", "price": "2000", "time": T0},
    ])

    stats = compute_stats(service.list_positions(1))

    assert stats.total_trades == 1
    assert stats.closed_trades == 1
    assert stats.win_rate_percent == Decimal("100")
    assert stats.avg_pl == Decimal("10")
