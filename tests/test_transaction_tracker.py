"""Tests for the poll cycle orchestrator."""

from decimal import Decimal

import pytest

from conftest import (
    STRANGER, WALLET_A, WALLET_B, FakeFetcher, FakeWalletSource, RecordingSink, native_record, token_record,
)
from wallet_tracker.chain_fetcher import FetchError
from wallet_tracker.models import TxStatus, Wallet
from wallet_tracker.sinks import SinkError
from wallet_tracker.transaction_repository import InMemoryTransactionRepository
from wallet_tracker.transaction_tracker import CycleState, TransactionTracker


def make_tracker(wallets, fetcher, sink=None, now=2000, **kwargs):
    return TransactionTracker(
        wallet_source=FakeWalletSource(wallets),
        fetcher=fetcher,
        sink=sink,
        clock=lambda: now,
        **kwargs
    )


@pytest.fixture
def scenario_fetcher(fetcher):
    fetcher.native[WALLET_A] = [native_record("trx-1", WALLET_A, STRANGER, 50000000, 1500)]
    fetcher.tokens[WALLET_A] = [token_record("usdt-1", STRANGER, WALLET_A, "2000000", 1600, decimals=6)]
    return fetcher


class TestRunCycle:

    def test_end_to_end_single_wallet(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)

        result = tracker.run_cycle()

        assert [(tx.currency, tx.amount, tx.block_timestamp) for tx in result.transactions] == [
            ("USDT", Decimal("2"), 1600),
            ("TRX", Decimal("50"), 1500),
        ]
        assert all(tx.involves(WALLET_A) for tx in result.transactions)
        assert all(tx.status == TxStatus.SUCCESS for tx in result.transactions)
        assert ("native", WALLET_A, 1000) in scenario_fetcher.calls
        assert ("token", WALLET_A, 1000) in scenario_fetcher.calls
        assert tracker.watermarks.store.get(WALLET_A) == 2000
        assert result.wallets[0].wallet.last_checked_timestamp == 2000
        assert result.persisted == 2
        assert sink.batches[0][1] == [WALLET_A]
        assert tracker.state == CycleState.IDLE

    def test_next_cycle_uses_advanced_watermark(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)
        tracker.run_cycle()
        scenario_fetcher.calls.clear()

        tracker.clock = lambda: 3000
        tracker.run_cycle()

        assert ("native", WALLET_A, 2000) in scenario_fetcher.calls
        assert tracker.watermarks.store.get(WALLET_A) == 3000

    def test_overlapping_cycles_do_not_duplicate_at_sink(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)

        first = tracker.run_cycle()
        second = tracker.run_cycle()

        assert first.persisted == 2
        assert second.persisted == 0
        assert len(sink.seen) == 2
        assert len(tracker.get_transactions_for_wallet(WALLET_A)) == 2

    def test_wallet_failure_isolated_and_watermark_kept(self, fetcher, sink):
        fetcher.failing[WALLET_A] = FetchError("HTTP 500")
        fetcher.native[WALLET_B] = [native_record("b-1", STRANGER, WALLET_B, 1000000, 1200)]
        tracker = make_tracker([Wallet(WALLET_A, 1000), Wallet(WALLET_B, 1000)], fetcher, sink)

        result = tracker.run_cycle()

        assert [tx.tx_id for tx in result.transactions] == ["b-1"]
        assert result.failed_wallets == [WALLET_A]
        assert result.wallets[0].wallet.last_checked_timestamp == 1000
        assert tracker.watermarks.store.get(WALLET_A) is None
        assert tracker.watermarks.store.get(WALLET_B) == 2000

    def test_cross_wallet_aggregate_newest_first(self, fetcher, sink):
        fetcher.native[WALLET_A] = [native_record("a-old", WALLET_A, STRANGER, 1, 100)]
        fetcher.tokens[WALLET_A] = [token_record("a-new", WALLET_A, STRANGER, "1", 300)]
        fetcher.native[WALLET_B] = [native_record("b-mid", WALLET_B, STRANGER, 1, 200)]
        tracker = make_tracker([Wallet(WALLET_A, 0), Wallet(WALLET_B, 0)], fetcher, sink, max_workers=2)

        result = tracker.run_cycle()

        assert [tx.tx_id for tx in result.transactions] == ["a-new", "b-mid", "a-old"]
        assert [tx.tx_id for tx in tracker.get_all_transactions()] == ["a-new", "b-mid", "a-old"]

    def test_wallet_source_failure_ends_cycle(self, fetcher, sink):
        tracker = TransactionTracker(
            wallet_source=FakeWalletSource([], error=RuntimeError("sheet unreachable")),
            fetcher=fetcher,
            sink=sink,
        )

        result = tracker.run_cycle()

        assert result.transactions == []
        assert fetcher.calls == []
        assert sink.batches == []
        assert result.wallet_source_error == "sheet unreachable"

    def test_empty_wallet_list_ends_cycle(self, fetcher, sink):
        tracker = make_tracker([], fetcher, sink)

        result = tracker.run_cycle()

        assert result.wallets == []
        assert fetcher.calls == []
        assert result.wallet_source_error is None

    def test_no_transactions_skips_sink_but_advances(self, fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], fetcher, sink)

        result = tracker.run_cycle()

        assert result.transactions == []
        assert sink.batches == []
        assert tracker.watermarks.store.get(WALLET_A) == 2000

    def test_sink_failure_keeps_advanced_watermarks(self, scenario_fetcher):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, RecordingSink(error=SinkError("disk full")))

        result = tracker.run_cycle()

        assert result.persist_error == "disk full"
        assert result.persisted == 0
        assert len(result.transactions) == 2
        assert tracker.watermarks.store.get(WALLET_A) == 2000

    def test_without_sink_results_still_queryable(self, scenario_fetcher):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher)

        result = tracker.run_cycle()

        assert result.persisted == 0
        assert len(tracker.get_all_transactions()) == 2

    def test_non_blocking_call_skipped_while_cycle_running(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)
        tracker._cycle_lock.acquire()
        try:
            result = tracker.run_cycle(blocking=False)
        finally:
            tracker._cycle_lock.release()

        assert result.skipped is True
        assert scenario_fetcher.calls == []


class TestTruncatedFetch:
    """Fetches capped by the page limit must not leave gaps behind the watermark."""

    def test_capped_fetch_resumes_from_last_fetched_record(self, sink):
        fetcher = FakeFetcher(page_limit=2)
        fetcher.native[WALLET_A] = [
            native_record(f"t{i}", WALLET_A, STRANGER, 1000000, ts)
            for i, ts in enumerate([1100000, 1200000, 1300000])
        ]
        tracker = make_tracker([Wallet(WALLET_A, 1000)], fetcher, sink)

        first = tracker.run_cycle()
        assert first.wallets[0].truncated is True
        assert tracker.watermarks.store.get(WALLET_A) == 1200

        second = tracker.run_cycle()
        assert second.wallets[0].truncated is False
        assert tracker.watermarks.store.get(WALLET_A) == 2000

        tracker.run_cycle()

        assert sink.seen == {"t0", "t1", "t2"}
        assert [call[2] for call in fetcher.calls if call[0] == "native"] == [1000, 1200, 2000]

    def test_truncated_token_stream_holds_back_both_streams(self, sink):
        fetcher = FakeFetcher(page_limit=2)
        fetcher.native[WALLET_A] = [native_record("n1", WALLET_A, STRANGER, 1, 1500000)]
        fetcher.tokens[WALLET_A] = [
            token_record("k1", STRANGER, WALLET_A, "1", 1100000),
            token_record("k2", STRANGER, WALLET_A, "1", 1200000),
            token_record("k3", STRANGER, WALLET_A, "1", 1400000),
        ]
        tracker = make_tracker([Wallet(WALLET_A, 1000)], fetcher, sink)

        tracker.run_cycle()
        assert tracker.watermarks.store.get(WALLET_A) == 1200

        tracker.run_cycle()
        tracker.run_cycle()

        assert sink.seen == {"n1", "k1", "k2", "k3"}
        assert tracker.watermarks.store.get(WALLET_A) == 2000

    def test_watermark_held_when_page_cannot_move_past_one_second(self, sink):
        fetcher = FakeFetcher(page_limit=1)
        fetcher.native[WALLET_A] = [
            native_record("s1", WALLET_A, STRANGER, 1, 1000100),
            native_record("s2", WALLET_A, STRANGER, 1, 1000900),
        ]
        tracker = make_tracker([Wallet(WALLET_A, 1000)], fetcher, sink)

        result = tracker.run_cycle()

        assert result.wallets[0].truncated is True
        assert result.wallets[0].wallet.last_checked_timestamp == 1000
        assert tracker.watermarks.store.get(WALLET_A) == 1000


class TestManualTriggerAndQueries:

    def test_track_success_envelope(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)

        response = tracker.track()

        assert response["success"] is True
        assert "Found 2 transactions" in response["message"]
        assert [tx.tx_id for tx in response["transactions"]] == ["usdt-1", "trx-1"]

    def test_track_failure_envelope(self, scenario_fetcher, sink):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, sink)

        def boom(blocking=True):
            raise RuntimeError("executor gone")

        tracker.run_cycle = boom

        response = tracker.track()

        assert response == {
            "success": False,
            "message": "Error tracking transactions: executor gone",
            "transactions": [],
        }

    def test_track_reports_sink_failure(self, scenario_fetcher):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher, RecordingSink(error=SinkError("disk full")))

        response = tracker.track()

        assert response["success"] is False
        assert response["message"] == "Error tracking transactions: failed to persist transactions: disk full"
        assert response["transactions"] == []

    def test_track_reports_wallet_source_failure(self, fetcher, sink):
        tracker = TransactionTracker(
            wallet_source=FakeWalletSource([], error=RuntimeError("sheet unreachable")),
            fetcher=fetcher,
            sink=sink,
        )

        response = tracker.track()

        assert response["success"] is False
        assert "sheet unreachable" in response["message"]
        assert response["transactions"] == []

    def test_track_reports_every_wallet_failing(self, fetcher, sink):
        fetcher.failing[WALLET_A] = FetchError("HTTP 500")
        fetcher.failing[WALLET_B] = FetchError("HTTP 500")
        tracker = make_tracker([Wallet(WALLET_A, 1000), Wallet(WALLET_B, 1000)], fetcher, sink)

        response = tracker.track()

        assert response["success"] is False
        assert "all 2 wallets failed" in response["message"]

    def test_track_partial_wallet_failure_still_succeeds(self, fetcher, sink):
        fetcher.failing[WALLET_A] = FetchError("HTTP 500")
        fetcher.native[WALLET_B] = [native_record("b-1", STRANGER, WALLET_B, 1000000, 1200)]
        tracker = make_tracker([Wallet(WALLET_A, 1000), Wallet(WALLET_B, 1000)], fetcher, sink)

        response = tracker.track()

        assert response["success"] is True
        assert [tx.tx_id for tx in response["transactions"]] == ["b-1"]

    def test_repository_cap_applies_to_queries(self, fetcher):
        fetcher.native[WALLET_A] = [
            native_record(f"a-{ts}", WALLET_A, STRANGER, 1, ts) for ts in (100, 300, 200)
        ]
        tracker = make_tracker(
            [Wallet(WALLET_A, 0)], fetcher, repository=InMemoryTransactionRepository(max_per_wallet=2)
        )

        tracker.run_cycle()

        assert [tx.tx_id for tx in tracker.get_transactions_for_wallet(WALLET_A)] == ["a-300", "a-200"]

    def test_unknown_wallet_has_no_transactions(self, fetcher):
        tracker = make_tracker([], fetcher)

        assert tracker.get_transactions_for_wallet("nobody") == []
        assert tracker.get_all_transactions() == []

    def test_status(self, scenario_fetcher):
        tracker = make_tracker([Wallet(WALLET_A, 1000)], scenario_fetcher)

        before = tracker.get_status()
        tracker.run_cycle()
        after = tracker.get_status()

        assert before["status"] == "running"
        assert before["version"] == "1.0.0"
        assert before["state"] == "IDLE"
        assert before["last_cycle_at"] is None
        assert after["last_cycle_at"] == "1970-01-01T00:33:20+00:00"
        assert "timestamp" in after
