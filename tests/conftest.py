"""Pytest configuration, fakes and raw-record builders for wallet tracker tests."""

from typing import Dict, List, Optional

import pytest

from wallet_tracker.chain_fetcher import ChainDataFetcher, FetchedRecords
from wallet_tracker.models import Wallet
from wallet_tracker.sinks import TransactionSink
from wallet_tracker.wallet_source import WalletSource

WALLET_A = "TPmJwoz7Wa8Jgc4v6685uyT4FsMpNY6NE"
WALLET_B = "TDZDkLmMRX23kQz1H8vooiSxxuPaJL5bcc"
STRANGER = "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE"


def native_record(
    tx_id: str,
    owner: str,
    to: str,
    amount: int,
    timestamp: int,
    ret: Optional[str] = "SUCCESS",
    contract_type: str = "TransferContract",
    block_number: int = 55000001,
    asset_name: Optional[str] = None,
) -> dict:
    """Build a TronGrid /transactions record."""
    value = {"owner_address": owner, "to_address": to, "amount": amount}
    if asset_name is not None:
        value["asset_name"] = asset_name
    record = {
        "txID": tx_id,
        "blockNumber": block_number,
        "block_timestamp": timestamp,
        "raw_data": {
            "contract": [
                {"type": contract_type, "parameter": {"value": value}},
            ]
        },
    }
    if ret is not None:
        record["ret"] = [{"contractRet": ret}]
    return record


def token_record(
    tx_id: str,
    sender: str,
    receiver: str,
    value: str,
    timestamp: int,
    decimals: Optional[int] = 6,
    symbol: Optional[str] = "USDT",
    ret: Optional[str] = "SUCCESS",
    event_type: str = "Transfer",
) -> dict:
    """Build a TronGrid /transactions/trc20 record."""
    token_info = {"address": "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t", "name": "Tether USD"}
    if decimals is not None:
        token_info["decimals"] = decimals
    if symbol is not None:
        token_info["symbol"] = symbol
    record = {
        "transaction_id": tx_id,
        "block_number": 55000002,
        "block_timestamp": timestamp,
        "from": sender,
        "to": receiver,
        "type": event_type,
        "value": value,
        "token_info": token_info,
    }
    if ret is not None:
        record["contractRet"] = ret
    return record


class FakeWalletSource(WalletSource):
    """Returns a fixed wallet list, or raises when `error` is set."""

    def __init__(self, wallets: List[Wallet], error: Optional[Exception] = None):
        super().__init__()
        self.wallets = wallets
        self.error = error

    def list_wallets(self) -> List[Wallet]:
        if self.error is not None:
            raise self.error
        return list(self.wallets)


class FakeFetcher(ChainDataFetcher):
    """
    Serves canned raw records per address and records the lower bounds it was asked for.

    With `page_limit` set it behaves like a capped TronGrid query: records at or after
    the lower bound, oldest first, at most `page_limit` of them, flagged when truncated.
    """

    def __init__(self, page_limit: Optional[int] = None):
        self.native: Dict[str, List[dict]] = {}
        self.tokens: Dict[str, List[dict]] = {}
        self.failing: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.page_limit = page_limit

    def fetch_native_transfers(self, address, min_timestamp):
        self.calls.append(("native", address, min_timestamp))
        return self._serve(self.native, address, min_timestamp)

    def fetch_token_transfers(self, address, min_timestamp):
        self.calls.append(("token", address, min_timestamp))
        return self._serve(self.tokens, address, min_timestamp)

    def _serve(self, source, address, min_timestamp):
        if address in self.failing:
            raise self.failing[address]
        records = source.get(address, [])
        if self.page_limit is None:
            return records

        window = sorted(
            (r for r in records if r["block_timestamp"] >= (min_timestamp or 0) * 1000),
            key=lambda r: r["block_timestamp"],
        )
        return FetchedRecords(window[:self.page_limit], truncated=len(window) > self.page_limit)


class RecordingSink(TransactionSink):
    """Keeps every appended batch; deduplicates by tx_id like a real sink."""

    def __init__(self, error: Optional[Exception] = None):
        self.batches = []
        self.seen = set()
        self.error = error

    def append(self, transactions, tracked_addresses=()):
        if self.error is not None:
            raise self.error
        self.batches.append((list(transactions), list(tracked_addresses)))
        fresh = [tx for tx in transactions if tx.tx_id not in self.seen]
        self.seen.update(tx.tx_id for tx in fresh)
        return len(fresh)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def database(tmp_path):
    """Initialise peewee against a throwaway SQLite file."""
    from wallet_tracker.database_handler import DatabaseHandler

    DatabaseHandler.initialize_database(f"sqlite:///{tmp_path / 'tracker.db'}")
    yield DatabaseHandler
    DatabaseHandler.close()
