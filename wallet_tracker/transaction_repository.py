import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from wallet_tracker.merger import merge
from wallet_tracker.models import Transaction


class TransactionRepository(ABC):
    """最近几轮抓取结果的查询存储"""

    @abstractmethod
    def add(self, wallet_address: str, transactions: List[Transaction]):
        """
        保存某个钱包新发现的交易

        Args:
            wallet_address: 钱包地址
            transactions: 按时间倒序排列的交易列表
        """
        pass

    @abstractmethod
    def get_wallet_transactions(self, wallet_address: str) -> List[Transaction]:
        pass

    @abstractmethod
    def get_all_transactions(self) -> List[Transaction]:
        pass


class InMemoryTransactionRepository(TransactionRepository):
    """
    内存实现，按钱包保存交易（最新在前），同一钱包内按 tx_id 去重

    每个钱包最多保留 max_per_wallet 笔，超出时丢弃最旧的交易
    """

    def __init__(self, max_per_wallet: int = 1000):
        if max_per_wallet < 1:
            raise ValueError(f"max_per_wallet 必须是正整数，当前值: {max_per_wallet}")
        self.max_per_wallet = max_per_wallet
        self._transactions: Dict[str, List[Transaction]] = {}
        self._lock = threading.Lock()

    def add(self, wallet_address: str, transactions: List[Transaction]):
        if not transactions:
            return

        with self._lock:
            existing = self._transactions.get(wallet_address, [])
            seen = {tx.tx_id for tx in existing}
            fresh = []
            for tx in transactions:
                if tx.tx_id not in seen:
                    seen.add(tx.tx_id)
                    fresh.append(tx)

            # 截断前重新排序，重复抓取到的旧交易不会挤掉更新的交易
            combined = merge([fresh, existing])
            self._transactions[wallet_address] = combined[:self.max_per_wallet]

    def get_wallet_transactions(self, wallet_address: str) -> List[Transaction]:
        with self._lock:
            return list(self._transactions.get(wallet_address, []))

    def get_all_transactions(self) -> List[Transaction]:
        with self._lock:
            per_wallet = list(self._transactions.values())
        return merge(per_wallet)
