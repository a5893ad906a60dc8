"""
钱包检查点（watermark）

每个钱包记录一个秒级时间戳，作为下一次抓取的下界。一轮抓取成功后把检查点推进到
本轮开始时间（而不是最新交易时间），每轮会与上一轮有少量重叠，重复交易由 sink 去重。
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Optional

from wallet_tracker.database_handler import DatabaseHandler
from wallet_tracker.logger import log
from wallet_tracker.models import Wallet


class WatermarkStore(ABC):
    """检查点存储抽象基类"""

    @abstractmethod
    def get(self, address: str) -> Optional[int]:
        pass

    @abstractmethod
    def set(self, address: str, timestamp: int):
        pass


class InMemoryWatermarkStore(WatermarkStore):
    """进程内存储，重启后丢失"""

    def __init__(self):
        self._timestamps: Dict[str, int] = {}

    def get(self, address: str) -> Optional[int]:
        return self._timestamps.get(address)

    def set(self, address: str, timestamp: int):
        self._timestamps[address] = timestamp


class DatabaseWatermarkStore(WatermarkStore):
    """基于 wallet_checkpoints 表的持久化存储，需先调用 DatabaseHandler.initialize_database"""

    def get(self, address: str) -> Optional[int]:
        return DatabaseHandler.get_checkpoint(address)

    def set(self, address: str, timestamp: int):
        DatabaseHandler.update_checkpoint(address, timestamp)


class WatermarkTracker:
    """钱包检查点跟踪器"""

    def __init__(self, store: Optional[WatermarkStore] = None):
        self.store = store or InMemoryWatermarkStore()
        # 同一钱包的检查点更新按地址串行化
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[address]

    def resolve(self, wallet: Wallet) -> Wallet:
        """
        用已保存的检查点覆盖钱包来源给出的初始值

        Args:
            wallet: 钱包来源返回的钱包

        Returns:
            带有最新检查点的钱包
        """
        stored = self.store.get(wallet.address)
        if stored is None:
            return wallet
        return wallet.with_watermark(stored)

    @staticmethod
    def next_fetch_lower_bound(wallet: Wallet) -> int:
        """下一次抓取的下界（秒），即钱包当前检查点"""
        return wallet.last_checked_timestamp

    def advance(self, wallet: Wallet, cycle_start_timestamp: int) -> Wallet:
        """
        把钱包检查点推进到本轮开始时间

        Args:
            wallet: 本轮处理的钱包
            cycle_start_timestamp: 本轮开始时间（秒）

        Returns:
            检查点更新后的新 Wallet 对象，检查点不会后退
        """
        with self._lock_for(wallet.address):
            current = self.store.get(wallet.address)
            floor = max(wallet.last_checked_timestamp, current or 0)
            new_timestamp = max(floor, cycle_start_timestamp)

            self.store.set(wallet.address, new_timestamp)

        log.debug(f"钱包 {wallet.address}: 检查点 {wallet.last_checked_timestamp} -> {new_timestamp}")
        return wallet.with_watermark(new_timestamp)
