"""
交易跟踪核心模块

驱动一轮完整的轮询：获取钱包列表 → 逐个钱包抓取、映射、合并并推进检查点 →
跨钱包汇总 → 写入 sink。任何一步失败都不会让进程退出，下一轮会重新尝试。
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from wallet_tracker import __version__
from wallet_tracker.chain_fetcher import ChainDataFetcher, newest_block_timestamp
from wallet_tracker.logger import log
from wallet_tracker.merger import merge
from wallet_tracker.models import Transaction, Wallet
from wallet_tracker.sinks import TransactionSink
from wallet_tracker.transaction_repository import InMemoryTransactionRepository, TransactionRepository
from wallet_tracker.tron_mapper import AddressCodec, map_native_transfers, map_token_transfers
from wallet_tracker.wallet_source import WalletSource
from wallet_tracker.watermark import WatermarkTracker


class CycleState(str, Enum):
    """一轮轮询所处的阶段"""
    IDLE = 'IDLE'
    FETCHING_WALLETS = 'FETCHING_WALLETS'
    PER_WALLET_FETCH = 'PER_WALLET_FETCH'
    AGGREGATING = 'AGGREGATING'
    PERSISTING = 'PERSISTING'


@dataclass
class WalletResult:
    """单个钱包的处理结果"""
    wallet: Wallet
    transactions: List[Transaction] = field(default_factory=list)
    error: Optional[str] = None
    truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class CycleResult:
    """一轮轮询的结果"""
    started_at: int
    transactions: List[Transaction] = field(default_factory=list)
    wallets: List[WalletResult] = field(default_factory=list)
    persisted: int = 0
    persist_error: Optional[str] = None
    wallet_source_error: Optional[str] = None
    skipped: bool = False

    @property
    def failed_wallets(self) -> List[str]:
        return [r.wallet.address for r in self.wallets if not r.succeeded]

    @property
    def error(self) -> Optional[str]:
        """让本轮视为失败的原因；部分钱包失败不算"""
        if self.wallet_source_error:
            return f"wallet source unavailable: {self.wallet_source_error}"
        if self.wallets and len(self.failed_wallets) == len(self.wallets):
            return f"all {len(self.wallets)} wallets failed: {self.wallets[0].error}"
        if self.persist_error:
            return f"failed to persist transactions: {self.persist_error}"
        return None


class TransactionTracker:
    """轮询周期编排器"""

    def __init__(
        self,
        wallet_source: WalletSource,
        fetcher: ChainDataFetcher,
        sink: Optional[TransactionSink] = None,
        repository: Optional[TransactionRepository] = None,
        watermarks: Optional[WatermarkTracker] = None,
        max_workers: int = 4,
        codec: Optional[AddressCodec] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        初始化跟踪器

        Args:
            wallet_source: 钱包列表来源
            fetcher: 链上数据抓取器
            sink: 交易输出（可选，不配置时只保存在 repository 中）
            repository: 查询用的交易存储
            watermarks: 钱包检查点跟踪器
            max_workers: 并发抓取的钱包数上限（受上游 API 限流约束）
            codec: 地址转换器
            clock: 返回秒级时间戳的函数（测试时注入）
        """
        self.wallet_source = wallet_source
        self.fetcher = fetcher
        self.sink = sink
        self.repository = repository or InMemoryTransactionRepository()
        self.watermarks = watermarks or WatermarkTracker()
        self.max_workers = max(1, max_workers)
        self.codec = codec
        self.clock = clock

        self.state = CycleState.IDLE
        self.last_cycle_at: Optional[int] = None
        # 同一时间只允许一轮轮询
        self._cycle_lock = threading.Lock()

        log.info(f"TransactionTracker 已初始化，最大并发钱包数: {self.max_workers}")

    def run_cycle(self, blocking: bool = True) -> CycleResult:
        """
        执行一轮完整轮询

        Args:
            blocking: 已有轮询在运行时是否等待其结束；False 时直接返回 skipped 结果

        Returns:
            本轮结果，transactions 为跨钱包合并后的列表（最新在前）
        """
        if not self._cycle_lock.acquire(blocking=blocking):
            log.info("上一轮轮询仍在运行，跳过本次触发")
            return CycleResult(started_at=int(self.clock()), skipped=True)

        try:
            return self._run_cycle_locked()
        finally:
            self.state = CycleState.IDLE
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleResult:
        started_at = int(self.clock())
        result = CycleResult(started_at=started_at)
        log.info("开始本轮交易跟踪")

        self.state = CycleState.FETCHING_WALLETS
        try:
            wallets = self._list_wallets()
        except Exception as e:
            log.error(f"获取钱包列表失败: {e}", exc_info=True)
            result.wallet_source_error = str(e)
            return result

        if not wallets:
            log.warning("没有需要跟踪的钱包")
            return result

        log.info(f"本轮共 {len(wallets)} 个钱包需要跟踪")

        self.state = CycleState.PER_WALLET_FETCH
        workers = min(self.max_workers, len(wallets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='wallet-fetch') as executor:
            futures = [executor.submit(self._process_wallet, wallet, started_at) for wallet in wallets]
            # 按钱包顺序收集结果，保证跨钱包合并的稳定顺序
            result.wallets = [future.result() for future in futures]

        self.state = CycleState.AGGREGATING
        result.transactions = merge(r.transactions for r in result.wallets)
        tracked_addresses = [w.address for w in wallets]

        for wallet_result in result.wallets:
            self.repository.add(wallet_result.wallet.address, wallet_result.transactions)

        if result.failed_wallets:
            log.warning(f"本轮有 {len(result.failed_wallets)} 个钱包抓取失败，检查点未推进: {result.failed_wallets}")

        self.state = CycleState.PERSISTING
        if result.transactions:
            result.persisted, result.persist_error = self._persist(result.transactions, tracked_addresses)
        else:
            log.info("没有需要保存的新交易")

        self.last_cycle_at = started_at
        log.info(f"本轮交易跟踪完成，共发现 {len(result.transactions)} 笔交易")
        return result

    def _list_wallets(self) -> List[Wallet]:
        wallets = self.wallet_source.list_wallets()
        return [self.watermarks.resolve(wallet) for wallet in wallets or []]

    def _process_wallet(self, wallet: Wallet, cycle_started_at: int) -> WalletResult:
        """
        抓取单个钱包的两类转账并合并

        任何异常都只影响当前钱包：记录日志，视为本轮没有交易，检查点不推进。
        抓取被翻页上限截断时，检查点只推进到已取回的最新记录所在的秒。
        """
        log.info(f"处理钱包: {wallet.address}")
        try:
            lower_bound = self.watermarks.next_fetch_lower_bound(wallet)

            native_records = self.fetcher.fetch_native_transfers(wallet.address, lower_bound)
            token_records = self.fetcher.fetch_token_transfers(wallet.address, lower_bound)

            native = map_native_transfers(native_records, wallet.address, self.codec)
            tokens = map_token_transfers(token_records, wallet.address, self.codec)
            transactions = merge([native, tokens])

            truncated, resume_at = self._resume_point(wallet, cycle_started_at, native_records, token_records)
            advanced = self.watermarks.advance(wallet, resume_at)

        except Exception as e:
            log.error(f"处理钱包 {wallet.address} 时出错: {e}", exc_info=True)
            return WalletResult(wallet=wallet, error=str(e))

        if truncated and resume_at <= wallet.last_checked_timestamp:
            log.warning(
                f"钱包 {wallet.address}: 抓取结果被截断且检查点无法前进，"
                f"请调大 tron_api.page_size 或 tron_api.max_pages"
            )
        elif truncated:
            log.warning(f"钱包 {wallet.address}: 抓取结果被截断，检查点推进到 {resume_at}，下一轮继续")

        if transactions:
            log.info(f"钱包 {wallet.address}: 发现 {len(transactions)} 笔新交易")
            for tx in transactions:
                self._log_transaction(wallet, tx)
        else:
            log.info(f"钱包 {wallet.address}: 没有新交易")

        return WalletResult(wallet=advanced, transactions=transactions, truncated=truncated)

    @staticmethod
    def _resume_point(wallet: Wallet, cycle_started_at: int, *record_lists: List[dict]):
        """
        计算检查点的推进目标

        Returns:
            (是否被截断, 新检查点秒级时间戳)。被截断的记录按时间正序返回，
            取各截断结果中最新记录的秒数的最小值；没有可用时间戳时保持原检查点。
        """
        bounds = []
        for records in record_lists:
            if not getattr(records, 'truncated', False):
                continue
            newest = newest_block_timestamp(records)
            if newest is None:
                return True, wallet.last_checked_timestamp
            bounds.append(newest // 1000)

        if not bounds:
            return False, cycle_started_at
        return True, min(min(bounds), cycle_started_at)

    def _persist(self, transactions: List[Transaction], tracked_addresses: List[str]):
        """写入 sink，失败只记录日志，不回滚已推进的检查点"""
        if self.sink is None:
            return 0, None

        log.info(f"正在保存 {len(transactions)} 笔交易")
        try:
            return self.sink.append(transactions, tracked_addresses), None
        except Exception as e:
            log.error(f"保存交易失败: {e}", exc_info=True)
            return 0, str(e)

    @staticmethod
    def _log_transaction(wallet: Wallet, tx: Transaction):
        direction = tx.direction_for([wallet.address])
        log.info(
            f"[{wallet.address}] {direction}: {tx.amount} {tx.currency or 'Unknown Token'} | "
            f"From: {tx.sender_address} To: {tx.receiver_address} | "
            f"Hash: {tx.hash} | "
            f"Time: {tx.iso_date}"
        )

    def track(self) -> Dict:
        """
        手动触发一轮轮询

        Returns:
            {success, message, transactions}，transactions 为本轮发现的交易；
            钱包列表获取失败、所有钱包都失败或写入 sink 失败时 success 为 False
        """
        log.info("手动触发交易跟踪")
        try:
            result = self.run_cycle()
        except Exception as e:
            log.error(f"手动触发交易跟踪失败: {e}", exc_info=True)
            return self._failure_response(e)

        if result.error:
            log.error(f"手动触发的交易跟踪失败: {result.error}")
            return self._failure_response(result.error)

        return {
            'success': True,
            'message': f"Transaction tracking completed successfully. Found {len(result.transactions)} transactions.",
            'transactions': result.transactions
        }

    @staticmethod
    def _failure_response(cause) -> Dict:
        return {
            'success': False,
            'message': f"Error tracking transactions: {cause}",
            'transactions': []
        }

    def get_transactions_for_wallet(self, address: str) -> List[Transaction]:
        return self.repository.get_wallet_transactions(address)

    def get_all_transactions(self) -> List[Transaction]:
        return self.repository.get_all_transactions()

    def get_status(self) -> Dict:
        last_cycle = None
        if self.last_cycle_at is not None:
            last_cycle = datetime.fromtimestamp(self.last_cycle_at, tz=timezone.utc).isoformat()

        return {
            'status': 'running',
            'version': __version__,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'state': self.state.value,
            'last_cycle_at': last_cycle,
        }
