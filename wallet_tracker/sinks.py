"""
交易输出模块

sink 负责把新发现的交易写入外部存储。同一笔交易可能在相邻两轮中重复出现
（检查点重叠），所有 sink 都按交易 ID 去重后再写入。
"""

import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Set
from urllib.parse import quote

import httpx

from wallet_tracker.database_handler import DatabaseHandler
from wallet_tracker.logger import log
from wallet_tracker.models import Transaction
from wallet_tracker.wallet_source import SHEETS_API_URL

BLOCK_DELIMITER = '-' * 40
BANNER_RULE = '=' * 22
HASH_PREFIX = 'Hash: '


class SinkError(Exception):
    """写入失败"""
    pass


class TransactionSink(ABC):
    """交易输出抽象基类"""

    @abstractmethod
    def append(self, transactions: List[Transaction], tracked_addresses: Iterable[str] = ()) -> int:
        """
        写入一批交易，已写入过的交易 ID 会被跳过

        Args:
            transactions: 按时间倒序排列的交易
            tracked_addresses: 被跟踪的钱包地址，用于标注 IN/OUT/SELF

        Returns:
            实际新写入的交易数

        Raises:
            SinkError: 写入失败
        """
        pass


def format_amount(amount: Decimal) -> str:
    """去掉多余的尾随零，避免科学计数法"""
    return format(amount.normalize(), 'f')


def format_transaction_block(tx: Transaction, tracked_addresses: Iterable[str]) -> str:
    """单笔交易的文本块"""
    lines = [
        f"Date: {tx.iso_date}",
        f"Type: {tx.direction_for(tracked_addresses)}",
        f"From: {tx.sender_address}",
        f"To: {tx.receiver_address}",
        f"Amount: {format_amount(tx.amount)} {tx.currency}",
    ]
    if tx.usd_value is not None:
        lines.append(f"USD Value: {format_amount(tx.usd_value)}")
    lines.extend([
        f"{HASH_PREFIX}{tx.hash}",
        f"Block: {tx.block_number}",
        f"Status: {tx.status.value}",
        BLOCK_DELIMITER,
    ])
    return '\n'.join(lines)


def _unique_by_id(transactions: List[Transaction], seen: Set[str]) -> List[Transaction]:
    fresh = []
    for tx in transactions:
        if tx.tx_id in seen:
            continue
        seen.add(tx.tx_id)
        fresh.append(tx)
    return fresh


class TextFileSink(TransactionSink):
    """
    纯文本文件输出

    最新一轮的交易写在文件开头，前面加一行带写入时间的分隔标题，旧内容保留在后面。
    """

    def __init__(self, path: str, clock=None):
        self.path = Path(path)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def existing_hashes(self) -> Set[str]:
        """已经写入文件的交易哈希"""
        if not self.path.exists():
            return set()

        hashes = set()
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                if line.startswith(HASH_PREFIX):
                    hashes.add(line[len(HASH_PREFIX):].strip())
        return hashes

    def append(self, transactions: List[Transaction], tracked_addresses: Iterable[str] = ()) -> int:
        tracked = list(tracked_addresses)
        try:
            old_content = self.path.read_text(encoding='utf-8') if self.path.exists() else ''
            fresh = _unique_by_id(transactions, self.existing_hashes())
            if not fresh:
                log.info(f"{self.path}: 没有需要写入的新交易")
                return 0

            written_at = self.clock().isoformat()
            banner = f"{BANNER_RULE}\nNEW TRANSACTIONS ({written_at})\n{BANNER_RULE}"
            body = '\n\n'.join(format_transaction_block(tx, tracked) for tx in fresh)
            content = f"{banner}\n\n{body}\n"
            if old_content:
                content += '\n' + old_content

            self._write_atomic(content)

        except OSError as e:
            raise SinkError(f"写入文件 {self.path} 失败: {e}") from e

        log.info(f"已保存 {len(fresh)} 笔交易到 {self.path}")
        return len(fresh)

    def _write_atomic(self, content: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.transactions-')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class DatabaseSink(TransactionSink):
    """写入 transactions 表，主键冲突即视为已存在"""

    def append(self, transactions: List[Transaction], tracked_addresses: Iterable[str] = ()) -> int:
        try:
            new_count = DatabaseHandler.save_transactions(transactions)
        except Exception as e:
            raise SinkError(f"保存交易到数据库失败: {e}") from e

        log.info(f"数据库: 本批 {len(transactions)} 笔交易，新增 {new_count} 笔")
        return new_count


class GoogleSheetSink(TransactionSink):
    """
    追加到 Google 表格

    列布局: A 日期, B 发送方, C 接收方, D 哈希, E 金额, F 币种, G 美元价值, H 留空。
    写入前读取 D 列已有的哈希用于去重。
    """

    def __init__(
        self,
        sheet_id: str,
        api_key: str = '',
        access_token: Optional[str] = None,
        sheet_name: str = 'Sheet1',
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None
    ):
        self.sheet_id = sheet_id
        self.api_key = api_key
        self.sheet_name = sheet_name
        headers = {}
        if access_token:
            headers['Authorization'] = f"Bearer {access_token}"
        if client is not None:
            client.headers.update(headers)
            self.client = client
        else:
            self.client = httpx.Client(timeout=timeout, headers=headers)

    def _values_url(self, cell_range: str) -> str:
        return f"{SHEETS_API_URL}/{self.sheet_id}/values/{quote(cell_range, safe='')}"

    def _params(self, **extra) -> dict:
        params = dict(extra)
        if self.api_key:
            params['key'] = self.api_key
        return params

    def existing_hashes(self) -> Set[str]:
        response = self.client.get(self._values_url(f"{self.sheet_name}!D:D"), params=self._params())
        response.raise_for_status()
        rows = response.json().get('values') or []
        return {row[0].strip() for row in rows if row and isinstance(row[0], str)}

    def append(self, transactions: List[Transaction], tracked_addresses: Iterable[str] = ()) -> int:
        try:
            fresh = _unique_by_id(transactions, self.existing_hashes())
            if not fresh:
                log.info("Google 表格: 没有需要写入的新交易")
                return 0

            values = [
                [
                    tx.iso_date,
                    tx.sender_address,
                    tx.receiver_address,
                    tx.hash,
                    format_amount(tx.amount),
                    tx.currency,
                    format_amount(tx.usd_value) if tx.usd_value is not None else '',
                    ''
                ]
                for tx in fresh
            ]

            response = self.client.post(
                self._values_url(f"{self.sheet_name}!A:H") + ':append',
                params=self._params(valueInputOption='RAW', insertDataOption='INSERT_ROWS'),
                json={'values': values}
            )
            response.raise_for_status()

        except httpx.HTTPError as e:
            raise SinkError(f"写入 Google 表格失败: {e}") from e

        log.info(f"已保存 {len(fresh)} 笔交易到 Google 表格")
        return len(fresh)


def create_sink(config: dict) -> TransactionSink:
    """
    根据配置创建 sink

    Args:
        config: 完整配置字典

    Returns:
        TransactionSink 实例
    """
    sink_config = config.get('sink', {})
    sink_type = sink_config.get('type', 'file')

    if sink_type == 'file':
        return TextFileSink(sink_config.get('path', 'transactions.txt'))

    elif sink_type == 'database':
        # 数据库连接在 main 中统一初始化
        return DatabaseSink()

    elif sink_type == 'google_sheets':
        sheets_config = config.get('google_sheets', {})
        return GoogleSheetSink(
            sheet_id=sheets_config['sheet_id'],
            api_key=sheets_config.get('api_key', ''),
            access_token=sheets_config.get('access_token'),
            sheet_name=sheets_config.get('sheet_name', 'Sheet1'),
            timeout=sheets_config.get('timeout', 15.0)
        )

    else:
        raise ValueError(f"不支持的 sink 类型: {sink_type}")
