from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from peewee import DatabaseProxy, Model, CharField, DecimalField, BigIntegerField, DateTimeField

# 数据库实例将在 DatabaseHandler 中初始化
db = DatabaseProxy()


class TxStatus(str, Enum):
    """交易执行状态"""
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'


def iso_from_millis(timestamp_ms: int) -> str:
    """毫秒时间戳转换为 UTC ISO-8601 字符串"""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class Transaction:
    """
    标准化后的链上交易

    block_timestamp 统一使用毫秒时间戳（TronGrid 原生单位），
    iso_date 仅用于展示，排序以 block_timestamp 为准。
    """
    tx_id: str
    block_number: int
    block_timestamp: int
    sender_address: str
    receiver_address: str
    amount: Decimal
    currency: str
    status: TxStatus
    hash: str = ''
    usd_value: Optional[Decimal] = None
    iso_date: str = field(default='', compare=False)

    def __post_init__(self):
        # frozen dataclass 只能通过 object.__setattr__ 填充派生字段
        if not self.hash:
            object.__setattr__(self, 'hash', self.tx_id)
        if not self.iso_date:
            object.__setattr__(self, 'iso_date', iso_from_millis(self.block_timestamp))

    def involves(self, address: str) -> bool:
        return self.sender_address == address or self.receiver_address == address

    def direction_for(self, addresses: Iterable[str]) -> str:
        """
        相对被跟踪钱包集合的方向

        Args:
            addresses: 被跟踪的钱包地址

        Returns:
            'SELF'（发送方与接收方相同）、'OUT'（发送方被跟踪）或 'IN'
        """
        if self.sender_address == self.receiver_address:
            return 'SELF'
        if self.sender_address in set(addresses):
            return 'OUT'
        return 'IN'

    def to_dict(self) -> dict:
        """转换为可 JSON 序列化的字典"""
        return {
            'tx_id': self.tx_id,
            'block_number': self.block_number,
            'block_timestamp': self.block_timestamp,
            'date': self.iso_date,
            'sender_address': self.sender_address,
            'receiver_address': self.receiver_address,
            'hash': self.hash,
            'amount': str(self.amount),
            'currency': self.currency,
            'usd_value': str(self.usd_value) if self.usd_value is not None else None,
            'status': self.status.value,
        }


@dataclass(frozen=True)
class Wallet:
    """被跟踪的钱包，last_checked_timestamp 为秒级时间戳"""
    address: str
    last_checked_timestamp: int
    label: Optional[str] = None

    def with_watermark(self, timestamp: int) -> 'Wallet':
        return replace(self, last_checked_timestamp=timestamp)

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'last_checked_timestamp': self.last_checked_timestamp,
            'label': self.label,
        }


class TransactionRecord(Model):
    """已写入的交易记录，tx_id 作为主键用于去重"""
    tx_id = CharField(primary_key=True, max_length=255)
    block_number = BigIntegerField()
    block_timestamp = BigIntegerField(index=True)
    sender_address = CharField(max_length=255, index=True)
    receiver_address = CharField(max_length=255, index=True)
    hash = CharField(max_length=255)
    amount = DecimalField(max_digits=40, decimal_places=18)
    currency = CharField(max_length=64)
    usd_value = DecimalField(max_digits=36, decimal_places=8, null=True)
    status = CharField(max_length=16)
    recorded_at = DateTimeField()

    class Meta:
        database = db
        table_name = 'transactions'


class WalletCheckpoint(Model):
    """钱包同步检查点模型（秒级时间戳）"""
    wallet_address = CharField(primary_key=True, max_length=255)
    last_checked_timestamp = BigIntegerField(index=True)
    updated_at = DateTimeField(index=True)

    class Meta:
        database = db
        table_name = 'wallet_checkpoints'
