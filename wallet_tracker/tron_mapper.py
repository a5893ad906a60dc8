"""
TronGrid 原始记录映射模块

把 TronGrid 返回的两类原始记录（原生 TRX/TRC10 转账与 TRC20 代币转账）
转换为统一的 Transaction，并只保留执行成功且与被跟踪地址相关的记录。
单条记录格式异常时跳过该记录，不影响同批次其他记录。
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from wallet_tracker.logger import log
from wallet_tracker.models import Transaction, TxStatus

# 1 TRX = 10^6 SUN
SUN_PER_TRX = Decimal(10) ** 6

TRANSFER_CONTRACT = 'TransferContract'
TRANSFER_ASSET_CONTRACT = 'TransferAssetContract'
NATIVE_CONTRACT_TYPES = (TRANSFER_CONTRACT, TRANSFER_ASSET_CONTRACT)

NATIVE_SYMBOL = 'TRX'
TRC10_FALLBACK_SYMBOL = 'TRC10'
TRC20_FALLBACK_SYMBOL = 'TRC20'

SUCCESS_CODE = 'SUCCESS'


class MalformedRecordError(ValueError):
    """原始记录缺少必需字段或字段格式错误"""
    pass


class AddressCodec(ABC):
    """地址格式转换协作者（hex -> base58 展示格式）"""

    @abstractmethod
    def to_display(self, raw_address: str) -> str:
        pass


class PassthroughAddressCodec(AddressCodec):
    """
    原样返回地址，不做任何转换

    注意：/v1/accounts/{address}/transactions 返回的 owner_address / to_address
    是 hex 格式（41 开头），而 TRC20 接口的 from / to 是 base58。使用默认转换器时，
    只有被跟踪地址与记录中的地址格式一致才能匹配，对 base58 形式的钱包地址，
    原生转账会因地址不一致被过滤掉。需要真实转换时请注入实现了 base58check 的 AddressCodec。
    """

    def to_display(self, raw_address: str) -> str:
        return raw_address


_default_codec = PassthroughAddressCodec()


def map_native_transfers(
    records: List[dict],
    tracked_address: str,
    codec: Optional[AddressCodec] = None
) -> List[Transaction]:
    """
    映射原生转账记录（TransferContract / TransferAssetContract）

    Args:
        records: /v1/accounts/{address}/transactions 返回的 data 列表
        tracked_address: 被跟踪的钱包地址
        codec: 地址转换器，默认原样返回

    Returns:
        成功且与 tracked_address 相关的交易列表，保持输入顺序
    """
    codec = codec or _default_codec
    transactions = []

    for record in records or []:
        try:
            tx = _map_native_record(record, codec)
        except MalformedRecordError as e:
            log.debug(f"跳过格式异常的原生转账记录: {e}")
            continue

        if tx is not None and _is_relevant(tx, tracked_address):
            transactions.append(tx)

    return transactions


def map_token_transfers(
    records: List[dict],
    tracked_address: str,
    codec: Optional[AddressCodec] = None
) -> List[Transaction]:
    """
    映射 TRC20 代币转账记录

    Args:
        records: /v1/accounts/{address}/transactions/trc20 返回的 data 列表
        tracked_address: 被跟踪的钱包地址
        codec: 地址转换器，默认原样返回

    Returns:
        成功且与 tracked_address 相关的交易列表，保持输入顺序
    """
    codec = codec or _default_codec
    transactions = []

    for record in records or []:
        try:
            tx = _map_token_record(record, codec)
        except MalformedRecordError as e:
            log.debug(f"跳过格式异常的 TRC20 转账记录: {e}")
            continue

        if tx is not None and _is_relevant(tx, tracked_address):
            transactions.append(tx)

    return transactions


def _is_relevant(tx: Transaction, tracked_address: str) -> bool:
    return tx.status == TxStatus.SUCCESS and tx.involves(tracked_address)


def _map_native_record(record: Any, codec: AddressCodec) -> Optional[Transaction]:
    """结构不符合转账合约的记录返回 None，字段异常抛出 MalformedRecordError"""
    if not isinstance(record, dict):
        return None

    raw_data = record.get('raw_data')
    if not isinstance(raw_data, dict):
        return None
    contracts = raw_data.get('contract')
    if not isinstance(contracts, list) or not contracts:
        return None

    contract = contracts[0]
    if not isinstance(contract, dict) or contract.get('type') not in NATIVE_CONTRACT_TYPES:
        return None

    parameter = contract.get('parameter')
    value = parameter.get('value') if isinstance(parameter, dict) else None
    if not isinstance(value, dict):
        return None

    tx_id = _require_str(record, 'txID')
    sender = codec.to_display(_require_str(value, 'owner_address'))
    receiver = codec.to_display(_require_str(value, 'to_address'))
    raw_amount = _to_decimal(value.get('amount'), 'amount')

    if contract['type'] == TRANSFER_CONTRACT:
        amount = raw_amount / SUN_PER_TRX
        currency = NATIVE_SYMBOL
    else:
        # TRC10 精度取决于资产本身，这里保留原始数值
        amount = raw_amount
        currency = value.get('asset_name') or TRC10_FALLBACK_SYMBOL

    return Transaction(
        tx_id=tx_id,
        block_number=_to_int(record.get('blockNumber'), 'blockNumber'),
        block_timestamp=_to_int(record.get('block_timestamp'), 'block_timestamp', required=True),
        sender_address=sender,
        receiver_address=receiver,
        amount=amount,
        currency=currency,
        status=_derive_status(record),
        hash=tx_id,
    )


def _map_token_record(record: Any, codec: AddressCodec) -> Optional[Transaction]:
    if not isinstance(record, dict):
        return None

    # TRC20 接口也会返回 Approval 等事件，只处理 Transfer
    event_type = record.get('type')
    if event_type is not None and event_type != 'Transfer':
        return None

    tx_id = _require_str(record, 'transaction_id')
    sender = codec.to_display(_require_str(record, 'from'))
    receiver = codec.to_display(_require_str(record, 'to'))
    amount = _to_decimal(record.get('value'), 'value')

    token_info = record.get('token_info')
    if not isinstance(token_info, dict):
        token_info = {}

    decimals = token_info.get('decimals')
    if decimals is not None and decimals != '':
        amount = amount / (Decimal(10) ** _to_int(decimals, 'token_info.decimals'))

    currency = token_info.get('symbol') or token_info.get('name') or TRC20_FALLBACK_SYMBOL

    return Transaction(
        tx_id=tx_id,
        block_number=_to_int(record.get('block_number'), 'block_number'),
        block_timestamp=_to_int(record.get('block_timestamp'), 'block_timestamp', required=True),
        sender_address=sender,
        receiver_address=receiver,
        amount=amount,
        currency=currency,
        status=_derive_status(record),
        hash=tx_id,
    )


def _derive_status(record: dict) -> TxStatus:
    """
    只有明确的 SUCCESS 结果码才视为成功

    原生转账的结果码位于 ret[0].contractRet，TRC20 记录使用扁平的 contractRet 字段。
    """
    code = record.get('contractRet')
    if code is None:
        ret = record.get('ret')
        if isinstance(ret, list) and ret and isinstance(ret[0], dict):
            code = ret[0].get('contractRet')

    return TxStatus.SUCCESS if code == SUCCESS_CODE else TxStatus.FAILED


def _require_str(container: dict, key: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedRecordError(f"缺少字段 {key}")
    return value


def _to_decimal(value: Any, name: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise MalformedRecordError(f"缺少字段 {name}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise MalformedRecordError(f"字段 {name} 不是数字: {value!r}")


def _to_int(value: Any, name: str, required: bool = False) -> int:
    if value is None:
        if required:
            raise MalformedRecordError(f"缺少字段 {name}")
        return 0
    if isinstance(value, bool):
        raise MalformedRecordError(f"字段 {name} 不是整数: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRecordError(f"字段 {name} 不是整数: {value!r}")
