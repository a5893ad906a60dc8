from typing import Iterable, List

from wallet_tracker.models import Transaction


def _newest_first(tx: Transaction) -> int:
    return -tx.block_timestamp


def merge(lists: Iterable[List[Transaction]]) -> List[Transaction]:
    """
    合并多组交易并按 block_timestamp 降序排列（最新在前）

    sorted 是稳定排序，时间戳相同的交易保持输入顺序。钱包内（原生 + 代币）
    与跨钱包的合并都使用这一个函数。

    Args:
        lists: 交易列表的集合

    Returns:
        合并后的新列表
    """
    combined = []
    for transactions in lists:
        combined.extend(transactions)
    return sorted(combined, key=_newest_first)
