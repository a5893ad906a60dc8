#!/usr/bin/env python3
"""
一次性抓取工具

抓取指定钱包最近一段时间的交易并写入文本文件，不启动调度器和 HTTP 接口。

用法:
    python fetch_transactions.py [地址 ...] [--hours 24] [--output transactions.txt]
"""

import argparse
import os
import sys

from wallet_tracker.chain_fetcher import create_fetcher
from wallet_tracker.config_loader import load_config
from wallet_tracker.logger import log
from wallet_tracker.sinks import TextFileSink
from wallet_tracker.transaction_tracker import TransactionTracker
from wallet_tracker.wallet_source import StaticWalletSource


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="抓取 TRON 钱包交易并写入文本文件")
    parser.add_argument('addresses', nargs='*', help="钱包地址，默认使用配置文件中的 tracking.wallets")
    parser.add_argument('--hours', type=float, default=24, help="回看小时数（默认 24）")
    parser.add_argument('--output', default=None, help="输出文件路径（默认使用 sink.path）")
    parser.add_argument('--config', default='config.yaml', help="配置文件路径")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        log.error(f"配置文件不存在: {args.config}")
        return 1

    addresses = args.addresses or config['tracking']['wallets']
    if not addresses:
        log.error("没有指定钱包地址")
        return 1

    output = args.output or config['sink']['path']

    tracker = TransactionTracker(
        wallet_source=StaticWalletSource(addresses, initial_lookback_hours=args.hours),
        fetcher=create_fetcher(config['tron_api'], config['degraded_mode']),
        sink=TextFileSink(output),
        max_workers=config['tracking']['max_workers']
    )

    try:
        result = tracker.run_cycle()
    finally:
        tracker.fetcher.close()

    log.info(f"共发现 {len(result.transactions)} 笔交易，新写入 {result.persisted} 笔到 {os.path.abspath(output)}")
    if result.error or result.failed_wallets:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
