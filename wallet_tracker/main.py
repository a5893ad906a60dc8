import logging
import signal
import sys

from wallet_tracker.chain_fetcher import create_fetcher
from wallet_tracker.config_loader import load_config
from wallet_tracker.database_handler import DatabaseHandler
from wallet_tracker.logger import setup_logger, log
from wallet_tracker.scheduler import CycleScheduler
from wallet_tracker.sinks import create_sink
from wallet_tracker.transaction_repository import InMemoryTransactionRepository
from wallet_tracker.transaction_tracker import TransactionTracker
from wallet_tracker.wallet_source import create_wallet_source
from wallet_tracker.watermark import DatabaseWatermarkStore, InMemoryWatermarkStore, WatermarkTracker


def create_watermark_tracker(config: dict) -> WatermarkTracker:
    """
    根据配置创建检查点跟踪器

    配置了 database.url 时检查点持久化到数据库，否则只保存在内存中

    Args:
        config: 配置字典

    Returns:
        WatermarkTracker 实例
    """
    db_url = config['database'].get('url')
    if db_url:
        DatabaseHandler.initialize_database(db_url)
        log.info("检查点将持久化到数据库")
        return WatermarkTracker(DatabaseWatermarkStore())

    log.info("未配置 database.url，检查点只保存在内存中")
    return WatermarkTracker(InMemoryWatermarkStore())


def build_tracker(config: dict):
    """
    组装钱包来源、抓取器、sink 和跟踪器

    Returns:
        (tracker, wallet_source) 元组
    """
    degraded_mode = config['degraded_mode']
    tracking = config['tracking']

    wallet_source = create_wallet_source(config)
    fetcher = create_fetcher(config['tron_api'], degraded_mode)
    watermarks = create_watermark_tracker(config)
    sink = create_sink(config)

    tracker = TransactionTracker(
        wallet_source=wallet_source,
        fetcher=fetcher,
        sink=sink,
        repository=InMemoryTransactionRepository(tracking['max_transactions_per_wallet']),
        watermarks=watermarks,
        max_workers=tracking['max_workers']
    )
    log.info(
        f"组件已创建: 钱包来源={type(wallet_source).__name__}, "
        f"抓取器={type(fetcher).__name__}, sink={type(sink).__name__}"
    )
    return tracker, wallet_source


def main():
    """程序入口"""
    try:
        config = load_config("config.yaml")

        # 配置日志
        log_config = config['logging']
        log_level = getattr(logging, str(log_config['level']).upper(), logging.INFO)
        setup_logger(log_dir=log_config['log_dir'], level=log_level)
        log.info("配置文件加载完成")

        tracker, wallet_source = build_tracker(config)

        interval_seconds = config['tracking']['check_interval_minutes'] * 60
        scheduler = CycleScheduler(tracker, interval_seconds)

        def shutdown():
            scheduler.stop()
            tracker.fetcher.close()
            DatabaseHandler.close()

        api_config = config['api_server']
        if api_config['enabled']:
            import uvicorn
            from wallet_tracker.api_server import create_app

            scheduler.start()
            app = create_app(tracker, wallet_source)
            log.info(f"HTTP 接口监听 {api_config['host']}:{api_config['port']}")
            # uvicorn 自行处理 SIGINT/SIGTERM，返回后再停止调度器
            uvicorn.run(app, host=api_config['host'], port=api_config['port'], log_level='info')
            shutdown()
            return

        # 设置信号处理,支持优雅退出
        def signal_handler(sig, frame):
            log.info("收到退出信号,正在关闭...")
            shutdown()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        scheduler.start()

        # 保持主线程运行，直到收到退出信号
        log.info("跟踪运行中,按 Ctrl+C 退出...")
        scheduler.wait()

    except FileNotFoundError as e:
        log.error(f"配置文件错误: {e}")
        sys.exit(1)
    except Exception as e:
        log.error(f"程序启动失败: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
