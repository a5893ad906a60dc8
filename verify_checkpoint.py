"""查看已保存的钱包检查点"""
from datetime import datetime, timezone

from wallet_tracker.config_loader import load_config
from wallet_tracker.database_handler import DatabaseHandler
from wallet_tracker.models import WalletCheckpoint


def verify_checkpoint():
    """打印数据库中的检查点"""
    config = load_config("config.yaml")
    db_url = config['database'].get('url')
    if not db_url:
        print("未配置 database.url，检查点只保存在内存中")
        return

    DatabaseHandler.initialize_database(db_url)

    checkpoints = WalletCheckpoint.select().order_by(WalletCheckpoint.wallet_address)

    print(f"数据库中共有 {len(checkpoints)} 个检查点:")
    for cp in checkpoints:
        checked_at = datetime.fromtimestamp(cp.last_checked_timestamp, tz=timezone.utc)
        print(f"  钱包: {cp.wallet_address}")
        print(f"  最后检查时间: {checked_at.isoformat()} ({cp.last_checked_timestamp})")
        print(f"  更新时间: {cp.updated_at}")
        print()


if __name__ == "__main__":
    verify_checkpoint()
