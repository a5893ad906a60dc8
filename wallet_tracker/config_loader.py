import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from wallet_tracker.logger import log
from wallet_tracker.wallet_source import PLACEHOLDER_SHEET_IDS

SINK_TYPES = ['file', 'database', 'google_sheets']
WALLET_SOURCE_TYPES = ['static', 'google_sheets']

# 环境变量 -> (配置段, 键)
ENV_OVERRIDES = {
    'TRON_API_URL': ('tron_api', 'url'),
    'TRON_API_KEY': ('tron_api', 'api_key'),
    'GOOGLE_SHEETS_API_KEY': ('google_sheets', 'api_key'),
    'GOOGLE_SHEETS_ACCESS_TOKEN': ('google_sheets', 'access_token'),
    'GOOGLE_SHEET_ID': ('google_sheets', 'sheet_id'),
    'GOOGLE_SHEET_RANGE': ('google_sheets', 'wallet_range'),
    'DATABASE_URL': ('database', 'url'),
}


def load_config(path: str = "config.yaml", env_file: Optional[str] = None) -> dict:
    """
    从指定路径加载 YAML 配置文件并返回一个字典

    Args:
        path: 配置文件路径，相对路径从项目根目录查找
        env_file: .env 文件路径，默认使用项目根目录下的 .env

    Returns:
        校验并填充默认值后的配置字典

    Raises:
        FileNotFoundError: 配置文件不存在
        ValueError: 配置内容错误
    """
    root_dir = Path(__file__).parent.parent

    # 首先加载 .env 文件（如果存在）
    env_path = Path(env_file) if env_file else root_dir / '.env'
    if env_path.exists():
        load_dotenv(env_path)
        log.info(f"已加载 .env 文件: {env_path}")
    else:
        log.info("未找到 .env 文件，使用系统环境变量")

    config_path = Path(path)

    # 如果路径不是绝对路径,尝试从项目根目录查找
    if not config_path.is_absolute() and not config_path.exists():
        config_path = root_dir / path

    if not config_path.exists():
        raise FileNotFoundError(f"配置文件不存在: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not config or not isinstance(config, dict):
        raise ValueError(f"配置文件为空或格式错误: {path}")

    _apply_env_overrides(config)
    return validate_config(config)


def _apply_env_overrides(config: dict):
    """环境变量中的密钥和连接信息优先于配置文件"""
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            if config.get(section) is None:
                config[section] = {}
            config[section][key] = value

    interval = os.environ.get('CHECK_INTERVAL_MINUTES')
    if interval:
        if config.get('tracking') is None:
            config['tracking'] = {}
        try:
            config['tracking']['check_interval_minutes'] = float(interval)
        except ValueError:
            raise ValueError(f"环境变量 CHECK_INTERVAL_MINUTES 必须是数字，当前值: {interval}")


def validate_config(config: dict) -> dict:
    """
    验证配置的完整性并设置默认值

    Args:
        config: 原始配置字典

    Returns:
        验证后的配置字典

    Raises:
        ValueError: 配置验证失败
    """
    for section in ('tracking', 'wallet_source', 'tron_api', 'google_sheets', 'sink',
                    'database', 'api_server', 'logging'):
        if config.get(section) is None:
            config[section] = {}
        elif not isinstance(config[section], dict):
            raise ValueError(f"配置段 '{section}' 必须是字典类型")

    tracking = config['tracking']
    tracking['wallets'] = _validate_wallets(tracking.get('wallets', []))

    interval = tracking.setdefault('check_interval_minutes', 60)
    if not isinstance(interval, (int, float)) or interval <= 0:
        raise ValueError(f"check_interval_minutes 必须是正数，当前值: {interval}")

    lookback = tracking.setdefault('initial_lookback_hours', 24)
    if not isinstance(lookback, (int, float)) or lookback < 0:
        raise ValueError(f"initial_lookback_hours 不能为负数，当前值: {lookback}")

    max_workers = tracking.setdefault('max_workers', 4)
    if not isinstance(max_workers, int) or max_workers < 1:
        raise ValueError(f"max_workers 必须是正整数，当前值: {max_workers}")

    history = tracking.setdefault('max_transactions_per_wallet', 1000)
    if not isinstance(history, int) or history < 1:
        raise ValueError(f"max_transactions_per_wallet 必须是正整数，当前值: {history}")

    source_type = config['wallet_source'].setdefault('type', 'static')
    if source_type not in WALLET_SOURCE_TYPES:
        raise ValueError(f"wallet_source.type 必须是 {WALLET_SOURCE_TYPES} 之一，当前值: {source_type}")

    sink_type = config['sink'].setdefault('type', 'file')
    if sink_type not in SINK_TYPES:
        raise ValueError(f"sink.type 必须是 {SINK_TYPES} 之一，当前值: {sink_type}")
    config['sink'].setdefault('path', 'transactions.txt')

    if sink_type == 'database' and not config['database'].get('url'):
        raise ValueError("sink.type 为 database 时必须配置 database.url")

    if sink_type == 'google_sheets' and (config['google_sheets'].get('sheet_id') or '') in PLACEHOLDER_SHEET_IDS:
        raise ValueError("sink.type 为 google_sheets 时必须配置有效的 google_sheets.sheet_id（不能是占位符）")

    if source_type == 'static' and not tracking['wallets']:
        log.warning("wallet_source 为 static，但 tracking.wallets 为空")

    tron_api = config['tron_api']
    tron_api.setdefault('url', 'https://api.trongrid.io')
    tron_api.setdefault('timeout', 15.0)
    if not isinstance(tron_api['timeout'], (int, float)) or tron_api['timeout'] <= 0:
        raise ValueError(f"tron_api.timeout 必须是正数，当前值: {tron_api['timeout']}")
    tron_api.setdefault('page_size', 50)
    tron_api.setdefault('max_pages', 5)
    tron_api.setdefault('max_retries', 3)
    tron_api.setdefault('retry_backoff', 1.0)

    config['google_sheets'].setdefault('wallet_range', 'Sheet1!I:I')
    config['google_sheets'].setdefault('sheet_name', 'Sheet1')

    config.setdefault('degraded_mode', False)

    api_server = config['api_server']
    api_server.setdefault('enabled', True)
    api_server.setdefault('host', '127.0.0.1')
    api_server.setdefault('port', 3000)

    config['logging'].setdefault('level', 'INFO')
    config['logging'].setdefault('log_dir', 'logs')

    return config


def _validate_wallets(wallets) -> list:
    """
    验证静态钱包列表

    Args:
        wallets: 地址字符串列表

    Returns:
        去除空白后的地址列表

    Raises:
        ValueError: 列表格式错误
    """
    if not wallets:
        return []

    if not isinstance(wallets, list):
        raise ValueError("tracking.wallets 必须是列表")

    validated = []
    for idx, address in enumerate(wallets):
        if not isinstance(address, str) or not address.strip():
            raise ValueError(f"tracking.wallets 第 #{idx} 项必须是非空字符串")
        validated.append(address.strip())

    return validated
