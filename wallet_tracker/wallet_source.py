import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional
from urllib.parse import quote

import httpx

from wallet_tracker.logger import log
from wallet_tracker.models import Wallet

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"

PLACEHOLDER_SHEET_IDS = {'', 'your_sheet_id_here'}

# 表格中的表头单元格
HEADER_CELL = 'wallets'

# 降级模式下使用的样例钱包
SAMPLE_WALLETS = [
    'TPmJwoz7Wa8Jgc4v6685uyT4FsMpNY6NE',
    'TDZDkLmMRX23kQz1H8vooiSxxuPaJL5bcc',
]


class WalletSource(ABC):
    """钱包列表来源抽象基类"""

    def __init__(self, initial_lookback_hours: float = 24, clock: Callable[[], float] = time.time):
        """
        Args:
            initial_lookback_hours: 首次跟踪的钱包从多少小时前开始抓取
            clock: 返回秒级时间戳的函数（测试时注入）
        """
        self.initial_lookback_seconds = int(initial_lookback_hours * 3600)
        self.clock = clock

    @abstractmethod
    def list_wallets(self) -> List[Wallet]:
        """
        获取当前需要跟踪的钱包

        Returns:
            钱包列表，检查点为初始回看时间
        """
        pass

    def _initial_watermark(self) -> int:
        return int(self.clock()) - self.initial_lookback_seconds

    def _build_wallets(self, addresses: List[str]) -> List[Wallet]:
        """去除空白和重复地址，保持原有顺序"""
        watermark = self._initial_watermark()
        wallets = []
        seen = set()
        for address in addresses:
            address = address.strip()
            if not address or address in seen:
                continue
            seen.add(address)
            wallets.append(Wallet(address=address, last_checked_timestamp=watermark))
        return wallets


class StaticWalletSource(WalletSource):
    """配置文件中固定的钱包列表"""

    def __init__(self, addresses: List[str], **kwargs):
        super().__init__(**kwargs)
        self.addresses = list(addresses)

    def list_wallets(self) -> List[Wallet]:
        return self._build_wallets(self.addresses)


class GoogleSheetWalletSource(WalletSource):
    """从 Google 表格的一列读取钱包地址"""

    def __init__(
        self,
        sheet_id: str,
        api_key: str,
        sheet_range: str = 'Sheet1!I:I',
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.sheet_id = sheet_id
        self.api_key = api_key
        self.sheet_range = sheet_range
        self.client = client or httpx.Client(timeout=timeout)

    def list_wallets(self) -> List[Wallet]:
        """
        读取表格中的钱包列

        Raises:
            httpx.HTTPError: 请求失败，由调用方处理
        """
        url = f"{SHEETS_API_URL}/{self.sheet_id}/values/{quote(self.sheet_range, safe='')}"
        response = self.client.get(url, params={'key': self.api_key})
        response.raise_for_status()

        rows = response.json().get('values') or []
        if not rows:
            log.warning("Google 表格中没有数据")
            return []

        addresses = []
        for row in rows:
            if not row or not isinstance(row[0], str):
                continue
            cell = row[0].strip()
            if cell and cell.lower() != HEADER_CELL:
                addresses.append(cell)

        return self._build_wallets(addresses)


def create_wallet_source(config: dict) -> WalletSource:
    """
    根据配置创建钱包来源

    Args:
        config: 完整配置字典

    Returns:
        WalletSource 实例
    """
    tracking = config['tracking']
    source_config = config.get('wallet_source', {})
    source_type = source_config.get('type', 'static')
    lookback = tracking.get('initial_lookback_hours', 24)

    if source_type == 'static':
        return StaticWalletSource(tracking.get('wallets', []), initial_lookback_hours=lookback)

    elif source_type == 'google_sheets':
        sheets_config = config.get('google_sheets', {})
        sheet_id = sheets_config.get('sheet_id') or ''
        if sheet_id in PLACEHOLDER_SHEET_IDS:
            if not config.get('degraded_mode', False):
                raise ValueError("未配置 GOOGLE_SHEET_ID，且 degraded_mode 已关闭")
            log.warning("未配置 GOOGLE_SHEET_ID，降级模式：使用样例钱包列表")
            return StaticWalletSource(SAMPLE_WALLETS, initial_lookback_hours=lookback)

        return GoogleSheetWalletSource(
            sheet_id=sheet_id,
            api_key=sheets_config.get('api_key', ''),
            sheet_range=sheets_config.get('wallet_range', 'Sheet1!I:I'),
            timeout=sheets_config.get('timeout', 15.0),
            initial_lookback_hours=lookback
        )

    else:
        raise ValueError(f"不支持的钱包来源类型: {source_type}")
