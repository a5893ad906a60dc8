"""
TronGrid 数据抓取模块

提供原生转账与 TRC20 转账两类原始记录的抓取。抓取接口只负责网络与分页，
记录的解析和过滤由 tron_mapper 完成。
"""

import random
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from wallet_tracker.logger import log

TRONGRID_URL = "https://api.trongrid.io"

# 占位符形式的 API Key 视为未配置
PLACEHOLDER_API_KEYS = {'', 'your_tron_api_key_here'}

# 样例数据使用的对手方地址
SAMPLE_COUNTERPARTIES = [
    'TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE',
    'TLpReiKYkqW9pSMDt7BRbZK2AfNYbnASpA',
]

USDT_CONTRACT = 'TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t'


class FetchError(Exception):
    """抓取基础异常类"""
    pass


class NetworkError(FetchError):
    """网络错误或可重试的服务端错误"""
    pass


class FetchedRecords(list):
    """
    一次抓取得到的原始记录

    truncated 为 True 表示达到了翻页上限：记录按时间正序返回，
    比最后一条更新的记录还没有取回。
    """

    def __init__(self, records=(), truncated: bool = False):
        super().__init__(records)
        self.truncated = truncated


def newest_block_timestamp(records: List[dict]) -> Optional[int]:
    """原始记录中最大的 block_timestamp（毫秒），没有可用时间戳时返回 None"""
    timestamps = [
        record['block_timestamp'] for record in records
        if isinstance(record, dict)
        and isinstance(record.get('block_timestamp'), int)
        and not isinstance(record.get('block_timestamp'), bool)
    ]
    return max(timestamps) if timestamps else None


class ChainDataFetcher(ABC):
    """链上数据抓取抽象基类"""

    @abstractmethod
    def fetch_native_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        """
        获取原生转账（TRX / TRC10）原始记录

        Args:
            address: 钱包地址
            min_timestamp: 下界，秒级时间戳

        Returns:
            原始记录列表；实现可以返回 FetchedRecords 以标记结果被截断
        """
        pass

    @abstractmethod
    def fetch_token_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        """
        获取 TRC20 代币转账原始记录

        Args:
            address: 钱包地址
            min_timestamp: 下界，秒级时间戳

        Returns:
            原始记录列表；实现可以返回 FetchedRecords 以标记结果被截断
        """
        pass

    def close(self):
        pass


class TronGridFetcher(ChainDataFetcher):
    """TronGrid v1 接口实现"""

    def __init__(
        self,
        api_key: str,
        api_url: str = TRONGRID_URL,
        page_size: int = 50,
        max_pages: int = 5,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        proxy: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        """
        初始化抓取器

        Args:
            api_key: TronGrid API Key（TRON-PRO-API-KEY 请求头）
            api_url: API 根地址
            page_size: 每页记录数
            max_pages: 每次抓取最多翻页数
            timeout: 单次请求超时（秒）
            max_retries: 网络错误最大尝试次数
            retry_backoff: 重试退避基数（秒），按 1x, 2x, 4x 递增
            proxy: 代理服务器地址（可选）
            client: 自定义 httpx.Client（测试时注入）
        """
        self.api_url = api_url.rstrip('/')
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff

        headers = {'Accept': 'application/json'}
        if api_key:
            headers['TRON-PRO-API-KEY'] = api_key

        if client is not None:
            client.headers.update(headers)
            self.client = client
        elif proxy:
            self.client = httpx.Client(headers=headers, timeout=timeout, proxy=proxy)
        else:
            self.client = httpx.Client(headers=headers, timeout=timeout)

    def fetch_native_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        return self._fetch_paged(f"/v1/accounts/{address}/transactions", address, min_timestamp)

    def fetch_token_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        records = self._fetch_paged(
            f"/v1/accounts/{address}/transactions/trc20",
            address,
            min_timestamp,
            extra_params={'only_confirmed': 'true'}
        )

        # only_confirmed 查询只返回已确认的 Transfer 事件，在此补上结果码
        marked = FetchedRecords(truncated=records.truncated)
        for record in records:
            if isinstance(record, dict) and 'contractRet' not in record:
                record = {**record, 'contractRet': 'SUCCESS'}
            marked.append(record)
        return marked

    def close(self):
        self.client.close()

    def _fetch_paged(
        self,
        endpoint: str,
        address: str,
        min_timestamp: Optional[int],
        extra_params: Optional[Dict[str, Any]] = None
    ) -> FetchedRecords:
        """
        按 fingerprint 分页获取记录

        Args:
            endpoint: 接口路径
            address: 钱包地址（仅用于日志）
            min_timestamp: 秒级下界，请求时转换为 TronGrid 使用的毫秒
            extra_params: 额外查询参数

        Returns:
            所有页的 data 合并结果（时间正序）；达到翻页上限时 truncated 为 True

        Raises:
            FetchError: 请求失败或响应格式错误
        """
        # 按时间正序翻页，达到上限时缺的是最新的记录，下一轮从已取到的位置继续
        params: Dict[str, Any] = {
            'limit': self.page_size,
            'order_by': 'block_timestamp,asc',
        }
        if min_timestamp:
            params['min_timestamp'] = int(min_timestamp) * 1000
        if extra_params:
            params.update(extra_params)

        records = FetchedRecords()
        for page in range(self.max_pages):
            payload = self._get_with_retry(endpoint, params)

            data = payload.get('data') if isinstance(payload, dict) else None
            if not isinstance(data, list):
                raise FetchError(f"{endpoint} 响应缺少 data 列表")

            records.extend(data)

            meta = payload.get('meta') or {}
            fingerprint = meta.get('fingerprint') if isinstance(meta, dict) else None
            if not fingerprint or len(data) < self.page_size:
                break

            params = {**params, 'fingerprint': fingerprint}
        else:
            records.truncated = True
            log.warning(f"钱包 {address}: {endpoint} 已达到最大翻页数 {self.max_pages}，更新的记录留待下一轮")

        log.debug(f"钱包 {address}: {endpoint} 获取 {len(records)} 条记录")
        return records

    def _get_with_retry(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        发送 GET 请求，网络错误时按指数退避重试

        Raises:
            FetchError: 非重试类错误或重试耗尽
        """
        url = f"{self.api_url}{endpoint}"

        for attempt in range(self.max_retries):
            try:
                response = self.client.get(url, params=params)

                if response.status_code == 429 or response.status_code >= 500:
                    raise NetworkError(f"HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise FetchError(f"HTTP {response.status_code}: {response.text[:200]}")

                return response.json()

            except (httpx.TransportError, NetworkError) as e:
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_backoff * (2 ** attempt)  # 指数退避: 1x, 2x, 4x
                    log.warning(
                        f"请求 {endpoint} 失败，{wait_time}秒后重试 "
                        f"({attempt + 1}/{self.max_retries}): {e}"
                    )
                    time.sleep(wait_time)
                else:
                    raise NetworkError(f"请求 {endpoint} 失败，已达最大重试次数: {e}") from e

            except ValueError as e:
                raise FetchError(f"{endpoint} 返回了无法解析的 JSON: {e}") from e

        raise NetworkError(f"请求 {endpoint} 失败")


class SampleDataFetcher(ChainDataFetcher):
    """
    降级模式下使用的样例数据

    生成 TronGrid 格式的原始记录，时间落在最近一小时内，让整个流程在
    没有 API Key 的情况下也能运行。
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def fetch_native_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        now_ms = int(time.time() * 1000)
        block_timestamp = now_ms - self.rng.randint(0, 3600) * 1000
        return [
            {
                'txID': uuid.uuid4().hex + uuid.uuid4().hex,
                'blockNumber': 55000000 + self.rng.randint(0, 1000),
                'block_timestamp': block_timestamp,
                'ret': [{'contractRet': 'SUCCESS'}],
                'raw_data': {
                    'contract': [{
                        'type': 'TransferContract',
                        'parameter': {
                            'value': {
                                'owner_address': address,
                                'to_address': self.rng.choice(SAMPLE_COUNTERPARTIES),
                                'amount': self.rng.randint(1, 500) * 1_000_000,
                            }
                        }
                    }]
                }
            }
        ]

    def fetch_token_transfers(self, address: str, min_timestamp: Optional[int]) -> List[dict]:
        now_ms = int(time.time() * 1000)
        return [
            {
                'transaction_id': uuid.uuid4().hex + uuid.uuid4().hex,
                'block_number': 55000000 + self.rng.randint(0, 1000),
                'block_timestamp': now_ms - self.rng.randint(0, 3600) * 1000,
                'from': self.rng.choice(SAMPLE_COUNTERPARTIES),
                'to': address,
                'type': 'Transfer',
                'value': str(self.rng.randint(1, 500) * 1_000_000),
                'contractRet': 'SUCCESS',
                'token_info': {
                    'symbol': 'USDT',
                    'address': USDT_CONTRACT,
                    'decimals': 6,
                    'name': 'Tether USD'
                }
            }
        ]


def create_fetcher(api_config: dict, degraded_mode: bool) -> ChainDataFetcher:
    """
    根据配置创建抓取器

    Args:
        api_config: tron_api 配置段
        degraded_mode: 是否允许在缺少 API Key 时使用样例数据

    Returns:
        ChainDataFetcher 实例

    Raises:
        ValueError: 未配置 API Key 且未开启降级模式
    """
    api_key = api_config.get('api_key') or ''
    if api_key in PLACEHOLDER_API_KEYS:
        if not degraded_mode:
            raise ValueError("未配置 TRON_API_KEY，且 degraded_mode 已关闭")
        log.warning("未配置 TRON_API_KEY，降级模式：使用样例交易数据")
        return SampleDataFetcher()

    return TronGridFetcher(
        api_key=api_key,
        api_url=api_config.get('url', TRONGRID_URL),
        page_size=api_config.get('page_size', 50),
        max_pages=api_config.get('max_pages', 5),
        timeout=api_config.get('timeout', 15.0),
        max_retries=api_config.get('max_retries', 3),
        retry_backoff=api_config.get('retry_backoff', 1.0),
        proxy=api_config.get('proxy')
    )
