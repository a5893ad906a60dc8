"""
HTTP 接口模块

提供手动触发、交易查询和运行状态接口。路由绑定到传入的跟踪器实例，不持有全局状态。
"""

from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

from wallet_tracker import __version__
from wallet_tracker.logger import log
from wallet_tracker.models import Transaction
from wallet_tracker.transaction_tracker import TransactionTracker
from wallet_tracker.wallet_source import WalletSource


class TransactionResponse(BaseModel):
    """接口返回的交易"""
    tx_id: str
    block_number: int
    block_timestamp: int
    date: str
    sender_address: str
    receiver_address: str
    hash: str
    amount: str
    currency: str
    usd_value: Optional[str] = None
    status: str


class WalletResponse(BaseModel):
    address: str
    last_checked_timestamp: int
    label: Optional[str] = None


class TrackResponse(BaseModel):
    """手动触发结果"""
    success: bool
    message: str
    transactions: List[TransactionResponse]


class StatusResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    state: str
    last_cycle_at: Optional[str] = None


def _serialize(transactions: List[Transaction]) -> List[TransactionResponse]:
    return [TransactionResponse(**tx.to_dict()) for tx in transactions]


def create_router(tracker: TransactionTracker, wallet_source: WalletSource) -> APIRouter:
    """创建绑定到指定跟踪器的 /wallet-tracker 路由"""
    router = APIRouter(prefix="/wallet-tracker", tags=["wallet-tracker"])

    @router.get("/wallets", response_model=List[WalletResponse])
    def list_wallets() -> List[WalletResponse]:
        """下一轮将要跟踪的钱包及其检查点"""
        try:
            wallets = wallet_source.list_wallets()
        except Exception as e:
            log.error(f"获取钱包列表失败: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=f"Wallet source unavailable: {e}")

        return [WalletResponse(**tracker.watermarks.resolve(w).to_dict()) for w in wallets]

    @router.get("/transactions", response_model=List[TransactionResponse])
    def get_all_transactions() -> List[TransactionResponse]:
        return _serialize(tracker.get_all_transactions())

    @router.get("/transactions/{wallet_address}", response_model=List[TransactionResponse])
    def get_wallet_transactions(wallet_address: str) -> List[TransactionResponse]:
        return _serialize(tracker.get_transactions_for_wallet(wallet_address))

    @router.post("/track", response_model=TrackResponse)
    def track() -> TrackResponse:
        """同步执行一轮轮询并返回本轮发现的交易"""
        result = tracker.track()
        return TrackResponse(
            success=result['success'],
            message=result['message'],
            transactions=_serialize(result['transactions']),
        )

    @router.get("/status", response_model=StatusResponse)
    def get_status() -> StatusResponse:
        return StatusResponse(**tracker.get_status())

    return router


def create_app(tracker: TransactionTracker, wallet_source: WalletSource) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        tracker: 已组装好的交易跟踪器
        wallet_source: 钱包列表来源

    Returns:
        FastAPI 实例
    """
    app = FastAPI(
        title="TRON Wallet Tracker API",
        description="Manual triggers and queries for tracked TRON wallet transactions",
        version=__version__,
    )
    app.include_router(create_router(tracker, wallet_source))

    @app.get("/")
    def root():
        return {
            "name": "TRON Wallet Tracker API",
            "version": __version__,
            "status": "/wallet-tracker/status",
        }

    return app
