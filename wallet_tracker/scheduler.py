import threading
from typing import Optional

from wallet_tracker.logger import log
from wallet_tracker.transaction_tracker import TransactionTracker


class CycleScheduler:
    """按固定间隔触发 TransactionTracker.run_cycle 的后台线程"""

    def __init__(self, tracker: TransactionTracker, interval_seconds: float, run_on_start: bool = True):
        """
        Args:
            tracker: 交易跟踪器
            interval_seconds: 轮询间隔（秒）
            run_on_start: 启动后是否立即执行一轮
        """
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start

        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """启动调度线程"""
        if self.running:
            log.warning("调度器已在运行")
            return

        self.stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='cycle-scheduler', daemon=True)
        self._thread.start()
        log.info(f"调度器已启动，轮询间隔 {self.interval_seconds / 60:g} 分钟")

    def stop(self, timeout: Optional[float] = None):
        """停止调度，等待正在进行的一轮结束"""
        log.info("正在停止调度器...")
        self.stop_event.set()

        if self._thread:
            self._thread.join(timeout)
            self._thread = None

        log.info("调度器已停止")

    def _run(self):
        if not self.run_on_start:
            self.stop_event.wait(self.interval_seconds)

        while not self.stop_event.is_set():
            try:
                self.tracker.run_cycle(blocking=False)
            except Exception as e:
                log.error(f"定时交易跟踪出错: {e}", exc_info=True)

            # 等待下一次轮询
            self.stop_event.wait(self.interval_seconds)

    def wait(self, poll_interval: float = 3600):
        """阻塞调用线程直到调度器被停止"""
        while not self.stop_event.wait(poll_interval):
            pass
