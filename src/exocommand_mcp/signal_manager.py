"""信号管理模块。

实现信号隔离策略，将 OS 信号转换为执行级别的操作：
- SIGINT: 取消所有活动执行和运行中的任务（无活动执行时才退出）
- SIGTERM: 优雅退出（取消所有执行 + 清理 + 退出）

被取消的命令通过进程组信号终止，服务进程本身不会因为 Ctrl+C 而直接退出。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable, Optional

from .orchestrator import ExecutionRegistry
from .tasks import TaskManager

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        registry = ExecutionRegistry()
        signal_manager = SignalManager(registry, task_manager)

        async def main():
            await signal_manager.start()
            try:
                await server.run(...)
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        registry: 流式执行注册表
        task_manager: 后台任务管理器（任务模式下）
    """

    def __init__(
        self,
        registry: ExecutionRegistry,
        task_manager: Optional[TaskManager] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self.registry = registry
        self.task_manager = task_manager
        self._on_shutdown = on_shutdown

        self._shutdown_requested: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug("Signal handlers installed")
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def has_active_work(self) -> bool:
        """是否存在活动的流式执行或运行中的任务。"""
        if self.registry.has_active_executions():
            return True
        return self.task_manager is not None and self.task_manager.has_running_tasks()

    def cancel_all(self, reason: str = "interrupted") -> int:
        """取消所有活动执行和运行中的任务。

        Returns:
            被取消的执行与任务总数
        """
        count = self.registry.cancel_all(reason)
        if self.task_manager is not None:
            count += self.task_manager.cancel_all(f"Task cancelled: {reason}")
        return count

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 如果有活动执行：取消它们
        - 如果没有活动执行：请求关闭
        """
        if self.has_active_work():
            count = self.cancel_all("interrupted")
            logger.info(f"SIGINT received, cancelled {count} execution(s)")
        else:
            logger.info("SIGINT received, no active executions, requesting shutdown")
            self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：取消所有执行并请求关闭。"""
        logger.info("SIGTERM received, initiating graceful shutdown")

        if self.has_active_work():
            count = self.cancel_all("server shutting down")
            logger.info(f"Cancelled {count} execution(s) for shutdown")

        self._request_shutdown()

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        if self.has_active_work():
            count = self.cancel_all("server shutting down")
            logger.info(f"Cancelled {count} execution(s)")
        self._request_shutdown()
