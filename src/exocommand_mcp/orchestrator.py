"""执行编排与管理模块。

提供执行级别的隔离和管理，包括：
- ExecutionRegistry: 活动的流式执行的登记和管理
- 执行级别的取消支持（通过 CancellationController，而不是取消 asyncio Task）

这是信号隔离策略的核心组件之一。
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .runtime import CancellationController

__all__ = ["ExecutionRegistry", "ExecutionInfo"]

logger = logging.getLogger(__name__)


@dataclass
class ExecutionInfo:
    """活动执行的信息。

    Attributes:
        execution_id: 唯一执行标识符
        command_name: 命令名
        controller: 该执行的取消控制器
        session_id: 所属会话
        created_at: 创建时间
    """

    execution_id: str
    command_name: str
    controller: CancellationController
    session_id: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return not self.controller.cancelled

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if self.is_active else "cancelled"
        return (
            f"ExecutionInfo(id={self.execution_id[:8]}..., "
            f"command={self.command_name}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ExecutionRegistry:
    """活动执行的注册表。

    管理所有正在执行的流式命令，提供：
    - 执行登记和注销
    - 按会话或全部批量取消
    - 活动状态查询

    线程安全：所有操作都是同步的，由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = ExecutionRegistry()

        execution_id = registry.generate_execution_id()
        controller = registry.register(execution_id, "build", session_id="s-1")

        # 会话断开时取消该会话的执行（触发 controller，进程组被杀掉）
        registry.cancel_session("s-1")

        registry.unregister(execution_id)
        ```
    """

    def __init__(self) -> None:
        self._executions: Dict[str, ExecutionInfo] = {}

    @staticmethod
    def generate_execution_id() -> str:
        """生成唯一的执行 ID（UUID4）。"""
        return str(uuid.uuid4())

    def register(
        self,
        execution_id: str,
        command_name: str,
        controller: Optional[CancellationController] = None,
        session_id: str = "",
    ) -> CancellationController:
        """登记新执行。

        Args:
            execution_id: 唯一执行标识符
            command_name: 命令名
            controller: 取消控制器（默认新建）
            session_id: 所属会话

        Returns:
            该执行的取消控制器

        Raises:
            ValueError: 如果 execution_id 已存在
        """
        if execution_id in self._executions:
            raise ValueError(f"Execution {execution_id} already registered")

        info = ExecutionInfo(
            execution_id=execution_id,
            command_name=command_name,
            controller=controller or CancellationController(),
            session_id=session_id,
        )
        self._executions[execution_id] = info
        logger.debug(f"Registered execution: {info}")
        return info.controller

    def unregister(self, execution_id: str) -> bool:
        """注销执行。

        Returns:
            是否成功注销（执行存在则返回 True）
        """
        info = self._executions.pop(execution_id, None)
        if info is None:
            return False
        logger.debug(f"Unregistered execution: {info}")
        return True

    def cancel_session(self, session_id: str, reason: str = "session closed") -> int:
        """取消某个会话的所有活动执行。"""
        cancelled = 0
        for info in list(self._executions.values()):
            if info.session_id == session_id and info.controller.cancel(reason):
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} execution(s) of session {session_id}")

        return cancelled

    def cancel_all(self, reason: str = "cancelled") -> int:
        """取消所有活动执行。

        Returns:
            成功发起取消的执行数量
        """
        cancelled = 0
        for info in list(self._executions.values()):
            if info.controller.cancel(reason):
                logger.info(f"Cancelled execution: {info}")
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active execution(s)")

        return cancelled

    def has_active_executions(self) -> bool:
        return self.active_count > 0

    @property
    def active_count(self) -> int:
        return sum(1 for info in self._executions.values() if info.is_active)

    def __len__(self) -> int:
        return len(self._executions)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._executions
