"""Tool Handler 基础抽象。

定义工具处理器的协议和上下文。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from mcp.types import CallToolResult, TextContent

if TYPE_CHECKING:
    from ..commands import CommandCatalog
    from ..config import Config
    from ..orchestrator import ExecutionRegistry
    from ..runtime import LogCallback
    from ..streaming import StreamingExecutor
    from ..tasks import TaskManager

__all__ = [
    "ToolContext",
    "ToolHandler",
    "error_result",
    "text_result",
]


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    """构建单段文本的工具结果。"""
    return CallToolResult(
        content=[TextContent(type="text", text=text)],
        isError=is_error,
    )


def error_result(message: str) -> CallToolResult:
    return text_result(message, is_error=True)


@dataclass
class ToolContext:
    """工具执行上下文。

    封装工具执行所需的所有依赖，避免在函数间传递大量参数。

    Attributes:
        config: 全局配置
        catalog: 命令解析器
        registry: 流式执行注册表
        executor: 流式执行器
        task_manager: 任务管理器（仅任务模式）
        session_id: 当前 MCP 会话标识
        send_log: 向当前请求发送日志通知的函数
        session_log: 向会话发送日志通知的函数（后台任务使用，请求结束后仍可用）
    """

    config: "Config"
    catalog: "CommandCatalog"
    registry: "ExecutionRegistry"
    executor: "StreamingExecutor"
    task_manager: "Optional[TaskManager]" = None
    session_id: str = ""
    send_log: "Optional[LogCallback]" = None
    session_log: "Optional[LogCallback]" = None


class ToolHandler(ABC):
    """工具处理器协议。

    所有工具处理器必须实现此接口。
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """工具名称。"""
        ...

    @abstractmethod
    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> CallToolResult:
        """处理工具调用。

        Args:
            arguments: 工具参数
            ctx: 执行上下文

        Returns:
            CallToolResult（错误以 isError=True 返回，不抛出）
        """
        ...

    def validate(self, arguments: dict[str, Any]) -> str | None:
        """验证参数。

        Returns:
            错误消息，如果验证通过则返回 None
        """
        return None
