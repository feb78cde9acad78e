"""Tool Handlers 模块。

提供工具处理器抽象和具体实现。
"""

from .base import ToolContext, ToolHandler, error_result, text_result
from .commands import ExecuteHandler, ListCommandsHandler
from .tasks import (
    CancelTaskHandler,
    GetTaskHandler,
    GetTaskResultHandler,
    ListTasksHandler,
)

__all__ = [
    "ToolContext",
    "ToolHandler",
    "CancelTaskHandler",
    "ExecuteHandler",
    "GetTaskHandler",
    "GetTaskResultHandler",
    "ListCommandsHandler",
    "ListTasksHandler",
    "error_result",
    "text_result",
]
