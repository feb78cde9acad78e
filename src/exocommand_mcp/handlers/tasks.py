"""任务工具处理器（仅任务模式）。

处理 getTask / getTaskResult / cancelTask / listTasks 工具调用。
任务按会话隔离：其他会话创建的任务视为不存在。
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import Any

from mcp.types import CallToolResult

from ..errors import TaskError, TaskNotFoundError
from ..tasks import Task, TaskManager
from .base import ToolContext, ToolHandler, error_result, text_result

__all__ = [
    "CancelTaskHandler",
    "GetTaskHandler",
    "GetTaskResultHandler",
    "ListTasksHandler",
]

logger = logging.getLogger(__name__)


class _TaskToolHandler(ToolHandler):
    """任务工具的公共逻辑：参数校验与会话隔离。"""

    requires_task_id = True

    def validate(self, arguments: dict[str, Any]) -> str | None:
        if not self.requires_task_id:
            return None
        task_id = arguments.get("taskId")
        if not isinstance(task_id, str) or not task_id.strip():
            return "Missing required argument: 'taskId'"
        return None

    async def handle(self, arguments: dict[str, Any], ctx: ToolContext) -> CallToolResult:
        if ctx.task_manager is None:
            return error_result(f"Tool '{self.name}' is only available in task mode")

        error = self.validate(arguments)
        if error:
            return error_result(error)

        try:
            if self.requires_task_id:
                self._owned_task(ctx, arguments["taskId"])
            return await self.handle_task(arguments, ctx, ctx.task_manager)
        except TaskError as e:
            return error_result(str(e))

    def _owned_task(self, ctx: ToolContext, task_id: str) -> Task:
        task = ctx.task_manager.get_task(task_id)
        if task.session_id and ctx.session_id and task.session_id != ctx.session_id:
            raise TaskNotFoundError(task_id)
        return task

    @abstractmethod
    async def handle_task(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
        manager: TaskManager,
    ) -> CallToolResult:
        """在会话校验通过后处理工具调用。"""
        ...


class GetTaskHandler(_TaskToolHandler):
    @property
    def name(self) -> str:
        return "getTask"

    async def handle_task(self, arguments, ctx, manager):
        task = manager.get_task(arguments["taskId"])
        return text_result(json.dumps(task.to_dict(), indent=2, ensure_ascii=False))


class GetTaskResultHandler(_TaskToolHandler):
    @property
    def name(self) -> str:
        return "getTaskResult"

    async def handle_task(self, arguments, ctx, manager):
        task_id = arguments["taskId"]
        if arguments.get("wait"):
            result = await manager.wait_task_result(task_id)
        else:
            result = manager.get_task_result(task_id)
        return text_result(result.text, is_error=result.is_error)


class CancelTaskHandler(_TaskToolHandler):
    @property
    def name(self) -> str:
        return "cancelTask"

    async def handle_task(self, arguments, ctx, manager):
        task = manager.cancel_task(arguments["taskId"])
        return text_result(json.dumps(task.to_dict(), indent=2, ensure_ascii=False))


class ListTasksHandler(_TaskToolHandler):
    requires_task_id = False

    @property
    def name(self) -> str:
        return "listTasks"

    async def handle_task(self, arguments, ctx, manager):
        tasks = manager.list_tasks(ctx.session_id or None)
        logger.debug(f"listTasks: {len(tasks)} task(s) for session {ctx.session_id or '-'}")
        return text_result(
            json.dumps({"tasks": [t.to_dict() for t in tasks]}, indent=2, ensure_ascii=False)
        )
