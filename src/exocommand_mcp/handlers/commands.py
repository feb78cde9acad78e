"""命令工具处理器。

处理 listCommands 和 execute 工具调用。execute 根据执行模式选择：
- 流式模式：请求内执行，每行输出作为日志通知发送
- 任务模式：创建后台任务，立即返回任务句柄
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anyio
from mcp.types import CallToolResult

from ..errors import CommandFileError, CommandNotFoundError
from ..runtime import CancellationController
from .base import ToolContext, ToolHandler, error_result, text_result

__all__ = ["ListCommandsHandler", "ExecuteHandler"]

logger = logging.getLogger(__name__)

# 请求取消后，等待进程组退出的额外宽限（秒）
CANCEL_GRACE = 1.0


class ListCommandsHandler(ToolHandler):
    """列出命令文件中的所有命令。"""

    @property
    def name(self) -> str:
        return "listCommands"

    async def handle(self, arguments: dict[str, Any], ctx: ToolContext) -> CallToolResult:
        try:
            commands = ctx.catalog.list()
        except CommandFileError as e:
            return error_result(f"Error loading commands: {e}")

        logger.info(f"listCommands: found {len(commands)} command(s)")
        return text_result(json.dumps([c.to_dict() for c in commands], indent=2, ensure_ascii=False))


class ExecuteHandler(ToolHandler):
    """按名称执行命令。"""

    def __init__(self, request_controller: CancellationController | None = None) -> None:
        """初始化 ExecuteHandler。

        Args:
            request_controller: 请求级取消控制器（客户端取消或断开时由服务层触发）
        """
        self._request_controller = request_controller

    @property
    def name(self) -> str:
        return "execute"

    def validate(self, arguments: dict[str, Any]) -> str | None:
        name = arguments.get("name")
        if not isinstance(name, str) or not name.strip():
            return "Missing required argument: 'name'"

        timeout = arguments.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                return "Invalid argument 'timeout': must be a positive number of seconds"
        return None

    async def handle(self, arguments: dict[str, Any], ctx: ToolContext) -> CallToolResult:
        error = self.validate(arguments)
        if error:
            return error_result(error)

        command_name = arguments["name"]
        timeout = arguments.get("timeout")

        # 命令解析必须在创建任务之前完成，未知命令不会留下任务
        try:
            spec = ctx.catalog.resolve(command_name)
        except CommandNotFoundError as e:
            return error_result(str(e))
        except CommandFileError as e:
            return error_result(f"Error loading config: {e}")

        if ctx.task_manager is not None:
            task = ctx.task_manager.create_task(
                spec,
                session_id=ctx.session_id,
                timeout=timeout,
                log_sink=ctx.session_log,
            )
            return text_result(json.dumps({"task": task.to_dict()}, indent=2))

        execution_id = ctx.registry.generate_execution_id()
        controller = ctx.registry.register(
            execution_id,
            spec.name,
            controller=self._request_controller,
            session_id=ctx.session_id,
        )
        run = asyncio.ensure_future(
            ctx.executor.execute(
                spec,
                ctx.send_log,
                request_signal=controller.signal,
                timeout=timeout,
            )
        )
        try:
            outcome = await asyncio.shield(run)
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            # 请求被取消或连接断开：先触发请求控制器，让进程组按取消路径退出
            controller.cancel("request cancelled")
            with anyio.move_on_after(ctx.config.kill_timeout + CANCEL_GRACE, shield=True):
                outcome = await asyncio.shield(run)
                logger.info(f'Request for "{spec.name}" cancelled: {outcome.kind.value}')
            raise
        finally:
            ctx.registry.unregister(execution_id)

        return text_result(outcome.text, is_error=outcome.is_error)
