"""ExoCommand MCP Server。

按名称执行命令文件中预定义的 shell 命令，输出以日志通知的形式流式返回。

环境变量:
    EXO_COMMAND_FILE: 命令文件路径 (默认 ./.exocommand)
    EXO_TASK_MODE: 任务模式 (后台执行 + 轮询)
    EXO_TASK_TTL: 任务结果保留时间 (默认 300s)
    EXO_LOG_DEBUG: 日志输出到临时文件

用法:
    uvx exocommand-mcp
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anyio
from mcp.server import Server
from mcp.types import CallToolResult, LoggingLevel, Tool

from . import __version__
from .commands import CommandCatalog
from .config import Config, get_config
from .handlers import (
    CancelTaskHandler,
    ExecuteHandler,
    GetTaskHandler,
    GetTaskResultHandler,
    ListCommandsHandler,
    ListTasksHandler,
    ToolContext,
    ToolHandler,
    error_result,
)
from .orchestrator import ExecutionRegistry
from .runtime import CancellationController, LogLevel, LogSource
from .streaming import StreamingExecutor
from .tasks import TaskManager
from .tool_schema import TOOL_DESCRIPTIONS, TOOL_TITLES, create_tool_schema, tools_for_mode

__all__ = ["create_server", "session_key"]

logger = logging.getLogger(__name__)

# MCP 日志级别（RFC 5424 顺序）
_LOG_LEVEL_ORDER = [
    "debug",
    "info",
    "notice",
    "warning",
    "error",
    "critical",
    "alert",
    "emergency",
]


def session_key(session: Any) -> str:
    """会话标识（同一连接内稳定）。"""
    return f"session-{id(session):x}"


def _build_handler(name: str, request_controller: CancellationController) -> ToolHandler | None:
    if name == "listCommands":
        return ListCommandsHandler()
    if name == "execute":
        return ExecuteHandler(request_controller)
    if name == "getTask":
        return GetTaskHandler()
    if name == "getTaskResult":
        return GetTaskResultHandler()
    if name == "cancelTask":
        return CancelTaskHandler()
    if name == "listTasks":
        return ListTasksHandler()
    return None


def create_server(
    config: Config | None = None,
    registry: ExecutionRegistry | None = None,
    task_manager: TaskManager | None = None,
    executor: StreamingExecutor | None = None,
    sessions: set[str] | None = None,
) -> Server:
    """创建 MCP Server 实例。

    Args:
        config: 配置（默认读取全局配置）
        registry: 流式执行注册表（用于信号隔离）
        task_manager: 任务管理器，提供时以任务模式运行
        executor: 流式执行器
        sessions: 可选的会话集合，记录出现过的会话标识（用于退出时清理任务）
    """
    config = config or get_config()
    registry = registry if registry is not None else ExecutionRegistry()
    executor = executor or StreamingExecutor()
    catalog = CommandCatalog(config.command_file)
    task_mode = task_manager is not None
    server = Server("exocommand", version=__version__)

    # 客户端通过 logging/setLevel 设置的最低日志级别
    min_log_level: dict[str, str] = {"level": "debug"}

    def log_enabled(level: LogLevel) -> bool:
        return _LOG_LEVEL_ORDER.index(level.value) >= _LOG_LEVEL_ORDER.index(min_log_level["level"])

    @server.set_logging_level()
    async def set_logging_level(level: LoggingLevel) -> None:
        min_log_level["level"] = level
        logger.debug(f"[MCP] logging level set to {level}")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """列出可用工具。"""
        tools = []
        for name in tools_for_mode(task_mode):
            description_key = "execute_task" if task_mode and name == "execute" else name
            tools.append(
                Tool(
                    name=name,
                    title=TOOL_TITLES[name],
                    description=TOOL_DESCRIPTIONS[description_key],
                    inputSchema=create_tool_schema(name),
                )
            )
        logger.debug(f"[MCP] list_tools called, returning {[t.name for t in tools]}")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
        """调用工具。"""
        logger.debug(
            f"[MCP] call_tool request: {name} "
            f"{json.dumps(arguments, ensure_ascii=False, default=str)}"
        )

        if name not in tools_for_mode(task_mode):
            return error_result(f"Unknown tool '{name}'")

        request_ctx = server.request_context
        session = request_ctx.session
        request_id = request_ctx.request_id
        session_id = session_key(session)
        if sessions is not None:
            sessions.add(session_id)

        async def send_log(level: LogLevel, source: LogSource, text: str) -> None:
            if log_enabled(level):
                await session.send_log_message(
                    level=level.value,
                    data=text,
                    logger=source.value,
                    related_request_id=request_id,
                )

        async def session_log(level: LogLevel, source: LogSource, text: str) -> None:
            if log_enabled(level):
                await session.send_log_message(level=level.value, data=text, logger=source.value)

        tool_ctx = ToolContext(
            config=config,
            catalog=catalog,
            registry=registry,
            executor=executor,
            task_manager=task_manager,
            session_id=session_id,
            send_log=send_log,
            session_log=session_log,
        )

        # 请求断开或被客户端取消时触发，作为执行的取消源
        request_controller = CancellationController()
        handler = _build_handler(name, request_controller)

        try:
            return await handler.handle(arguments or {}, tool_ctx)

        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            request_controller.cancel("request cancelled")
            logger.info(f"Tool '{name}' cancelled")
            raise

        except Exception as e:
            logger.error(f"Tool '{name}' failed: type={type(e).__name__}, msg={e}")
            return error_result(str(e))

    return server
