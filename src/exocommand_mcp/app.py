"""ExoCommand MCP 应用入口。

包含服务器生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

from mcp.server.stdio import stdio_server

from .commands import load_command_file
from .config import get_config
from .errors import CommandFileError
from .orchestrator import ExecutionRegistry
from .runtime import ProcessRunner
from .server import create_server
from .signal_manager import SignalManager
from .streaming import StreamingExecutor
from .tasks import TaskManager

__all__ = ["close_sessions", "run_server", "main"]

logger = logging.getLogger(__name__)


def _resolve_task_mode() -> bool:
    """环境变量优先，其次读取命令文件中的 taskMode。"""
    config = get_config()
    file_task_mode = None
    try:
        command_file = load_command_file(config.command_file)
        file_task_mode = command_file.task_mode
        logger.info(
            f"Loaded {len(command_file.commands)} command(s) from {config.command_file}"
        )
        if command_file.port is not None:
            logger.debug(f"Ignoring port {command_file.port}: stdio transport")
    except CommandFileError as e:
        # 命令文件在每次调用时重新读取，这里只提示
        logger.warning(f"{e}; tools will report the error until the file is fixed")
    return config.resolve_task_mode(file_task_mode)


def close_sessions(
    sessions: set[str],
    registry: ExecutionRegistry,
    task_manager: TaskManager | None = None,
) -> int:
    """关闭会话：取消其流式执行和运行中的任务。

    Returns:
        被取消的执行与任务总数
    """
    cancelled = 0
    for session_id in sorted(sessions):
        cancelled += registry.cancel_session(session_id)
        if task_manager is not None:
            cancelled += task_manager.close_session(session_id)
    return cancelled


async def run_server() -> None:
    """运行 MCP Server。

    启动 MCP 服务器（stdio），并集成信号管理器以支持：
    - SIGINT: 取消活动执行（而不是直接退出）
    - SIGTERM: 优雅退出

    使用并发任务架构：
    - server_task: 运行 MCP server
    - shutdown_watcher: 监听 shutdown 事件并取消 server_task
    """
    config = get_config()
    task_mode = _resolve_task_mode()
    logger.info(f"Starting ExoCommand MCP Server ({'task' if task_mode else 'streaming'} mode): {config}")

    runner = ProcessRunner(kill_timeout=config.kill_timeout)
    registry = ExecutionRegistry()
    task_manager = (
        TaskManager(runner, default_ttl=config.task_ttl, poll_interval=config.poll_interval)
        if task_mode
        else None
    )
    sessions: set[str] = set()
    server_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    def on_shutdown():
        """信号管理器触发的关闭回调。"""
        logger.info("Shutdown callback triggered")
        # 关闭 stdin 以中断 stdio_server 的阻塞读取
        try:
            sys.stdin.close()
            logger.debug("stdin closed to unblock stdio_server")
        except Exception as e:
            logger.debug(f"Error closing stdin: {e}")

    signal_manager = SignalManager(
        registry=registry,
        task_manager=task_manager,
        on_shutdown=on_shutdown,
    )

    server = create_server(
        config,
        registry=registry,
        task_manager=task_manager,
        executor=StreamingExecutor(runner),
        sessions=sessions,
    )

    async def _run_server_impl():
        logger.debug("Starting MCP server with stdio transport")
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
        logger.debug("MCP server completed normally")

    async def _watch_shutdown():
        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown signal received, cancelling server task...")
        if server_task and not server_task.done():
            server_task.cancel()

    try:
        await signal_manager.start()

        server_task = asyncio.create_task(_run_server_impl(), name="mcp-server")
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        try:
            await server_task
        except asyncio.CancelledError:
            logger.info("Server task cancelled by shutdown signal")

    finally:
        logger.info("run_server: entering finally block")

        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        # 连接关闭后不能留下孤儿进程
        close_sessions(sessions, registry, task_manager)
        registry.cancel_all("server shutting down")
        if task_manager is not None:
            await task_manager.shutdown()

        await signal_manager.stop()
        logger.info("run_server: cleanup completed")


def main() -> None:
    """主入口点。"""
    config = get_config()

    # stdout 是 JSON-RPC 通道，日志只能写 stderr 或文件
    log_handlers: list[logging.Handler] = []
    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 exocommand_mcp 命名空间启用详细日志
    logging.getLogger("exocommand_mcp").setLevel(log_level)

    asyncio.run(run_server())


if __name__ == "__main__":
    main()
