"""应用生命周期测试。

测试连接结束时的会话清理：
- 流式执行按会话取消
- 后台任务按会话取消
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import POSIX_ONLY
from exocommand_mcp.app import close_sessions
from exocommand_mcp.commands import CommandSpec
from exocommand_mcp.orchestrator import ExecutionRegistry
from exocommand_mcp.runtime import ProcessRunner
from exocommand_mcp.tasks import TaskManager, TaskStatus


class TestCloseSessions:
    """close_sessions 测试。"""

    def test_cancels_streaming_executions_of_known_sessions(self):
        registry = ExecutionRegistry()
        mine = registry.register("exec-1", "build", session_id="session-a")
        unknown = registry.register("exec-2", "build", session_id="session-x")

        assert close_sessions({"session-a"}, registry) == 1

        assert mine.cancelled
        assert mine.signal.reason == "session closed"
        assert not unknown.cancelled

    @POSIX_ONLY
    @pytest.mark.asyncio
    async def test_cancels_running_tasks(self):
        registry = ExecutionRegistry()
        manager = TaskManager(ProcessRunner(term_timeout=0.5, kill_timeout=0.3))
        spec = CommandSpec(name="slow", description="test", command="sleep 5")
        task = manager.create_task(spec, session_id="session-a")
        controller = registry.register("exec-1", "slow", session_id="session-a")

        assert close_sessions({"session-a"}, registry, manager) == 2

        assert controller.cancelled
        assert manager.get_task(task.task_id).status is TaskStatus.CANCELLED
        await asyncio.wait_for(manager.shutdown(), timeout=5)
        assert manager.has_running_tasks() is False
