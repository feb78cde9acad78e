"""ExecutionRegistry 模块测试。

测试执行注册表的基本功能：
- 执行登记和注销
- 批量取消（触发 CancellationController）
- 活动状态查询
"""

from __future__ import annotations

import pytest

from exocommand_mcp.orchestrator import ExecutionInfo, ExecutionRegistry
from exocommand_mcp.runtime import CancellationController


class TestExecutionRegistry:
    """ExecutionRegistry 基本功能测试。"""

    def test_generate_execution_id(self):
        """生成唯一执行 ID。"""
        id1 = ExecutionRegistry.generate_execution_id()
        id2 = ExecutionRegistry.generate_execution_id()
        assert id1 != id2
        assert len(id1) == 36  # UUID4 格式

    def test_register_and_unregister(self):
        registry = ExecutionRegistry()

        controller = registry.register("exec-1", "build")
        assert isinstance(controller, CancellationController)
        assert "exec-1" in registry
        assert len(registry) == 1

        assert registry.unregister("exec-1") is True
        assert "exec-1" not in registry
        assert len(registry) == 0

    def test_register_uses_given_controller(self):
        registry = ExecutionRegistry()
        controller = CancellationController()
        assert registry.register("exec-1", "build", controller) is controller

    def test_register_duplicate_raises_error(self):
        registry = ExecutionRegistry()
        registry.register("exec-1", "build")

        with pytest.raises(ValueError, match="already registered"):
            registry.register("exec-1", "test")

    def test_unregister_nonexistent_returns_false(self):
        assert ExecutionRegistry().unregister("nonexistent") is False

    def test_execution_info_repr(self):
        info = ExecutionInfo("exec-1", "build", CancellationController(), session_id="s-1")
        assert info.is_active
        assert "command=build" in repr(info)
        assert "status=running" in repr(info)


class TestCancellation:
    """取消操作测试。"""

    def test_cancel_all(self):
        registry = ExecutionRegistry()
        c1 = registry.register("exec-1", "build")
        c2 = registry.register("exec-2", "test")
        c2.cancel()

        assert registry.cancel_all("stop") == 1
        assert c1.cancelled and c2.cancelled
        assert c1.signal.reason == "stop"

    def test_cancel_session(self):
        registry = ExecutionRegistry()
        mine = registry.register("exec-1", "build", session_id="a")
        other = registry.register("exec-2", "build", session_id="b")

        assert registry.cancel_session("a") == 1
        assert mine.cancelled
        assert mine.signal.reason == "session closed"
        assert not other.cancelled

        # 重复取消不计数
        assert registry.cancel_session("a") == 0


class TestActiveState:
    """活动状态查询测试。"""

    def test_active_count_excludes_cancelled(self):
        registry = ExecutionRegistry()
        assert registry.has_active_executions() is False

        first = registry.register("exec-1", "build")
        registry.register("exec-2", "test")
        first.cancel()

        assert registry.has_active_executions() is True
        assert registry.active_count == 1
        assert len(registry) == 2

    def test_all_cancelled_is_inactive(self):
        registry = ExecutionRegistry()
        registry.register("exec-1", "build")
        registry.cancel_all()

        assert registry.has_active_executions() is False
        assert "exec-1" in registry
