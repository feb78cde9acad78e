"""流式执行测试。

测试 StreamingExecutor 与结果分类：
- 成功 / 失败 / 取消 / 超时
- 日志通知发送失败不影响执行
- 执行异常作为 failure 返回
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest import mock

import pytest

from conftest import POSIX_ONLY, LogCollector, live_group_members
from exocommand_mcp.commands import CommandSpec
from exocommand_mcp.runtime import (
    CancellationController,
    ExecutionResult,
    LogLevel,
    LogSource,
    ProcessRunner,
)
from exocommand_mcp.streaming import (
    ExecutionOutcome,
    OutcomeKind,
    StreamingExecutor,
    classify,
    with_output,
)


def _spec(command: str, name: str = "cmd", cwd: str | None = None) -> CommandSpec:
    return CommandSpec(name=name, description="test", command=command, cwd=cwd)


@pytest.fixture
def executor() -> StreamingExecutor:
    return StreamingExecutor(ProcessRunner(term_timeout=0.5, kill_timeout=0.3))


class TestClassify:
    """结果分类测试。"""

    def test_success(self):
        outcome = classify("build", ExecutionResult(0, False), "[stdout] ok")
        assert outcome == ExecutionOutcome(
            OutcomeKind.SUCCESS,
            'Command "build" completed successfully (exit code 0)\n\nOutput:\n[stdout] ok',
            0,
        )
        assert outcome.is_error is False

    def test_failure(self):
        outcome = classify("build", ExecutionResult(2, False), "")
        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.text == 'Command "build" exited with code 2'
        assert outcome.is_error

    def test_killed_beats_zero_exit(self):
        outcome = classify("build", ExecutionResult(0, True), "")
        assert outcome.kind is OutcomeKind.CANCELLED
        assert outcome.text == 'Command "build" was cancelled.'

    def test_timed_out(self):
        outcome = classify("build", ExecutionResult(1, True), "", timed_out=True, timeout=30)
        assert outcome.kind is OutcomeKind.TIMED_OUT
        assert outcome.text == 'Command "build" timed out after 30s.'

    def test_with_output(self):
        assert with_output("status", "") == "status"
        assert with_output("status", "a\nb") == "status\n\nOutput:\na\nb"


@POSIX_ONLY
class TestStreamingExecutor:
    """请求内执行测试。"""

    @pytest.mark.asyncio
    async def test_success_streams_each_line(self, executor: StreamingExecutor, collector: LogCollector):
        outcome = await executor.execute(_spec("echo one; echo two >&2", name="mixed"), collector)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.exit_code == 0
        assert sorted(outcome.text.split("\n")[3:]) == ["[stderr] two", "[stdout] one"]
        assert {(r.level, r.source, r.text) for r in collector.records} == {
            (LogLevel.INFO, LogSource.STDOUT, "one"),
            (LogLevel.ERROR, LogSource.STDERR, "two"),
        }

    @pytest.mark.asyncio
    async def test_failure(self, executor: StreamingExecutor):
        outcome = await executor.execute(_spec("echo bad; exit 4", name="fail"))

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.exit_code == 4
        assert outcome.text == 'Command "fail" exited with code 4\n\nOutput:\n[stdout] bad'

    @pytest.mark.asyncio
    async def test_send_errors_are_swallowed(self, executor: StreamingExecutor):
        """接收方断开后日志丢弃，执行继续，输出仍进入结果。"""

        async def broken(level, source, text):
            raise ConnectionError("receiver closed")

        outcome = await executor.execute(_spec("echo a; echo b", name="x"), broken)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.text.endswith("Output:\n[stdout] a\n[stdout] b")

    @pytest.mark.asyncio
    async def test_timeout(self, executor: StreamingExecutor):
        outcome = await executor.execute(_spec("echo start; sleep 5", name="slow"), timeout=0.3)

        assert outcome.kind is OutcomeKind.TIMED_OUT
        assert outcome.text == 'Command "slow" timed out after 0.3s.\n\nOutput:\n[stdout] start'

    @pytest.mark.asyncio
    async def test_request_cancel(self, executor: StreamingExecutor):
        """请求级取消（客户端断开）杀掉进程并返回 cancelled。"""
        request = CancellationController()
        asyncio.get_running_loop().call_later(0.2, request.cancel, "client disconnected")

        outcome = await asyncio.wait_for(
            executor.execute(_spec("sleep 5", name="slow"), request_signal=request.signal, timeout=30),
            timeout=5,
        )

        assert outcome.kind is OutcomeKind.CANCELLED
        assert outcome.text == 'Command "slow" was cancelled.'

    @pytest.mark.asyncio
    async def test_pre_cancelled_request(self, executor: StreamingExecutor, collector: LogCollector):
        request = CancellationController()
        request.cancel()

        outcome = await executor.execute(_spec("echo never"), collector, request_signal=request.signal)

        assert outcome.kind is OutcomeKind.CANCELLED
        assert outcome.exit_code == -1
        assert collector.records == []

    @pytest.mark.asyncio
    async def test_spawn_error_is_failure(self, executor: StreamingExecutor, tmp_path: Path):
        outcome = await executor.execute(_spec("echo hi", name="nowhere", cwd=str(tmp_path / "missing")))

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.exit_code is None
        assert outcome.text.startswith('Command "nowhere" failed: ')
        assert "Output:" not in outcome.text

    @pytest.mark.asyncio
    async def test_cwd(self, executor: StreamingExecutor, collector: LogCollector, tmp_path: Path):
        outcome = await executor.execute(_spec("pwd", cwd=str(tmp_path)), collector)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert Path(collector.texts()[0]).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_stream_read_error_is_failure(self, executor: StreamingExecutor):
        """非取消状态下读流失败：进程组被杀，结果为 failure。"""
        real_read = asyncio.StreamReader.read
        chunks: list[bytes] = []

        async def failing_read(self, n=-1):
            if chunks:
                raise OSError(5, "Input/output error")
            chunk = await real_read(self, n)
            chunks.append(chunk)
            return chunk

        with mock.patch.object(asyncio.StreamReader, "read", failing_read):
            outcome = await asyncio.wait_for(
                executor.execute(_spec("echo $$; sleep 5", name="x")),
                timeout=5,
            )

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.exit_code is None
        assert outcome.text.startswith('Command "x" failed: Error reading stdout stream')
        pgid = int(chunks[0].split()[0])
        for _ in range(50):
            if not live_group_members(pgid):
                break
            await asyncio.sleep(0.02)
        assert live_group_members(pgid) == []
