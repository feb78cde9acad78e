"""流式执行模块（前台模式）。

命令的生命周期绑定在单个请求上：
- 每一行输出立即作为日志通知发送，发送失败（接收方已断开）被忽略
- 请求断开本身作为一个取消源组合进 CancellationSignal，断开即杀进程
- 结束时返回一个结构化的 ExecutionOutcome，不向调用方抛出异常

结果分类（classify）同时被后台任务模式复用，保证两种模式的结果文本一致。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .commands import CommandSpec
from .runtime import (
    CancellationSignal,
    ExecutionResult,
    LogCallback,
    LogLevel,
    LogSource,
    ProcessRunner,
)

__all__ = [
    "ExecutionOutcome",
    "OutcomeKind",
    "StreamingExecutor",
    "classify",
    "failure_outcome",
    "with_output",
]

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ExecutionOutcome:
    """一次执行的最终分类结果。

    Attributes:
        kind: 结果分类
        text: 状态行 + 完整输出（输出为空时只有状态行）
        exit_code: 进程退出码（执行异常或未启动时为 None）
    """

    kind: OutcomeKind
    text: str
    exit_code: int | None = None

    @property
    def is_error(self) -> bool:
        return self.kind is not OutcomeKind.SUCCESS


def with_output(status_line: str, output: str) -> str:
    """拼接状态行与输出。"""
    return f"{status_line}\n\nOutput:\n{output}" if output else status_line


def classify(
    name: str,
    result: ExecutionResult,
    output: str,
    *,
    timed_out: bool = False,
    timeout: float | None = None,
) -> ExecutionOutcome:
    """把 ExecutionResult 分类为 ExecutionOutcome。

    killed 优先于退出码：取消后进程即使以 0 退出也视为被取消。
    """
    if result.killed:
        if timed_out:
            status = f'Command "{name}" timed out after {timeout:g}s.'
            kind = OutcomeKind.TIMED_OUT
        else:
            status = f'Command "{name}" was cancelled.'
            kind = OutcomeKind.CANCELLED
        return ExecutionOutcome(kind, with_output(status, output), result.exit_code)

    if result.exit_code != 0:
        status = f'Command "{name}" exited with code {result.exit_code}'
        return ExecutionOutcome(OutcomeKind.FAILURE, with_output(status, output), result.exit_code)

    status = f'Command "{name}" completed successfully (exit code 0)'
    return ExecutionOutcome(OutcomeKind.SUCCESS, with_output(status, output), 0)


def failure_outcome(name: str, error: BaseException, output: str) -> ExecutionOutcome:
    """执行级错误（启动失败、流读取失败）的分类结果。"""
    return ExecutionOutcome(
        OutcomeKind.FAILURE,
        with_output(f'Command "{name}" failed: {error}', output),
    )


def _log_outcome(name: str, outcome: ExecutionOutcome) -> None:
    if outcome.kind is OutcomeKind.SUCCESS:
        logger.info(f'"{name}" completed (exit code 0)')
    elif outcome.kind is OutcomeKind.TIMED_OUT:
        logger.warning(f'"{name}" timed out')
    elif outcome.kind is OutcomeKind.CANCELLED:
        logger.warning(f'"{name}" was cancelled')
    elif outcome.exit_code is not None:
        logger.error(f'"{name}" exited with code {outcome.exit_code}')


class StreamingExecutor:
    """请求内同步执行命令。

    Example:
        ```python
        executor = StreamingExecutor(ProcessRunner())
        request = CancellationController()   # 请求断开时调用 request.cancel()

        async def send_log(level, source, text):
            await session.send_log_message(level=level.value, data=text, logger=source.value)

        outcome = await executor.execute(spec, send_log, request_signal=request.signal, timeout=30)
        print(outcome.kind, outcome.text)
        ```
    """

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        self._runner = runner or ProcessRunner()

    async def execute(
        self,
        command: CommandSpec,
        send_log: LogCallback | None = None,
        *,
        request_signal: CancellationSignal | None = None,
        timeout: float | None = None,
    ) -> ExecutionOutcome:
        """执行命令并返回分类结果。

        Args:
            command: 已解析的命令
            send_log: 每行输出的通知发送函数，异常会被忽略
            request_signal: 请求级取消源（客户端取消或断开）
            timeout: 超时时间（秒），从调用时开始计时

        Returns:
            ExecutionOutcome（不抛出执行异常）
        """
        name = command.name
        lines: list[str] = []

        async def on_log(level: LogLevel, source: LogSource, text: str) -> None:
            lines.append(f"[{source.value}] {text}")
            if send_log is None:
                return
            try:
                await send_log(level, source, text)
            except Exception as e:
                logger.debug(f'Dropped log notification for "{name}": {e}')

        timeout_signal = CancellationSignal.timeout(timeout) if timeout else None
        signal = CancellationSignal.any(request_signal, timeout_signal)

        logger.warning(f'running "{name}"')
        try:
            result = await self._runner.run(command.command, on_log, signal, command.cwd)
        except Exception as e:
            logger.error(f'"{name}" failed: {e}')
            return failure_outcome(name, e, "\n".join(lines))
        finally:
            signal.dispose()
            if timeout_signal is not None:
                timeout_signal.dispose()

        timed_out = timeout_signal is not None and signal.origin is timeout_signal
        outcome = classify(name, result, "\n".join(lines), timed_out=timed_out, timeout=timeout)
        _log_outcome(name, outcome)
        return outcome
