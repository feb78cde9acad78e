"""后台任务生命周期管理模块。

提供任务模式（task mode）下的持久化执行：
- TaskStore: 内存任务表，负责状态单调性校验和 TTL 清理
- TaskManager: 把 ProcessRunner 包装成可轮询的任务，并维护
  task_id -> CancellationController 的控制表

状态机:
    submitted -> working -> {completed | failed | cancelled}

外部取消（cancel_task）只写入 cancelled 状态；TaskManager 的状态迁移
观察者钩子看到这次写入后，才去触发对应的 CancellationController 杀掉进程。
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .commands import CommandSpec
from .errors import (
    InvalidTaskTransitionError,
    TaskError,
    TaskNotFoundError,
    TaskNotReadyError,
)
from .runtime import (
    CancellationController,
    CancellationSignal,
    LogCallback,
    LogLevel,
    LogSource,
    ProcessRunner,
)
from .streaming import OutcomeKind, classify, failure_outcome, with_output

__all__ = [
    "Task",
    "TaskManager",
    "TaskResult",
    "TaskStatus",
    "TaskStore",
    "TransitionObserver",
]

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0
DEFAULT_POLL_INTERVAL = 1.0


class TaskStatus(str, Enum):
    """任务状态。"""

    SUBMITTED = "submitted"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


@dataclass(frozen=True)
class TaskResult:
    """任务终态结果。

    Attributes:
        text: 状态行 + 完整输出
        is_error: 是否为错误结果
    """

    text: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "isError": self.is_error}


@dataclass
class Task:
    """后台任务。

    Attributes:
        task_id: 唯一任务标识符
        status: 当前状态
        ttl: 进入终态后的保留时间（秒）
        poll_interval: 建议的轮询间隔（秒）
        session_id: 所属会话
        command_name: 命令名
        status_message: 人类可读的进度信息（行数 + 最后一行）
        result: 终态结果
        created_at: 创建时间
        last_updated_at: 最后更新时间
    """

    task_id: str
    status: TaskStatus
    ttl: float
    poll_interval: float
    session_id: str = ""
    command_name: str = ""
    status_message: str = ""
    result: TaskResult | None = None
    created_at: datetime = field(default_factory=datetime.now)
    last_updated_at: datetime = field(default_factory=datetime.now)
    expires_at: float | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "lastUpdatedAt": self.last_updated_at.isoformat(),
            "ttl": int(self.ttl * 1000),
            "pollInterval": int(self.poll_interval * 1000),
        }
        if self.status_message:
            data["statusMessage"] = self.status_message
        return data


# (task, old_status, new_status)
TransitionObserver = Callable[[Task, TaskStatus, TaskStatus], None]


class TaskStore:
    """内存任务表。

    - 终态单调：进入终态后的任何状态写入都抛出 InvalidTaskTransitionError
    - TTL：任务进入终态 ttl 秒后过期，在创建和读取时惰性清理（状态写入不清理）
    - 所有读取返回副本，调用方无法绕过状态校验直接修改任务

    线程安全：所有操作都是同步的，由调用方保证在同一个事件循环中调用。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._tasks: dict[str, Task] = {}
        self._clock = clock

    def create_task(
        self,
        *,
        ttl: float = DEFAULT_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        session_id: str = "",
        command_name: str = "",
    ) -> Task:
        self.purge_expired()
        task = Task(
            task_id=str(uuid.uuid4()),
            status=TaskStatus.SUBMITTED,
            ttl=ttl,
            poll_interval=poll_interval,
            session_id=session_id,
            command_name=command_name,
        )
        self._tasks[task.task_id] = task
        return dataclasses.replace(task)

    def get_task(self, task_id: str) -> Task:
        return dataclasses.replace(self._get(task_id))

    def find(self, task_id: str) -> Task | None:
        """与 get_task 相同，但不存在时返回 None。"""
        self.purge_expired()
        task = self._tasks.get(task_id)
        return dataclasses.replace(task) if task else None

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        status_message: str | None = None,
    ) -> TaskStatus:
        """写入新状态。

        Returns:
            迁移前的状态

        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTaskTransitionError: 任务已处于终态
        """
        task = self._lookup(task_id)
        if task.status.is_terminal:
            raise InvalidTaskTransitionError(task_id, task.status.value, status.value)

        old = task.status
        task.status = status
        if status_message is not None:
            task.status_message = status_message
        self._touch(task)
        return old

    def store_result(self, task_id: str, status: TaskStatus, result: TaskResult) -> TaskStatus:
        """写入终态及结果。

        已被外部取消（cancelled 且尚无结果）的任务允许补写结果，状态保持 cancelled。

        Returns:
            迁移前的状态
        """
        if not status.is_terminal:
            raise ValueError(f"store_result requires a terminal status, got {status.value}")

        task = self._lookup(task_id)
        old = task.status
        if old.is_terminal:
            if not (old is TaskStatus.CANCELLED and task.result is None):
                raise InvalidTaskTransitionError(task_id, old.value, status.value)
            status = old

        task.status = status
        task.result = result
        self._touch(task)
        return old

    def get_result(self, task_id: str) -> TaskResult:
        """获取终态结果。

        Raises:
            TaskNotFoundError: 任务不存在
            TaskNotReadyError: 任务尚未进入终态
        """
        task = self._get(task_id)
        if not task.status.is_terminal:
            raise TaskNotReadyError(task_id, task.status.value)
        if task.result is None:
            return TaskResult(
                text=task.status_message or f"Task {task_id} {task.status.value}",
                is_error=True,
            )
        return task.result

    def list_tasks(self, session_id: str | None = None) -> list[Task]:
        self.purge_expired()
        tasks = [
            dataclasses.replace(task)
            for task in self._tasks.values()
            if session_id is None or task.session_id == session_id
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    def purge_expired(self) -> int:
        """清理已过期的终态任务。

        Returns:
            清理的任务数量
        """
        now = self._clock()
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.expires_at is not None and task.expires_at <= now
        ]
        for task_id in expired:
            del self._tasks[task_id]

        if expired:
            logger.debug(f"Purged {len(expired)} expired task(s)")
        return len(expired)

    def _get(self, task_id: str) -> Task:
        self.purge_expired()
        return self._lookup(task_id)

    def _lookup(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _touch(self, task: Task) -> None:
        task.last_updated_at = datetime.now()
        if task.status.is_terminal:
            task.expires_at = self._clock() + task.ttl

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks


class TaskManager:
    """后台任务管理器。

    Example:
        ```python
        manager = TaskManager(ProcessRunner())

        # 命令名必须先解析，未知命令在这里就失败，不会留下僵尸任务
        spec = CommandCatalog(".exocommand").resolve("build")
        task = manager.create_task(spec, session_id="s-1", timeout=600)

        # 轮询
        task = manager.get_task(task.task_id)
        print(task.status, task.status_message)

        # 取消
        manager.cancel_task(task.task_id)
        ```
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        store: TaskStore | None = None,
        *,
        default_ttl: float = DEFAULT_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._runner = runner or ProcessRunner()
        self._store = store or TaskStore()
        self._default_ttl = default_ttl
        self._poll_interval = poll_interval
        self._controllers: dict[str, CancellationController] = {}
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._terminal_events: dict[str, asyncio.Event] = {}
        self._observers: list[TransitionObserver] = []

    @property
    def store(self) -> TaskStore:
        return self._store

    def add_transition_observer(self, observer: TransitionObserver) -> None:
        """添加状态迁移观察者，每次状态变化都会以 (task, old, new) 调用。"""
        self._observers.append(observer)

    def remove_transition_observer(self, observer: TransitionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def has_running_tasks(self) -> bool:
        return bool(self._controllers)

    @property
    def running_count(self) -> int:
        return len(self._controllers)

    def create_task(
        self,
        command: CommandSpec,
        *,
        session_id: str = "",
        timeout: float | None = None,
        ttl: float | None = None,
        poll_interval: float | None = None,
        cancel_signal: CancellationSignal | None = None,
        log_sink: LogCallback | None = None,
    ) -> Task:
        """创建任务并在后台启动命令。

        必须在事件循环中调用。

        Args:
            command: 已解析的命令
            session_id: 所属会话，会话关闭时其运行中的任务会被取消
            timeout: 超时时间（秒），从创建时开始计时
            ttl: 终态结果保留时间（秒）
            poll_interval: 建议轮询间隔（秒）
            cancel_signal: 额外的上游取消源
            log_sink: 额外的日志输出（如协议层的日志通知），发送失败会被忽略

        Returns:
            处于 submitted 状态的任务快照
        """
        task = self._store.create_task(
            ttl=ttl if ttl is not None else self._default_ttl,
            poll_interval=poll_interval if poll_interval is not None else self._poll_interval,
            session_id=session_id,
            command_name=command.name,
        )
        task_id = task.task_id

        controller = CancellationController()
        self._controllers[task_id] = controller

        timeout_signal = CancellationSignal.timeout(timeout) if timeout else None
        signal = CancellationSignal.any(controller.signal, timeout_signal, cancel_signal)

        run = asyncio.create_task(
            self._run(task_id, command, signal, timeout_signal, timeout, log_sink),
            name=f"exo-task-{task_id[:8]}",
        )
        self._runs[task_id] = run
        run.add_done_callback(lambda _: self._runs.pop(task_id, None))

        logger.info(f'Task {task_id[:8]}... created for "{command.name}" (session={session_id or "-"})')
        return task

    def get_task(self, task_id: str) -> Task:
        return self._store.get_task(task_id)

    def get_task_result(self, task_id: str) -> TaskResult:
        return self._store.get_result(task_id)

    async def wait_task_result(self, task_id: str, timeout: float | None = None) -> TaskResult:
        """等待任务进入终态并返回结果。

        Raises:
            TaskNotFoundError: 任务不存在
            asyncio.TimeoutError: 超时
        """
        task = self._store.get_task(task_id)
        if not task.status.is_terminal:
            event = self._terminal_events.setdefault(task_id, asyncio.Event())
            await asyncio.wait_for(event.wait(), timeout=timeout)

        # 被外部取消的任务在进程退出后才补写输出
        run = self._runs.get(task_id)
        if run is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(asyncio.shield(run), timeout=timeout)
        return self._store.get_result(task_id)

    def list_tasks(self, session_id: str | None = None) -> list[Task]:
        return self._store.list_tasks(session_id)

    def cancel_task(self, task_id: str, message: str = "Task cancelled by request") -> Task:
        """外部取消：写入 cancelled 状态，由迁移钩子杀掉进程。

        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTaskTransitionError: 任务已处于终态
        """
        self._transition(task_id, TaskStatus.CANCELLED, message)
        logger.warning(f"Task {task_id[:8]}... cancelled")
        return self._store.get_task(task_id)

    def close_session(self, session_id: str) -> int:
        """会话关闭：取消该会话所有运行中的任务，终态任务不受影响。

        Returns:
            被取消的任务数量
        """
        cancelled = 0
        for task in self._store.list_tasks(session_id):
            if task.status.is_terminal:
                continue
            try:
                self._transition(task.task_id, TaskStatus.CANCELLED, "Session closed")
                cancelled += 1
            except TaskError as e:
                logger.debug(f"Skip closing task {task.task_id[:8]}...: {e}")

        if cancelled:
            logger.info(f"Session {session_id} closed, cancelled {cancelled} running task(s)")
        return cancelled

    def cancel_all(self, message: str = "Server shutting down") -> int:
        """取消所有运行中的任务。"""
        cancelled = 0
        for task_id in list(self._controllers):
            try:
                self._transition(task_id, TaskStatus.CANCELLED, message)
                cancelled += 1
            except TaskError:
                # 已进入终态或已被清理，直接杀进程
                controller = self._controllers.pop(task_id, None)
                if controller:
                    controller.cancel(message)
        return cancelled

    async def shutdown(self) -> None:
        """取消所有运行中的任务并等待后台执行结束。"""
        self.cancel_all()
        runs = list(self._runs.values())
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)

    # =========================================================================
    # 状态迁移
    # =========================================================================

    def _transition(self, task_id: str, status: TaskStatus, message: str | None = None) -> None:
        old = self._store.update_status(task_id, status, message)
        # 每行输出都会写入 working，只有状态变化才通知
        if old is not status:
            self._notify(task_id, old, status)

    def _finish(self, task_id: str, status: TaskStatus, result: TaskResult) -> None:
        try:
            old = self._store.store_result(task_id, status, result)
        except TaskError as e:
            logger.debug(f"Could not store result for task {task_id[:8]}...: {e}")
            return
        if old is not status:
            self._notify(task_id, old, status)

    def _notify(self, task_id: str, old: TaskStatus, new: TaskStatus) -> None:
        task = self._store.find(task_id)
        if task is None:
            return

        self._on_transition(task, old, new)
        for observer in list(self._observers):
            try:
                observer(task, old, new)
            except Exception as e:
                logger.warning(f"Error in task transition observer: {e}")

    def _on_transition(self, task: Task, old: TaskStatus, new: TaskStatus) -> None:
        """内置钩子：cancelled 写入时触发对应的取消控制器。"""
        if new is TaskStatus.CANCELLED:
            controller = self._controllers.pop(task.task_id, None)
            if controller:
                controller.cancel(task.status_message or "cancelled")

        if new.is_terminal:
            event = self._terminal_events.pop(task.task_id, None)
            if event:
                event.set()

    # =========================================================================
    # 后台执行
    # =========================================================================

    async def _run(
        self,
        task_id: str,
        command: CommandSpec,
        signal: CancellationSignal,
        timeout_signal: CancellationSignal | None,
        timeout: float | None,
        log_sink: LogCallback | None,
    ) -> None:
        name = command.name
        lines: list[str] = []

        async def on_log(level: LogLevel, source: LogSource, text: str) -> None:
            lines.append(f"[{source.value}] {text}")
            try:
                self._transition(
                    task_id,
                    TaskStatus.WORKING,
                    f"{len(lines)} line(s) | {source.value}: {text}",
                )
            except TaskError:
                # 任务可能已被取消或已清理
                pass

            if log_sink is not None:
                try:
                    await log_sink(level, source, text)
                except Exception as e:
                    logger.debug(f"Log sink failed for task {task_id[:8]}...: {e}")

        logger.warning(f'Task {task_id[:8]}... running "{name}"')
        try:
            result = await self._runner.run(command.command, on_log, signal, command.cwd)
            timed_out = timeout_signal is not None and signal.origin is timeout_signal
            outcome = classify(name, result, "\n".join(lines), timed_out=timed_out, timeout=timeout)

            if outcome.kind is OutcomeKind.SUCCESS:
                logger.info(f'"{name}" completed (exit code 0)')
                status = TaskStatus.COMPLETED
            elif result.killed:
                # 已被外部取消的任务保持 cancelled，只补写输出
                task = self._store.find(task_id)
                if task is not None and task.status is TaskStatus.CANCELLED:
                    logger.warning(f'"{name}" was cancelled')
                    status = TaskStatus.CANCELLED
                else:
                    logger.warning(f'"{name}" {"timed out" if timed_out else "was cancelled"}')
                    status = TaskStatus.FAILED
            else:
                logger.error(f'"{name}" exited with code {result.exit_code}')
                status = TaskStatus.FAILED

            self._finish(task_id, status, TaskResult(outcome.text, is_error=outcome.is_error))

        except asyncio.CancelledError:
            self._finish(
                task_id,
                TaskStatus.FAILED,
                TaskResult(with_output(f'Command "{name}" was interrupted.', "\n".join(lines)), is_error=True),
            )
            raise

        except Exception as e:
            logger.error(f'"{name}" failed: {e}')
            outcome = failure_outcome(name, e, "\n".join(lines))
            self._finish(task_id, TaskStatus.FAILED, TaskResult(outcome.text, is_error=True))

        finally:
            self._controllers.pop(task_id, None)
            signal.dispose()
            if timeout_signal is not None:
                timeout_signal.dispose()
