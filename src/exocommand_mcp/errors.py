"""ExoCommand 异常类。

命令解析错误是唯一会同步穿出核心边界的执行类错误；
其余执行结果均以结构化结果返回。
"""

from __future__ import annotations

__all__ = [
    "ExoCommandError",
    "CommandFileError",
    "CommandNotFoundError",
    "StreamReadError",
    "TaskError",
    "TaskNotFoundError",
    "TaskNotReadyError",
    "InvalidTaskTransitionError",
]


class ExoCommandError(Exception):
    """ExoCommand 基础异常。"""
    pass


class CommandFileError(ExoCommandError):
    """命令文件不存在或格式无效。"""
    pass


class CommandNotFoundError(ExoCommandError):
    """命令名称未在命令文件中定义。

    Attributes:
        name: 请求的命令名称
        available: 可用命令名称列表
    """

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f'Command "{name}" not found. Available commands: {", ".join(available)}'
        )


class StreamReadError(ExoCommandError):
    """非取消状态下读取 stdout/stderr 失败。"""

    def __init__(self, source: str, cause: BaseException | None = None) -> None:
        self.source = source
        self.cause = cause
        super().__init__(f"Error reading {source} stream")


class TaskError(ExoCommandError):
    """任务存储相关异常的基类。"""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(message)


class TaskNotFoundError(TaskError):
    """任务不存在（未知 ID 或已过期清理）。"""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, f"Task not found: {task_id}")


class TaskNotReadyError(TaskError):
    """任务尚未进入终态，结果不可用。"""

    def __init__(self, task_id: str, status: str) -> None:
        self.status = status
        super().__init__(task_id, f"Task {task_id} has no result yet (status={status})")


class InvalidTaskTransitionError(TaskError):
    """任务已处于终态，拒绝继续状态迁移。"""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            task_id,
            f"Task {task_id} is already {current}; cannot transition to {requested}",
        )
