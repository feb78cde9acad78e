"""ExoCommand 环境变量配置管理。

环境变量:
    EXO_COMMAND_FILE: 命令文件路径
        - 默认 ./.exocommand

    EXO_TASK_MODE: 执行模式
        - true/1/yes/on = 任务模式（后台执行，客户端轮询）
        - false/0/no = 流式模式（请求内同步执行）
        - 未设置 = 使用命令文件中的 taskMode，均未设置时为流式模式

    EXO_TASK_TTL: 任务结果保留时间（秒）
        - 默认 300，最小 1

    EXO_TASK_POLL_INTERVAL: 建议的轮询间隔（秒）
        - 默认 1.0

    EXO_KILL_TIMEOUT: 取消时 SIGTERM 到 SIGKILL 的等待时间（秒）
        - 默认 2.0

    EXO_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_COMMAND_FILE = "./.exocommand"
DEFAULT_TASK_TTL = 300.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_KILL_TIMEOUT = 2.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_optional_bool(value: str | None) -> bool | None:
    """解析可选布尔值环境变量，未设置或为空时返回 None。"""
    if value is None or not value.strip():
        return None
    return _parse_bool(value.strip())


def _parse_float(value: str | None, default: float, minimum: float) -> float:
    """解析数值环境变量，无效值回退到默认值。"""
    if not value:
        return default
    try:
        return max(minimum, float(value))
    except ValueError:
        return default


@dataclass
class Config:
    """ExoCommand 配置。

    Attributes:
        command_file: 命令文件路径
        task_mode: 是否以任务模式执行（None 表示未通过环境变量指定）
        task_ttl: 任务保留时间（秒）
        poll_interval: 建议轮询间隔（秒）
        kill_timeout: SIGTERM 之后升级为 SIGKILL 的等待时间（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    command_file: str = DEFAULT_COMMAND_FILE
    task_mode: bool | None = None
    task_ttl: float = DEFAULT_TASK_TTL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None

    @property
    def mode_name(self) -> str:
        return "task" if self.task_mode else "streaming"

    def resolve_task_mode(self, file_task_mode: bool | None) -> bool:
        """环境变量优先，其次是命令文件中的 taskMode。"""
        if self.task_mode is not None:
            return self.task_mode
        return bool(file_task_mode)

    def __repr__(self) -> str:
        return (
            f"Config(command_file={self.command_file}, "
            f"mode={self.mode_name}, "
            f"task_ttl={self.task_ttl}, "
            f"poll_interval={self.poll_interval}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "exocommand-mcp"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"exo_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("EXO_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        command_file=os.environ.get("EXO_COMMAND_FILE") or DEFAULT_COMMAND_FILE,
        task_mode=_parse_optional_bool(os.environ.get("EXO_TASK_MODE")),
        task_ttl=_parse_float(os.environ.get("EXO_TASK_TTL"), DEFAULT_TASK_TTL, 1.0),
        poll_interval=_parse_float(
            os.environ.get("EXO_TASK_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL, 0.1
        ),
        kill_timeout=_parse_float(
            os.environ.get("EXO_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
