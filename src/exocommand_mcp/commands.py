"""命令文件加载器（YAML）。

命令文件（默认 `.exocommand`）是一个 YAML 映射，每个顶层键是一个命令名：

    build:
      description: "Run the build"
      command: "npm run build"
      cwd: "../frontend"   # 可选，相对路径以命令文件所在目录为基准

保留键 `port` / `taskMode` 不是命令，单独校验。

命令名解析（resolve）每次都重新读取文件，因此修改命令文件后无需重启服务。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import CommandFileError, CommandNotFoundError

__all__ = [
    "CommandCatalog",
    "CommandFile",
    "CommandSpec",
    "load_command_file",
    "load_commands",
]

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

RESERVED_KEYS = frozenset({"port", "taskMode"})


@dataclass(frozen=True)
class CommandSpec:
    """已解析的命令。

    Attributes:
        name: 命令名
        description: 命令说明
        command: 交给 shell 执行的命令字符串（不做参数解析）
        cwd: 工作目录（None 表示继承服务进程的工作目录）
    """

    name: str
    description: str
    command: str
    cwd: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "command": self.command,
        }
        if self.cwd:
            data["cwd"] = self.cwd
        return data


@dataclass(frozen=True)
class CommandFile:
    """命令文件的完整内容。"""

    commands: tuple[CommandSpec, ...]
    port: int | None = None
    task_mode: bool | None = None


def _parse_port(raw: Any) -> int:
    port = None
    if not isinstance(raw, bool):
        try:
            port = int(str(raw).strip())
        except ValueError:
            pass
    if port is None or not 1 <= port <= 65535:
        raise CommandFileError(
            f'Invalid port "{raw}": must be an integer between 1 and 65535'
        )
    return port


def _parse_command(name: str, value: Any, base_dir: Path) -> CommandSpec:
    if not NAME_PATTERN.match(name):
        raise CommandFileError(
            f'Invalid command name "{name}": must match {NAME_PATTERN.pattern}'
        )

    if (
        not isinstance(value, dict)
        or not isinstance(value.get("description"), str)
        or not isinstance(value.get("command"), str)
    ):
        raise CommandFileError(
            f'Invalid command "{name}": must have "description" (string) and "command" (string)'
        )

    raw_cwd = value.get("cwd")
    if raw_cwd is not None and not isinstance(raw_cwd, str):
        raise CommandFileError(f'Invalid command "{name}": "cwd" must be a string')

    cwd = None
    if raw_cwd:
        path = Path(raw_cwd).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        cwd = str(path.resolve())

    return CommandSpec(
        name=name,
        description=value["description"],
        command=value["command"].strip(),
        cwd=cwd,
    )


def load_command_file(path: str | Path) -> CommandFile:
    """读取并校验命令文件。

    Args:
        path: 命令文件路径

    Returns:
        CommandFile

    Raises:
        CommandFileError: 文件不存在或内容不合法
    """
    file_path = Path(path)
    if not file_path.is_file():
        raise CommandFileError(f"Config file not found: {file_path}")

    try:
        parsed = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise CommandFileError(f"Invalid config: {e}") from e

    if not isinstance(parsed, dict):
        raise CommandFileError(
            f"Invalid config: expected a YAML mapping, got {type(parsed).__name__}"
        )

    port = None
    if parsed.get("port") is not None:
        port = _parse_port(parsed["port"])

    task_mode = None
    if parsed.get("taskMode") is not None:
        if not isinstance(parsed["taskMode"], bool):
            raise CommandFileError(
                f'Invalid taskMode "{parsed["taskMode"]}": must be a boolean (true or false)'
            )
        task_mode = parsed["taskMode"]

    base_dir = file_path.resolve().parent
    commands = tuple(
        _parse_command(str(name), value, base_dir)
        for name, value in parsed.items()
        if name not in RESERVED_KEYS
    )
    return CommandFile(commands=commands, port=port, task_mode=task_mode)


def load_commands(path: str | Path) -> list[CommandSpec]:
    """读取命令列表。"""
    return list(load_command_file(path).commands)


class CommandCatalog:
    """按名称解析命令。

    Example:
        catalog = CommandCatalog(".exocommand")
        spec = catalog.resolve("build")   # 未知命令抛出 CommandNotFoundError
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def list(self) -> list[CommandSpec]:
        commands = load_commands(self.path)
        logger.debug(f"Loaded {len(commands)} command(s) from {self.path}")
        return commands

    def resolve(self, name: str) -> CommandSpec:
        """解析命令名。

        Raises:
            CommandFileError: 命令文件不可用
            CommandNotFoundError: 命令未定义
        """
        commands = self.list()
        for spec in commands:
            if spec.name == name:
                return spec
        raise CommandNotFoundError(name, [c.name for c in commands])
