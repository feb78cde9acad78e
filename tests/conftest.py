"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from exocommand_mcp.runtime import LogLevel, LogRecord, LogSource, ProcessRunner  # noqa: E402

POSIX_ONLY = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


class LogCollector:
    """收集 on_log 回调产生的日志行。"""

    def __init__(self, delay: float = 0.0) -> None:
        self.records: list[LogRecord] = []
        self.delay = delay

    async def __call__(self, level: LogLevel, source: LogSource, text: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.records.append(LogRecord(level, source, text))

    def texts(self, source: LogSource | None = None) -> list[str]:
        return [r.text for r in self.records if source is None or r.source is source]


def live_group_members(pgid: int) -> list[int]:
    """进程组中仍存活（非僵尸）的进程（Linux /proc）。"""
    members = []
    for entry in Path("/proc").iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
        except OSError:
            continue
        fields = stat[stat.rfind(")") + 2:].split()
        state, pgrp = fields[0], int(fields[2])
        if pgrp == pgid and state != "Z":
            members.append(int(entry.name))
    return members


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def runner() -> ProcessRunner:
    """短超时的 ProcessRunner。"""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


@pytest.fixture
def collector() -> LogCollector:
    return LogCollector()


@pytest.fixture
def command_file(tmp_path: Path) -> Path:
    """写入一个包含常用命令的命令文件。"""
    path = tmp_path / ".exocommand"
    path.write_text(
        "\n".join(
            [
                "greet:",
                '  description: "Say hello"',
                '  command: "echo hello"',
                "fail:",
                '  description: "Exit with an error"',
                "  command: \"echo oops >&2; exit 3\"",
                "slow:",
                '  description: "Sleep for a while"',
                '  command: "echo $$; sleep 5"',
                "where:",
                '  description: "Print the working directory"',
                '  command: "pwd"',
                '  cwd: "sub"',
                "",
            ]
        ),
        encoding="utf-8",
    )
    (tmp_path / "sub").mkdir()
    return path


@pytest.fixture
def clean_env():
    """移除所有 EXO_* 环境变量。"""
    saved = {k: v for k, v in os.environ.items() if k.startswith("EXO_")}
    for key in saved:
        del os.environ[key]
    try:
        yield
    finally:
        for key in [k for k in os.environ if k.startswith("EXO_")]:
            del os.environ[key]
        os.environ.update(saved)
