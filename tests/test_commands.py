"""命令文件加载测试。

测试 YAML 命令文件的解析与校验：
- 命令条目解析
- 保留键 port / taskMode
- 错误报告
- 按名称解析
"""

from __future__ import annotations

from pathlib import Path

import pytest

from exocommand_mcp.commands import (
    CommandCatalog,
    CommandSpec,
    load_command_file,
    load_commands,
)
from exocommand_mcp.errors import CommandFileError, CommandNotFoundError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / ".exocommand"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadCommandFile:
    """命令文件解析测试。"""

    def test_load_commands(self, command_file: Path):
        """按文件顺序加载所有命令。"""
        commands = load_commands(command_file)
        assert [c.name for c in commands] == ["greet", "fail", "slow", "where"]
        assert commands[0] == CommandSpec("greet", "Say hello", "echo hello")

    def test_relative_cwd_resolved_against_file(self, command_file: Path):
        """相对 cwd 以命令文件所在目录为基准。"""
        where = load_commands(command_file)[3]
        assert where.cwd == str((command_file.parent / "sub").resolve())

    def test_absolute_cwd_kept(self, tmp_path: Path):
        path = _write(tmp_path, f'a:\n  description: d\n  command: c\n  cwd: "{tmp_path}"\n')
        assert load_commands(path)[0].cwd == str(tmp_path.resolve())

    def test_command_is_trimmed(self, tmp_path: Path):
        path = _write(tmp_path, 'a:\n  description: d\n  command: "  make all  \\n"\n')
        assert load_commands(path)[0].command == "make all"

    def test_reserved_keys_are_not_commands(self, tmp_path: Path):
        path = _write(
            tmp_path,
            "port: 5555\ntaskMode: true\nbuild:\n  description: Build\n  command: make\n",
        )
        command_file = load_command_file(path)
        assert [c.name for c in command_file.commands] == ["build"]
        assert command_file.port == 5555
        assert command_file.task_mode is True

    def test_port_from_numeric_string(self, tmp_path: Path):
        path = _write(tmp_path, 'port: "8080"\n')
        assert load_command_file(path).port == 8080

    @pytest.mark.parametrize("port", ["0", "70000", "abc", "true"])
    def test_invalid_port(self, tmp_path: Path, port: str):
        path = _write(tmp_path, f"port: {port}\n")
        with pytest.raises(CommandFileError, match="Invalid port"):
            load_command_file(path)

    def test_invalid_task_mode(self, tmp_path: Path):
        path = _write(tmp_path, 'taskMode: "yes"\n')
        with pytest.raises(CommandFileError, match="Invalid taskMode"):
            load_command_file(path)

    def test_invalid_command_name(self, tmp_path: Path):
        path = _write(tmp_path, '"bad name":\n  description: d\n  command: c\n')
        with pytest.raises(CommandFileError, match="Invalid command name"):
            load_command_file(path)

    def test_missing_description(self, tmp_path: Path):
        path = _write(tmp_path, "build:\n  command: make\n")
        with pytest.raises(CommandFileError, match='must have "description"'):
            load_command_file(path)

    def test_non_string_cwd(self, tmp_path: Path):
        path = _write(tmp_path, "build:\n  description: d\n  command: make\n  cwd: 3\n")
        with pytest.raises(CommandFileError, match='"cwd" must be a string'):
            load_command_file(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(CommandFileError, match="Config file not found"):
            load_command_file(tmp_path / "nope")

    def test_not_a_mapping(self, tmp_path: Path):
        path = _write(tmp_path, "- a\n- b\n")
        with pytest.raises(CommandFileError, match="expected a YAML mapping"):
            load_command_file(path)

    def test_invalid_yaml(self, tmp_path: Path):
        path = _write(tmp_path, "a: [unclosed\n")
        with pytest.raises(CommandFileError, match="Invalid config"):
            load_command_file(path)

    def test_to_dict_omits_empty_cwd(self):
        assert CommandSpec("a", "d", "c").to_dict() == {
            "name": "a",
            "description": "d",
            "command": "c",
        }


class TestCommandCatalog:
    """按名称解析命令测试。"""

    def test_resolve(self, command_file: Path):
        catalog = CommandCatalog(command_file)
        assert catalog.resolve("greet").command == "echo hello"

    def test_resolve_unknown(self, command_file: Path):
        catalog = CommandCatalog(command_file)
        with pytest.raises(CommandNotFoundError) as exc_info:
            catalog.resolve("deploy")

        assert str(exc_info.value) == (
            'Command "deploy" not found. Available commands: greet, fail, slow, where'
        )
        assert exc_info.value.available == ["greet", "fail", "slow", "where"]

    def test_file_reread_on_each_resolve(self, tmp_path: Path):
        """修改命令文件后无需重建 catalog。"""
        path = _write(tmp_path, "a:\n  description: d\n  command: one\n")
        catalog = CommandCatalog(path)
        assert catalog.resolve("a").command == "one"

        _write(tmp_path, "a:\n  description: d\n  command: two\n")
        assert catalog.resolve("a").command == "two"
