"""Tool Schema 定义。

包含工具描述、参数 schema 和 schema 创建函数。
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "STREAMING_TOOLS",
    "TASK_TOOLS",
    "TOOL_DESCRIPTIONS",
    "TOOL_TITLES",
    "create_tool_schema",
    "tools_for_mode",
]

# 两种模式都提供的工具
STREAMING_TOOLS = ["listCommands", "execute"]

# 仅任务模式提供的工具
TASK_TOOLS = ["getTask", "getTaskResult", "cancelTask", "listTasks"]

TOOL_TITLES = {
    "listCommands": "List Commands",
    "execute": "Execute Command",
    "getTask": "Get Task",
    "getTaskResult": "Get Task Result",
    "cancelTask": "Cancel Task",
    "listTasks": "List Tasks",
}

# 工具描述
TOOL_DESCRIPTIONS = {
    "listCommands": "List all available commands defined in the .exocommand config file",
    "execute": (
        "Execute a predefined command by name. "
        "Streams stdout and stderr via logging notifications."
    ),
    "execute_task": (
        "Start a predefined command by name as a background task and return its task handle. "
        "Poll getTask for progress and getTaskResult for the final output."
    ),
    "getTask": "Get the status of a background task (status, line count and last output line).",
    "getTaskResult": (
        "Get the final result of a background task. "
        "Set wait=true to block until the task finishes."
    ),
    "cancelTask": "Cancel a running background task. The command's whole process group is killed.",
    "listTasks": "List the background tasks of this session.",
}

_TASK_ID_PROPERTY = {
    "taskId": {
        "type": "string",
        "description": "The task id returned by execute",
    },
}


def create_tool_schema(tool_name: str) -> dict[str, Any]:
    """创建工具的 inputSchema。

    Raises:
        ValueError: 未知工具
    """
    if tool_name == "listCommands" or tool_name == "listTasks":
        return {"type": "object", "properties": {}}

    if tool_name == "execute":
        return {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "The command name/id to execute",
                },
                "timeout": {
                    "type": "number",
                    "exclusiveMinimum": 0,
                    "description": (
                        "Maximum execution time in seconds. If exceeded, the command is "
                        "killed and buffered output is returned."
                    ),
                },
            },
            "required": ["name"],
        }

    if tool_name == "getTaskResult":
        return {
            "type": "object",
            "properties": {
                **_TASK_ID_PROPERTY,
                "wait": {
                    "type": "boolean",
                    "default": False,
                    "description": "Wait until the task reaches a terminal state",
                },
            },
            "required": ["taskId"],
        }

    if tool_name in ("getTask", "cancelTask"):
        return {
            "type": "object",
            "properties": dict(_TASK_ID_PROPERTY),
            "required": ["taskId"],
        }

    raise ValueError(f"Unknown tool '{tool_name}'")


def tools_for_mode(task_mode: bool) -> list[str]:
    """按执行模式返回工具名列表。"""
    return STREAMING_TOOLS + TASK_TOOLS if task_mode else list(STREAMING_TOOLS)
