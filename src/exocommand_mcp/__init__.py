"""ExoCommand MCP - 按名称执行预定义 shell 命令的 MCP 服务器。

环境变量:
    EXO_COMMAND_FILE: 命令文件路径 (默认 ./.exocommand)
    EXO_TASK_MODE: 任务模式 (默认 false，流式执行)
    EXO_LOG_DEBUG: 日志输出到临时文件 (默认 false)

用法:
    uvx exocommand-mcp
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
