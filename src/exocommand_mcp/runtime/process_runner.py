"""Process runner with process-group isolation and ordered line streaming.

exocommand-mcp runtime module

This module provides:
- Shell command execution in an isolated process group/session
- Demultiplexing of stdout/stderr into ordered, classified log lines
- Cancellation through a CancellationSignal (group-wide SIGTERM, then SIGKILL)
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so the child leads its own process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Each stream has one reader and one dispatch worker joined by a queue, so
  lines of one stream are delivered in order even when on_log suspends
- The exit status listener is created before the streams are consumed
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import StreamReadError
from .cancellation import CancellationSignal

__all__ = [
    "ExecutionResult",
    "LogCallback",
    "LogLevel",
    "LogRecord",
    "LogSource",
    "ProcessRunner",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM during cleanup
DEFAULT_KILL_TIMEOUT = 2.0  # seconds between SIGTERM and SIGKILL on cancel
DEFAULT_READ_SIZE = 4096


class LogLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class LogSource(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"

    @property
    def level(self) -> LogLevel:
        """stdout lines are info, stderr lines are error."""
        return LogLevel.ERROR if self is LogSource.STDERR else LogLevel.INFO


@dataclass(frozen=True)
class LogRecord:
    """One classified line of captured output.

    Attributes:
        level: info for stdout, error for stderr
        source: Stream the line came from
        text: Line content without the trailing newline; never empty
    """

    level: LogLevel
    source: LogSource
    text: str


@dataclass(frozen=True)
class ExecutionResult:
    """Final status of one run.

    ``ExecutionResult(-1, True)`` means the command never ran because
    cancellation was already active when ``run`` was called.
    """

    exit_code: int
    killed: bool


LogCallback = Callable[[LogLevel, LogSource, str], Awaitable[None]]

_END = None


def _normalize_returncode(returncode: int | None) -> int:
    # None or a negative (signal) code counts as abnormal termination
    if returncode is None or returncode < 0:
        return 1
    return returncode


@dataclass
class ProcessRunner:
    """Runs shell commands and streams their output line by line.

    Example:
        runner = ProcessRunner()
        controller = CancellationController()

        async def on_log(level, source, text):
            print(f"[{source}] {text}")

        result = await runner.run("make test", on_log, controller.signal, cwd="/repo")
        print(result.exit_code, result.killed)
    """

    shell: str = "sh"
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    read_size: int = DEFAULT_READ_SIZE

    async def run(
        self,
        command: str,
        on_log: LogCallback,
        cancel: CancellationSignal | None = None,
        cwd: str | Path | None = None,
    ) -> ExecutionResult:
        """Run a shell command until it exits and all output is delivered.

        Args:
            command: Opaque shell string, passed to ``sh -c``
            on_log: Awaited once per non-empty line, in per-stream order
            cancel: Signal that terminates the process group when it fires
            cwd: Working directory (None = inherit)

        Returns:
            ExecutionResult with the exit code and whether cancellation fired

        Raises:
            OSError: If the process could not be spawned
            StreamReadError: If a stream fails while cancellation is not active
        """
        if cancel is None:
            cancel = CancellationSignal.never()

        if cancel.is_active:
            logger.debug(f"Cancellation already active, not running: {command!r}")
            return ExecutionResult(exit_code=-1, killed=True)

        # stdin must be DEVNULL: inheriting it would hand the child the
        # server's JSON-RPC channel
        process = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            **self._build_subprocess_kwargs(),
        )
        logger.debug(f"Started subprocess pid={process.pid} cwd={cwd}")

        exit_task = asyncio.create_task(process.wait())
        kill_handle: asyncio.TimerHandle | None = None

        def on_cancel(fired: CancellationSignal) -> None:
            nonlocal kill_handle
            logger.debug(f"Cancelling subprocess pid={process.pid}: {fired.reason}")
            self._signal_group(process, signal.SIGTERM)
            if kill_handle is None and not IS_WINDOWS:
                kill_handle = asyncio.get_running_loop().call_later(
                    self.kill_timeout,
                    self._signal_group,
                    process,
                    signal.SIGKILL,
                )

        cancel.add_observer(on_cancel)

        pumps = [
            asyncio.create_task(self._pump(process.stdout, LogSource.STDOUT, on_log, cancel)),
            asyncio.create_task(self._pump(process.stderr, LogSource.STDERR, on_log, cancel)),
        ]

        try:
            await asyncio.gather(*pumps)
            returncode = await exit_task
        except BaseException:
            await self._safe_cleanup(process, pumps, exit_task)
            raise
        finally:
            cancel.remove_observer(on_cancel)
            if kill_handle is not None and not self._group_alive(process):
                kill_handle.cancel()

        exit_code = _normalize_returncode(returncode)
        logger.debug(
            f"Subprocess completed pid={process.pid} "
            f"returncode={returncode} killed={cancel.is_active}"
        )
        return ExecutionResult(exit_code=exit_code, killed=cancel.is_active)

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid), pgid == pid
            kwargs["start_new_session"] = True
        return kwargs

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        source: LogSource,
        on_log: LogCallback,
        cancel: CancellationSignal,
    ) -> None:
        """Read one stream, split it into lines and feed the dispatch worker."""
        if stream is None:
            return

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        worker = asyncio.create_task(self._dispatch(queue, source, on_log))
        buffer = b""

        try:
            while True:
                try:
                    chunk = await stream.read(self.read_size)
                except OSError as e:
                    if cancel.is_active:
                        # Pipe torn down by the kill; settle with what we have
                        logger.debug(f"{source.value} closed during cancellation: {e}")
                        break
                    raise StreamReadError(source.value, e) from e

                if not chunk:
                    if buffer:
                        queue.put_nowait(buffer.decode("utf-8", errors="replace"))
                    break

                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    if line:
                        queue.put_nowait(line.decode("utf-8", errors="replace"))
        except BaseException:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
            raise

        queue.put_nowait(_END)
        await worker

    async def _dispatch(
        self,
        queue: asyncio.Queue[str | None],
        source: LogSource,
        on_log: LogCallback,
    ) -> None:
        """Single consumer: deliver queued lines of one stream in order."""
        level = source.level
        while True:
            text = await queue.get()
            if text is _END:
                return
            await on_log(level, source, text)

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send a signal to the whole process group, ignoring exited groups."""
        try:
            if IS_WINDOWS:
                if sig == signal.SIGTERM:
                    os.kill(process.pid, signal.CTRL_BREAK_EVENT)
                else:
                    process.kill()
            else:
                os.killpg(process.pid, sig)
            logger.debug(f"Sent signal {sig} to process group pgid={process.pid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Signalling process group pgid={process.pid} failed: {e}")

    def _group_alive(self, process: asyncio.subprocess.Process) -> bool:
        if IS_WINDOWS:
            return process.returncode is None
        try:
            os.killpg(process.pid, 0)
        except OSError:
            return False
        return True

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process,
        pumps: list[asyncio.Task[None]],
        exit_task: asyncio.Task[int],
    ) -> None:
        """Kill the group and reap the process, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process, pumps, exit_task))
        except asyncio.CancelledError:
            await self._do_cleanup(process, pumps, exit_task)

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process,
        pumps: list[asyncio.Task[None]],
        exit_task: asyncio.Task[int],
    ) -> None:
        for task in pumps:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self.term_timeout)
            return
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Force killing process group pgid={process.pid}")
        self._signal_group(process, signal.SIGKILL)
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self.term_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={process.pid}")
