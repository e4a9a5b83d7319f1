"""Starts external processes and streams their output to a line handler."""
import asyncio
import inspect
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from .constants import SUBPROCESS_CREATION_FLAGS
from .exceptions import DownloadCancelledError, ProcessExitError, ProcessStartError

LineHandler = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ProcessResult:
    """The outcome of a process that exited with code 0."""
    returncode: int
    last_error: Optional[str] = None


class _ErrorContext:
    """Remembers the most useful error line seen so far."""
    def __init__(self):
        self.error_line: Optional[str] = None
        self.last_stderr: Optional[str] = None

    def observe(self, line: str, from_stderr: bool):
        stripped = line.strip()
        if not stripped:
            return
        if stripped.startswith('ERROR:'):
            self.error_line = stripped[6:].strip()
        if from_stderr:
            self.last_stderr = stripped

    @property
    def message(self) -> Optional[str]:
        return self.error_line or self.last_stderr


class ProcessRunner:
    """
    Runs one external command at a time and streams its output.

    stdout and stderr are drained by two concurrent reader tasks. Every line
    is passed to the handler while holding a lock, so handler calls never
    overlap even though the two streams are read independently.
    """
    STREAM_LIMIT = 1024 * 1024  # 1 MB per line

    def __init__(self, termination_grace_period: float = 10.0):
        """
        Initializes the ProcessRunner.

        Args:
            termination_grace_period: Seconds to wait after requesting
                termination before the process is killed.
        """
        self.termination_grace_period = termination_grace_period
        self.logger = logging.getLogger(__name__)

    def _spawn_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid
        return kwargs

    async def run(self, command: Sequence[str], on_line: LineHandler,
                  cancel_event: Optional[asyncio.Event] = None) -> ProcessResult:
        """
        Runs a command to completion, feeding each output line to ``on_line``.

        Args:
            command: The executable followed by its arguments.
            on_line: Called with every line from stdout and stderr. May be a
                plain function or a coroutine function.
            cancel_event: When set, termination of the process is requested.

        Returns:
            A ProcessResult for a zero exit code.

        Raises:
            ProcessStartError: If the process could not be started.
            DownloadCancelledError: If ``cancel_event`` was set and the process
                did not exit cleanly.
            ProcessExitError: If the process exited with a non-zero code.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.STREAM_LIMIT,
                **self._spawn_kwargs()
            )
        except FileNotFoundError as e:
            raise ProcessStartError(f"Executable not found: {command[0]}") from e
        except OSError as e:
            raise ProcessStartError(f"Could not start {command[0]}: {e}") from e

        self.logger.debug(f"Started PID {process.pid}: {' '.join(command)}")
        handler_lock = asyncio.Lock()
        error_context = _ErrorContext()

        async def drain(stream: asyncio.StreamReader, from_stderr: bool):
            while True:
                try:
                    line_bytes = await stream.readline()
                except ValueError:
                    # Line exceeded STREAM_LIMIT; the reader has discarded it.
                    continue
                if not line_bytes:
                    break
                line = line_bytes.decode('utf-8', 'replace').rstrip('\r\n')
                async with handler_lock:
                    error_context.observe(line, from_stderr)
                    result = on_line(line)
                    if inspect.isawaitable(result):
                        await result

        async def drain_and_wait() -> int:
            if process.stdout is None or process.stderr is None:
                raise ProcessStartError(f"No output pipes for PID {process.pid}")
            readers = [
                asyncio.create_task(drain(process.stdout, False)),
                asyncio.create_task(drain(process.stderr, True)),
            ]
            try:
                await asyncio.gather(*readers)
            finally:
                for reader in readers:
                    reader.cancel()
            return await process.wait()

        wait_task = asyncio.create_task(drain_and_wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        try:
            waiters = {wait_task} if cancel_task is None else {wait_task, cancel_task}
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if wait_task not in done:
                self.logger.info(f"Cancellation requested. Terminating PID {process.pid}...")
                await self.terminate(process)
            returncode = await wait_task
        except (asyncio.CancelledError, Exception):
            await self.terminate(process)
            wait_task.cancel()
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        self.logger.debug(f"PID {process.pid} exited with code {returncode}")
        if returncode == 0:
            return ProcessResult(returncode, error_context.message)
        if cancel_event is not None and cancel_event.is_set():
            raise DownloadCancelledError("Process cancelled by user.")
        raise ProcessExitError(returncode, error_context.message)

    async def terminate(self, process: asyncio.subprocess.Process):
        """Requests a graceful stop, killing the process if it outlives the grace period."""
        if process.returncode is not None:
            return
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=self.termination_grace_period)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of PID {process.pid} failed: {e!r}. Forcing termination...")
            try:
                if sys.platform == 'win32':
                    process.kill()
                else:
                    # Children such as ffmpeg share the group and hold the pipes open.
                    os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            except (ProcessLookupError, OSError):
                pass  # Already gone
