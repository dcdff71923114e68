"""Subprocess management with timeouts, output ceilings and stuck detection."""

import asyncio
import logging
import os
import shlex
import shutil
import signal
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from ..safety.redaction import redact_sensitive_text

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Subprocess execution error."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
        stuck: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.stuck = stuck


class SubprocessManager:
    """Managed subprocess execution with timeouts and stuck detection."""

    @staticmethod
    async def _terminate_process(
        process: asyncio.subprocess.Process,
        timeout_sec: float = 2.0,
    ) -> None:
        """Terminate a subprocess and its children (best-effort).

        Test runners and package managers spawn child processes. If we only kill the parent,
        orphaned children keep running inside the workspace. On POSIX we start a new session
        and kill the whole process group.
        """
        if process.returncode is not None:
            return

        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGTERM)
            else:
                process.terminate()
        except ProcessLookupError:
            return
        except OSError:
            try:
                process.terminate()
            except ProcessLookupError:
                return

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_sec)
            return
        except asyncio.TimeoutError:
            pass

        # Escalate.
        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return
        except OSError:
            try:
                process.kill()
            except ProcessLookupError:
                return

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after SIGKILL", process.pid)

    def __init__(
        self,
        timeout_sec: float,
        stuck_no_output_sec: int | None = None,
        max_output_bytes: int | None = None,
        log_dir: Path | None = None,
    ):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard wall-clock timeout for process
            stuck_no_output_sec: Stuck detection threshold (None to disable)
            max_output_bytes: Hard ceiling on captured stdout+stderr bytes; the process is
                killed once it is exceeded (None to disable)
            log_dir: Directory for process logs
        """
        self.timeout_sec = timeout_sec
        self.stuck_no_output_sec = stuck_no_output_sec
        self.max_output_bytes = max_output_bytes
        self.log_dir = log_dir

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        capture_output: bool = True,
        on_output_line: Callable[[str], None] | None = None,
        stdin: str | None = None,
    ) -> dict:
        """Run command with timeout, output ceiling and stuck detection.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables (None inherits the parent environment)
            capture_output: Whether to capture stdout/stderr
            on_output_line: Callback invoked for every captured line
            stdin: Optional string to write to stdin

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (stdout and stderr interleaved)
                - stdout: str
                - stderr: str
                - exit_code: int | None
                - timed_out: bool
                - stuck: bool
                - output_limit_exceeded: bool

        Raises:
            SubprocessError: On execution failure
        """
        logger.info("Running command: %s", self._format_command_for_log(command))

        log_path = None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = self.log_dir / f"cmd_{timestamp}.log"

        process: asyncio.subprocess.Process | None = None
        read_task: asyncio.Task[None] | None = None
        try:
            try:
                process = await self._spawn(command, cwd, env, capture_output, stdin)
            except FileNotFoundError:
                # A stripped env (common when overriding HOME) may lack PATH; retry with the
                # inherited PATH so executables like `git` can be resolved.
                retry_env = None
                if env is not None and "PATH" not in env:
                    inherited_path = os.environ.get("PATH")
                    if inherited_path:
                        retry_env = dict(env)
                        retry_env["PATH"] = inherited_path

                resolved = None
                if not os.path.isabs(command[0]):
                    resolved = shutil.which(
                        command[0], path=(retry_env or env or os.environ).get("PATH")
                    )
                if not resolved:
                    raise
                command = [resolved, *command[1:]]
                process = await self._spawn(command, cwd, retry_env or env, capture_output, stdin)

            logger.debug("Subprocess created with PID=%s", process.pid)

            state = {
                "last_output": datetime.now(),
                "bytes": 0,
                "limit_exceeded": False,
            }
            combined: list[str] = []
            streams: dict[str, list[str]] = {"stdout": [], "stderr": []}
            limit_event = asyncio.Event()

            if capture_output:
                read_task = asyncio.create_task(
                    self._read_streams(
                        process,
                        state,
                        combined,
                        streams,
                        limit_event,
                        log_path,
                        on_output_line,
                    )
                )

            timed_out = False
            stuck = False
            exit_code: int | None
            wait_task = asyncio.create_task(process.wait())
            limit_task = asyncio.create_task(limit_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {wait_task, limit_task},
                    timeout=self.timeout_sec,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                limit_task.cancel()

            if wait_task in done:
                exit_code = process.returncode
            else:
                if limit_event.is_set():
                    logger.warning(
                        "Output ceiling of %s bytes exceeded, terminating PID=%s",
                        self.max_output_bytes,
                        process.pid,
                    )
                else:
                    timed_out = True
                    if self.stuck_no_output_sec:
                        idle = (datetime.now() - state["last_output"]).total_seconds()
                        stuck = idle > self.stuck_no_output_sec
                await self._terminate_process(process)
                wait_task.cancel()
                exit_code = None

            if read_task is not None:
                # Give the reader a moment to drain any remaining buffered output.
                try:
                    await asyncio.wait_for(read_task, timeout=2.0)
                except (asyncio.TimeoutError, asyncio.CancelledError):
                    read_task.cancel()

            logger.info(
                "Command completed: exit_code=%s, timed_out=%s, stuck=%s",
                exit_code,
                timed_out,
                stuck,
            )

            return {
                "success": exit_code == 0,
                "output": "".join(combined),
                "stdout": "".join(streams["stdout"]),
                "stderr": "".join(streams["stderr"]),
                "exit_code": exit_code,
                "timed_out": timed_out,
                "stuck": stuck,
                "output_limit_exceeded": bool(state["limit_exceeded"]),
            }

        except FileNotFoundError:
            # FileNotFoundError can mean either the executable is missing from PATH or the cwd
            # does not exist. Distinguish the two so the caller can recover correctly.
            if cwd is not None and not Path(cwd).exists():
                raise SubprocessError(
                    f"Working directory not found: {cwd} (while running: {command[0]})"
                )
            raise SubprocessError(f"Command not found: {command[0]}")
        except asyncio.CancelledError:
            # Do not leak subprocess transports when the job is cancelled.
            try:
                if read_task is not None and not read_task.done():
                    read_task.cancel()
                if process is not None:
                    await self._terminate_process(process)
            finally:
                raise
        except SubprocessError:
            raise
        except Exception as e:
            raise SubprocessError(f"Subprocess error: {e}")

    @staticmethod
    async def _spawn(
        command: list[str],
        cwd: Path | None,
        env: dict[str, str] | None,
        capture_output: bool,
        stdin: str | None,
    ) -> asyncio.subprocess.Process:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            start_new_session=(os.name != "nt"),
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_output else None,
            stderr=asyncio.subprocess.PIPE if capture_output else None,
        )
        if stdin and process.stdin:
            process.stdin.write(stdin.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        return process

    @staticmethod
    def _format_command_for_log(command: list[str]) -> str:
        """Format a command for logs without dumping huge prompts."""
        if not command:
            return ""

        redacted = list(command)
        if os.path.basename(redacted[0]) == "claude" and len(redacted) >= 2:
            # The last argument is typically a large prompt; redact it if big.
            last_idx = len(redacted) - 1
            if len(redacted[last_idx]) > 200:
                redacted[last_idx] = f"<prompt {len(command[last_idx])} chars>"

        parts: list[str] = []
        max_args = 12
        max_arg_len = 200
        for i, arg in enumerate(redacted):
            if i >= max_args:
                parts.append("...")
                break
            if len(arg) > max_arg_len:
                arg = arg[:max_arg_len] + "..."
            parts.append(shlex.quote(arg))
        return redact_sensitive_text(" ".join(parts))

    async def _read_streams(
        self,
        process: asyncio.subprocess.Process,
        state: dict,
        combined: list[str],
        streams: dict[str, list[str]],
        limit_event: asyncio.Event,
        log_path: Path | None = None,
        on_output_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read stdout and stderr concurrently until both close."""
        log_file = open(log_path, "w") if log_path else None
        try:
            readers = []
            if process.stdout:
                readers.append(
                    self._read_stream(
                        process.stdout, "stdout", state, combined, streams, limit_event,
                        log_file, on_output_line,
                    )
                )
            if process.stderr:
                readers.append(
                    self._read_stream(
                        process.stderr, "stderr", state, combined, streams, limit_event,
                        log_file, on_output_line,
                    )
                )
            await asyncio.gather(*readers)
        finally:
            if log_file:
                log_file.close()

    async def _read_stream(
        self,
        stream: asyncio.StreamReader,
        stream_name: str,
        state: dict,
        combined: list[str],
        streams: dict[str, list[str]],
        limit_event: asyncio.Event,
        log_file=None,
        on_output_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read from a single stream, enforcing the shared byte ceiling."""
        while True:
            line = await stream.readline()
            if not line:
                break

            state["last_output"] = datetime.now()
            if state["limit_exceeded"]:
                # Keep draining so the child never blocks on a full pipe.
                continue

            if self.max_output_bytes is not None:
                remaining = self.max_output_bytes - state["bytes"]
                if len(line) > remaining:
                    line = line[: max(remaining, 0)]
                    state["limit_exceeded"] = True
                    limit_event.set()
                state["bytes"] += len(line)

            line_str = line.decode("utf-8", errors="replace")
            if not line_str:
                continue
            combined.append(line_str)
            streams[stream_name].append(line_str)
            if on_output_line:
                on_output_line(line_str)
            if log_file:
                log_file.write(line_str)
                log_file.flush()
