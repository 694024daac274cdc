"""Subprocess-based shell executor with streaming output and a kill switch."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import signal
import sys
import time
from collections.abc import Callable

from codeloop.logging import get_logger
from codeloop.session.cancellation import CancellationToken
from codeloop.terminal.result import ShellResult

log = get_logger("terminal")

_IS_POSIX = sys.platform != "win32"


class SubprocessTerminalExecutor:
    """Run shell command lines as child processes.

    The child gets its own process group so termination reaches everything
    it spawned. Termination is SIGTERM, then SIGKILL once the grace period
    has elapsed.
    """

    def __init__(self, default_cwd: str = ".", kill_grace_period: float = 2.0) -> None:
        self._default_cwd = default_cwd
        self._grace = kill_grace_period

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = 30.0,
        output_limit: int = 50_000,
        on_output: Callable[[str], None] | None = None,
        token: CancellationToken | None = None,
    ) -> ShellResult:
        """Execute a command line through the shell.

        Args:
            command: Full command line.
            cwd: Working directory. Uses default_cwd if None.
            env: Additional environment variables.
            timeout: Timeout in seconds. None for no timeout.
            output_limit: Maximum characters of output kept in the result.
            on_output: Called with each decoded chunk as it arrives.
            token: Cancellation token; firing it terminates the process.
        """
        start_time = time.perf_counter()

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd or self._default_cwd,
                env=process_env,
                start_new_session=_IS_POSIX,
            )
        except OSError as e:
            return ShellResult(
                command=command,
                exit_code=126 if isinstance(e, PermissionError) else 127,
                output=f"Failed to start command: {e}",
                truncated=False,
                status="error",
                signal=None,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

        chunks: list[str] = []
        size = 0
        truncated = False

        async def pump() -> None:
            nonlocal size, truncated
            assert process.stdout is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                data = await process.stdout.read(4096)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        chunks.append(tail)
                    break
                text = decoder.decode(data)
                if not text:
                    continue
                if on_output is not None:
                    on_output(text)
                keep = text[: max(0, output_limit - size)]
                if keep:
                    chunks.append(keep)
                    size += len(keep)
                if len(keep) < len(text):
                    truncated = True
            await process.wait()

        reader = asyncio.ensure_future(pump())
        waiters: set[asyncio.Future] = {reader}
        cancel_waiter: asyncio.Future | None = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            waiters.add(cancel_waiter)

        status = "ok"
        sent_signal: str | None = None
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if reader not in done:
                status = "cancelled" if cancel_waiter is not None and cancel_waiter in done else "timeout"
                sent_signal = await self._terminate(process)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not reader.done():
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(asyncio.shield(reader), timeout=self._grace)
                reader.cancel()

        duration_ms = (time.perf_counter() - start_time) * 1000
        output = "".join(chunks)
        if truncated:
            output += "\n... (output truncated)"

        if status == "timeout":
            output = f"{output}\nCommand timed out after {timeout}s".lstrip("\n")
            return ShellResult(command, None, output, truncated, "timeout", sent_signal, duration_ms)
        if status == "cancelled":
            return ShellResult(command, None, output, truncated, "cancelled", sent_signal, duration_ms)

        exit_code = process.returncode
        return ShellResult(
            command=command,
            exit_code=exit_code,
            output=output,
            truncated=truncated,
            status="ok" if exit_code == 0 else "error",
            signal=None,
            duration_ms=duration_ms,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> str | None:
        """SIGTERM the process group, SIGKILL after the grace period."""
        if process.returncode is not None:
            return None
        self._signal(process, force=False)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._grace)
            return "SIGTERM"
        except asyncio.TimeoutError:
            log.debug("Process %d ignored SIGTERM, killing", process.pid)
            self._signal(process, force=True)
            await process.wait()
            return "SIGKILL"

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, *, force: bool) -> None:
        try:
            if _IS_POSIX:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass
