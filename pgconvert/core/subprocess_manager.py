"""Centralized subprocess management with proper resource handling.

Every external tool call goes through :class:`SubprocessManager`. Pipes are
built from explicit OS pipes between stages and the exit status of every
stage is collected, so a failing producer can never hide behind a successful
consumer.
"""

import asyncio
import os
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Optional

import structlog

from .exceptions import CommandError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30  # Default timeout in seconds
KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL
STREAM_CHUNK_SIZE = 1024 * 1024


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str | bytes,
        stderr: str | bytes,
        cmd: list[str],
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0

    @property
    def program(self) -> str:
        return Path(self.cmd[0]).name if self.cmd else ""

    def error_message(self) -> str:
        message = (
            self.stderr.strip() if self.stderr
            else self.stdout.strip() if self.stdout
            else "Command failed"
        )
        if isinstance(message, bytes):
            message = message.decode(errors="replace")
        return message

    def check_returncode(self) -> None:
        """Raise an exception if the command failed."""
        if self.returncode != 0:
            raise CommandError(
                f"{self.program} failed with exit code {self.returncode}: {self.error_message()}"
            )


def _check_all(results: Sequence[SubprocessResult]) -> None:
    failed = [result for result in results if not result.success]
    if not failed:
        return
    details = "; ".join(
        f"{result.program} exited {result.returncode}: {result.error_message()}"
        for result in failed
    )
    raise CommandError(f"Pipeline stage failed: {details}")


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Process did not terminate gracefully, sending SIGKILL", pid=process.pid)
        process.kill()
        await process.wait()
    except ProcessLookupError:
        # Process already terminated
        pass


class SubprocessManager:
    """Manages subprocess execution with proper resource cleanup."""

    def __init__(self):
        self._active_processes: set[asyncio.subprocess.Process] = set()

    async def run_command(
        self,
        cmd: list[str],
        *,
        timeout: Optional[float] = None,
        check: bool = True,
        text: bool = True,
    ) -> SubprocessResult:
        """Run a command and capture its output.

        Args:
            cmd: Command and arguments as a list
            timeout: Timeout in seconds (default: DEFAULT_TIMEOUT)
            check: Raise exception if command fails
            text: Return output as text instead of bytes

        Returns:
            SubprocessResult with returncode, stdout, and stderr

        Raises:
            CommandError: If check=True and command fails or times out
        """
        if timeout is None:
            timeout = DEFAULT_TIMEOUT

        logger.debug("Executing command", command=cmd[0], args=len(cmd) - 1)

        process = await self._spawn(
            cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Command timed out, terminating process",
                    command=cmd[0],
                    timeout=timeout,
                    pid=process.pid,
                )
                await _terminate(process)
                raise CommandError(f"{Path(cmd[0]).name} timed out after {timeout} seconds") from None
        finally:
            await self._release(process)

        if text:
            stdout: str | bytes = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
            stderr: str | bytes = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
        else:
            stdout = stdout_bytes or b""
            stderr = stderr_bytes or b""

        result = SubprocessResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout,
            stderr=stderr,
            cmd=cmd,
        )
        if check:
            result.check_returncode()
        return result

    async def run_pipeline(
        self,
        stages: Sequence[list[str]],
        *,
        stdin_path: Path | str | None = None,
        stdout_path: Path | str | None = None,
        stdout_mode: int = 0o600,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> list[SubprocessResult]:
        """Run commands connected stdout-to-stdin and check every stage.

        Args:
            stages: Commands in pipe order
            stdin_path: File fed to the first stage (DEVNULL when omitted)
            stdout_path: File receiving the last stage's output (created with
                ``stdout_mode``; DEVNULL when omitted)
            stdout_mode: Permission bits for a newly created output file
            timeout: Timeout in seconds for the whole pipe
            check: Raise if any stage exits non-zero

        Returns:
            One SubprocessResult per stage, in pipe order
        """
        if not stages:
            raise ValueError("Pipeline requires at least one stage")
        if timeout is None:
            timeout = DEFAULT_TIMEOUT

        logger.debug(
            "Executing pipeline",
            stages=[stage[0] for stage in stages],
            stdin=str(stdin_path) if stdin_path else None,
            stdout=str(stdout_path) if stdout_path else None,
        )

        processes: list[asyncio.subprocess.Process] = []
        with ExitStack() as stack:
            if stdin_path is not None:
                upstream: Any = stack.enter_context(open(stdin_path, "rb"))
            else:
                upstream = asyncio.subprocess.DEVNULL
            if stdout_path is not None:
                fd = os.open(stdout_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stdout_mode)
                sink: Any = stack.enter_context(os.fdopen(fd, "wb"))
            else:
                sink = asyncio.subprocess.DEVNULL

            try:
                for index, cmd in enumerate(stages):
                    last = index == len(stages) - 1
                    read_end = write_end = None
                    if not last:
                        read_end, write_end = os.pipe()
                    try:
                        process = await self._spawn(
                            cmd,
                            stdin=upstream,
                            stdout=sink if last else write_end,
                            stderr=asyncio.subprocess.PIPE,
                        )
                    except BaseException:
                        if read_end is not None:
                            os.close(read_end)
                        raise
                    finally:
                        # The child holds its own copies now
                        if write_end is not None:
                            os.close(write_end)
                        if isinstance(upstream, int) and upstream != asyncio.subprocess.DEVNULL:
                            os.close(upstream)
                    processes.append(process)
                    upstream = read_end

                try:
                    outputs = await asyncio.wait_for(
                        asyncio.gather(*(process.communicate() for process in processes)),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Pipeline timed out, terminating stages",
                        stages=[stage[0] for stage in stages],
                        timeout=timeout,
                    )
                    raise CommandError(
                        f"Pipeline {' | '.join(Path(s[0]).name for s in stages)} "
                        f"timed out after {timeout} seconds"
                    ) from None
            finally:
                for process in processes:
                    await self._release(process)

        results = [
            SubprocessResult(
                returncode=process.returncode if process.returncode is not None else -1,
                stdout="",
                stderr=(stderr or b"").decode(errors="replace"),
                cmd=list(cmd),
            )
            for process, cmd, (_, stderr) in zip(processes, stages, outputs)
        ]
        if check:
            _check_all(results)
        return results

    async def stream_to_file(
        self,
        cmd: list[str],
        output_path: Path | str,
        *,
        transform: Optional[Callable[[], "StreamTransform"]] = None,
        mode: int = 0o600,
        timeout: Optional[float] = None,
    ) -> SubprocessResult:
        """Stream a command's stdout into a file through an optional filter.

        The file is created with ``mode`` so dumps are never world readable,
        even briefly. The command's exit status is checked after the stream is
        drained; a failure raises CommandError.
        """
        if timeout is None:
            timeout = DEFAULT_TIMEOUT
        line_filter = transform() if transform is not None else None

        logger.debug("Streaming command output", command=cmd[0], output=str(output_path))

        try:
            fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        except OSError as e:
            raise CommandError(f"Could not open output file '{output_path}': {e}") from e

        with os.fdopen(fd, "wb") as handle:
            process = await self._spawn(
                cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:

                async def copy_stdout() -> None:
                    assert process.stdout is not None
                    while True:
                        chunk = await process.stdout.read(STREAM_CHUNK_SIZE)
                        if not chunk:
                            break
                        handle.write(line_filter.feed(chunk) if line_filter else chunk)
                    if line_filter is not None:
                        handle.write(line_filter.flush())

                async def read_stderr() -> bytes:
                    assert process.stderr is not None
                    return await process.stderr.read()

                try:
                    _, stderr_bytes, _ = await asyncio.wait_for(
                        asyncio.gather(copy_stdout(), read_stderr(), process.wait()),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Streamed command timed out, terminating process",
                        command=cmd[0],
                        timeout=timeout,
                        pid=process.pid,
                    )
                    raise CommandError(
                        f"{Path(cmd[0]).name} timed out after {timeout} seconds"
                    ) from None
            finally:
                await self._release(process)

        result = SubprocessResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout="",
            stderr=(stderr_bytes or b"").decode(errors="replace"),
            cmd=cmd,
        )
        result.check_returncode()
        return result

    async def cleanup_all(self) -> None:
        """Terminate every process still tracked by this manager."""
        processes = list(self._active_processes)
        if not processes:
            return

        logger.info("Cleaning up active processes", count=len(processes))
        for process in processes:
            await _terminate(process)
        self._active_processes.clear()

    async def _spawn(self, cmd: list[str], **kwargs: Any) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(*cmd, env=os.environ.copy(), **kwargs)
        except OSError as e:
            raise CommandError(f"Could not execute {cmd[0]}: {e}") from e
        self._active_processes.add(process)
        return process

    async def _release(self, process: asyncio.subprocess.Process) -> None:
        self._active_processes.discard(process)
        await _terminate(process)


class StreamTransform:
    """Interface for chunked stdout filters used by ``stream_to_file``."""

    def feed(self, chunk: bytes) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    def flush(self) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError


class LinePrefixFilter(StreamTransform):
    """Drop every line that starts with ``prefix``, across chunk boundaries.

    Equivalent to ``sed -e '/^--/d'`` without buffering whole lines, so very
    long COPY rows do not need to fit in memory at once.
    """

    _START, _KEEP, _SKIP = range(3)

    def __init__(self, prefix: bytes):
        self.prefix = prefix
        self._state = self._START
        self._pending = b""

    def feed(self, chunk: bytes) -> bytes:
        data = self._pending + chunk
        self._pending = b""
        out = bytearray()
        pos = 0
        size = len(data)
        width = len(self.prefix)

        while pos < size:
            if self._state == self._START:
                head = data[pos : pos + width]
                if len(head) < width and b"\n" not in head:
                    # Not enough bytes yet to decide this line
                    self._pending = data[pos:]
                    break
                self._state = self._SKIP if head == self.prefix else self._KEEP

            newline = data.find(b"\n", pos)
            end = size if newline == -1 else newline + 1
            if self._state == self._KEEP:
                out += data[pos:end]
            pos = end
            if newline != -1:
                self._state = self._START

        return bytes(out)

    def flush(self) -> bytes:
        pending, self._pending = self._pending, b""
        self._state = self._START
        return pending
