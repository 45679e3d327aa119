"""Command execution on top of a spawned process.

Providers only know how to *spawn* a command (``docker exec`` or a host
subprocess) and hand back a :class:`RunningCommand`.  Everything else is
shared here: timeout handling, stdout/stderr fan-in, UTF-8 decoding and
the exit event.

Timeouts follow the POSIX ``timeout(1)`` convention: the process is
killed and the exit code reported as ``124`` with ``timed_out=True``.
Output produced before the kill is still delivered.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import shlex
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

from agentcell.runtime.errors import SandboxError, SandboxErrorCode
from agentcell.runtime.sandbox.models import (
    ExecResult,
    ExecStreamEvent,
    ExitEvent,
    StderrChunk,
    StdoutChunk,
)
from agentcell.runtime.sandbox.streams import merge_channels, read_chunks

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

_STDOUT = 0


class RunningCommand:
    """A spawned command plus the provider-specific way to kill it.

    ``process`` is the local :class:`asyncio.subprocess.Process` whose pipes
    carry the command's output.  For a container it is the ``docker exec``
    client, so killing it alone would leave the command running inside the
    container; *terminate* reaches the real process.
    """

    __slots__ = ("process", "_terminate")

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        terminate: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.process = process
        self._terminate = terminate

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def kill(self) -> None:
        """Forcibly end the command.  Safe to call more than once."""
        if self.process.returncode is not None:
            return
        if self._terminate is not None:
            try:
                await self._terminate()
            except (OSError, SandboxError) as exc:
                logger.warning("Failed to terminate command %s: %s", self.process.pid, exc)
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()


def normalize_command(command: str | Sequence[str]) -> list[str]:
    """Turn a shell string or an argv sequence into an argv list."""
    if isinstance(command, str):
        if not command.strip():
            raise SandboxError(SandboxErrorCode.EXEC_FAILED, "empty command")
        return ["sh", "-c", command]
    argv = list(command)
    if not argv:
        raise SandboxError(SandboxErrorCode.EXEC_FAILED, "empty command")
    return argv


def describe_command(argv: Sequence[str]) -> str:
    return shlex.join(argv)


async def stream_process(
    running: RunningCommand,
    *,
    timeout_ms: int,
    stdin: str | None = None,
    chunk_size: int = 8192,
    buffer_chunks: int = 64,
) -> AsyncIterator[ExecStreamEvent]:
    """Yield output chunks from *running*, then exactly one :class:`ExitEvent`.

    If the consumer stops iterating early the command is killed.
    """
    proc = running.process
    if proc.stdout is None or proc.stderr is None:
        msg = "command must be spawned with stdout and stderr pipes"
        raise ValueError(msg)

    loop = asyncio.get_running_loop()
    started = loop.time()
    timed_out = False
    kill_task: asyncio.Future[None] | None = None

    def _on_timeout() -> None:
        nonlocal timed_out, kill_task
        timed_out = True
        logger.info("Command %s exceeded %dms, killing", proc.pid, timeout_ms)
        kill_task = asyncio.ensure_future(running.kill())

    timer = loop.call_later(timeout_ms / 1000, _on_timeout)
    feeder = asyncio.create_task(_feed_stdin(proc, stdin))
    decoders = [
        codecs.getincrementaldecoder("utf-8")(errors="replace"),
        codecs.getincrementaldecoder("utf-8")(errors="replace"),
    ]
    completed = False
    try:
        async for channel, chunk in merge_channels(
            [read_chunks(proc.stdout, chunk_size), read_chunks(proc.stderr, chunk_size)],
            max_buffered=buffer_chunks,
        ):
            text = decoders[channel].decode(chunk)
            if text:
                yield _chunk_event(channel, text)

        for channel, decoder in enumerate(decoders):
            tail = decoder.decode(b"", final=True)
            if tail:
                yield _chunk_event(channel, tail)

        returncode = await proc.wait()
        completed = True
    finally:
        timer.cancel()
        if not completed:
            await running.kill()
        if kill_task is not None:
            await kill_task
        if not feeder.done():
            feeder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await feeder

    duration_ms = int((loop.time() - started) * 1000)
    if timed_out:
        yield ExitEvent(exit_code=TIMEOUT_EXIT_CODE, duration_ms=duration_ms, timed_out=True)
    else:
        yield ExitEvent(exit_code=returncode, duration_ms=duration_ms)


async def collect(events: AsyncIterator[ExecStreamEvent]) -> ExecResult:
    """Drain an event stream into a single :class:`ExecResult`."""
    stdout: list[str] = []
    stderr: list[str] = []
    exit_event: ExitEvent | None = None
    async for event in events:
        if isinstance(event, StdoutChunk):
            stdout.append(event.data)
        elif isinstance(event, StderrChunk):
            stderr.append(event.data)
        else:
            exit_event = event

    if exit_event is None:
        raise SandboxError(SandboxErrorCode.EXEC_FAILED, "command stream ended without an exit event")
    return ExecResult(
        exit_code=exit_event.exit_code,
        stdout="".join(stdout),
        stderr="".join(stderr),
        duration_ms=exit_event.duration_ms,
        timed_out=exit_event.timed_out,
    )


def _chunk_event(channel: int, text: str) -> StdoutChunk | StderrChunk:
    if channel == _STDOUT:
        return StdoutChunk(data=text)
    return StderrChunk(data=text)


async def _feed_stdin(proc: asyncio.subprocess.Process, data: str | None) -> None:
    if proc.stdin is None:
        return
    try:
        if data:
            proc.stdin.write(data.encode())
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The command exited without reading all of its input.
        logger.debug("stdin closed early by command %s", proc.pid)
    finally:
        proc.stdin.close()
