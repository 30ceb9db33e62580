from __future__ import annotations

import asyncio
import contextlib
import json
import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from signal import Signals
from typing import Any

from loguru import logger

from shipgate.errors import (
    ProcessAbortedError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
)

DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_KILL_GRACE = 5.0
STREAM_LIMIT = 16 * 1024 * 1024
MAX_TICK_SECONDS = 1.0


@dataclass(slots=True)
class SubprocessOptions:
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | Path | None = None
    env: dict[str, str] | None = None
    signal: asyncio.Event | None = None
    timeout: float = DEFAULT_IDLE_TIMEOUT
    startup_timeout: float | None = None
    kill_grace: float = DEFAULT_KILL_GRACE

    @property
    def effective_startup_timeout(self) -> float:
        return self.timeout if self.startup_timeout is None else self.startup_timeout

    def describe(self) -> str:
        return " ".join([self.command, *self.args[:2]])


@dataclass(slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None


@dataclass(slots=True)
class _StreamWatch:
    started_at: float
    last_output: float
    had_output: bool = False
    timed_out: bool = False
    aborted: bool = False
    stderr_chunks: list[str] = field(default_factory=list)

    def touch(self) -> None:
        self.last_output = time.monotonic()
        self.had_output = True

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_chunks)


def _merged_env(overlay: dict[str, str] | None) -> dict[str, str]:
    env = os.environ.copy()
    if overlay:
        env.update(overlay)
    return env


async def _spawn(options: SubprocessOptions) -> asyncio.subprocess.Process:
    try:
        process = await asyncio.create_subprocess_exec(
            options.command,
            *options.args,
            cwd=str(options.cwd) if options.cwd else None,
            env=_merged_env(options.env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise ProcessSpawnError(
            f"Failed to start {options.command}: {exc}", command=options.describe()
        ) from exc
    logger.debug("Spawned {} (pid {})", options.describe(), process.pid)
    return process


async def _terminate(process: asyncio.subprocess.Process, grace: float) -> None:
    """SIGTERM, then SIGKILL once ``grace`` seconds pass without an exit."""
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except TimeoutError:
        logger.warning("Process {} ignored SIGTERM, sending SIGKILL", process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()


async def _drain_stderr(stream: asyncio.StreamReader, watch: _StreamWatch) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        watch.stderr_chunks.append(chunk.decode("utf-8", errors="replace"))
        watch.touch()


async def _read_stdout(
    stream: asyncio.StreamReader, watch: _StreamWatch, lines: asyncio.Queue[str | None]
) -> None:
    """Pump stdout lines into ``lines`` as they arrive; ``None`` marks the end."""
    try:
        while True:
            try:
                raw_line = await stream.readline()
            except ValueError:
                # The reader discards the oversized line and carries on with the next one.
                watch.touch()
                logger.warning("Dropped a stdout line longer than {} bytes", STREAM_LIMIT)
                continue
            if not raw_line:
                return
            watch.touch()
            lines.put_nowait(raw_line.decode("utf-8", errors="replace"))
    finally:
        lines.put_nowait(None)


async def _watch_timeouts(
    process: asyncio.subprocess.Process,
    options: SubprocessOptions,
    watch: _StreamWatch,
) -> None:
    idle = options.timeout
    startup = options.effective_startup_timeout
    enabled = [value for value in (idle, startup) if value > 0]
    if not enabled:
        return
    interval = min(*enabled, MAX_TICK_SECONDS)
    while process.returncode is None:
        await asyncio.sleep(interval)
        now = time.monotonic()
        if not watch.had_output:
            expired = startup > 0 and now - watch.started_at > startup
        else:
            expired = idle > 0 and now - watch.last_output > idle
        if expired:
            watch.timed_out = True
            logger.warning(
                "Killing {} after {}s {}",
                options.describe(),
                idle if watch.had_output else startup,
                "of silence" if watch.had_output else "without any output",
            )
            await _terminate(process, options.kill_grace)
            return


async def _watch_signal(
    process: asyncio.subprocess.Process,
    options: SubprocessOptions,
    watch: _StreamWatch,
) -> None:
    assert options.signal is not None
    await options.signal.wait()
    if process.returncode is not None:
        return
    watch.aborted = True
    logger.warning("Aborting {} on cancellation request", options.describe())
    await _terminate(process, options.kill_grace)


def _timeout_error(options: SubprocessOptions, watch: _StreamWatch) -> ProcessTimeoutError:
    seconds = options.timeout if watch.had_output else options.effective_startup_timeout
    timeout_ms = int(seconds * 1000)
    detail = "without output" if watch.had_output else "without any output"
    return ProcessTimeoutError(
        f"Process timed out after {timeout_ms}ms {detail}",
        timeout_ms=timeout_ms,
        had_output=watch.had_output,
        command=options.describe(),
        stderr=watch.stderr,
    )


def _exit_error(options: SubprocessOptions, return_code: int, stderr: str) -> ProcessExitError:
    signal_name: str | None = None
    if return_code < 0:
        try:
            signal_name = Signals(-return_code).name
        except ValueError:
            signal_name = f"signal {-return_code}"
    message = stderr.strip()
    if not message:
        message = f"Process exited with code {return_code}"
        if signal_name:
            message += f" (signal: {signal_name})"
    return ProcessExitError(
        message,
        command=options.describe(),
        exit_code=return_code,
        signal=signal_name,
        stderr=stderr,
    )


async def stream_jsonl(options: SubprocessOptions) -> AsyncIterator[Any]:
    """Spawn a process and yield each JSON value it writes to stdout, one per line.

    Malformed lines are logged and skipped, as are lines over ``STREAM_LIMIT`` bytes.
    Stdout is read as it arrives regardless of how fast the caller consumes, so the idle
    timer only sees the child's own silence; unconsumed lines are buffered in memory.
    Once stdout is drained and the process has exited, the outcome is reported in this
    order: abort, timeout, non-zero exit. Closing the generator early kills the process.
    """
    if options.signal is not None and options.signal.is_set():
        raise ProcessAbortedError("Process aborted", command=options.describe())

    process = await _spawn(options)
    assert process.stdout is not None and process.stderr is not None

    now = time.monotonic()
    watch = _StreamWatch(started_at=now, last_output=now)
    lines: asyncio.Queue[str | None] = asyncio.Queue()
    helpers = [
        asyncio.create_task(_drain_stderr(process.stderr, watch)),
        asyncio.create_task(_read_stdout(process.stdout, watch, lines)),
        asyncio.create_task(_watch_timeouts(process, options, watch)),
    ]
    if options.signal is not None:
        helpers.append(asyncio.create_task(_watch_signal(process, options, watch)))

    finished = False
    try:
        while True:
            raw_line = await lines.get()
            if raw_line is None:
                break
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Failed to parse JSONL line: {}", line[:200])
                continue
            yield event

        return_code = await process.wait()
        await helpers[0]
        await helpers[1]
        finished = True
    finally:
        for task in helpers[2:]:
            task.cancel()
        if not finished:
            helpers[0].cancel()
            helpers[1].cancel()
            if process.returncode is None:
                logger.debug("Stream for {} closed early, killing process", options.describe())
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        await asyncio.gather(*helpers, return_exceptions=True)

    logger.debug("{} exited with code {}", options.describe(), return_code)
    if watch.aborted:
        raise ProcessAbortedError(
            "Process aborted", command=options.describe(), stderr=watch.stderr
        )
    if watch.timed_out:
        raise _timeout_error(options, watch)
    if return_code != 0:
        raise _exit_error(options, return_code, watch.stderr)


async def run_process(options: SubprocessOptions) -> ProcessResult:
    """Run a process to completion and collect its output without decoding it.

    No timeouts apply here. A set cancellation signal terminates the process and the
    partial output is still returned.
    """
    process = await _spawn(options)
    waiter = None
    if options.signal is not None:
        waiter = asyncio.create_task(_terminate_on_signal(process, options))
    try:
        stdout, stderr = await process.communicate()
    finally:
        if waiter is not None:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
    return ProcessResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode,
    )


async def _terminate_on_signal(
    process: asyncio.subprocess.Process, options: SubprocessOptions
) -> None:
    assert options.signal is not None
    await options.signal.wait()
    await _terminate(process, options.kill_grace)
