"""Run an external program with a hard deadline and bounded output.

Isolation model:
  - The child gets its own session, so signals reach the whole process group
    (latexmk forks pdflatex, biber, makeglossaries ...)
  - Deadline 1 (``timeout``): SIGTERM to the group, ``timed_out`` is set
  - Deadline 2 (``grace_period`` after deadline 1): SIGKILL to the group
  - stdout / stderr are drained continuously; bytes past ``max_output`` are
    discarded, the child is never blocked on a full pipe
  - A child that cannot be spawned yields ``exit_code=None`` instead of raising
  - If the awaiting task is cancelled, the group is killed before re-raising

Knows nothing about LaTeX, git or PDFs.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import structlog

logger = structlog.get_logger().bind(component="tools.subprocess")

DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_OUTPUT = 10 * 1024 * 1024
FORCE_KILL_DELAY = 5.0

_READ_CHUNK = 64 * 1024


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of one external program run."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def log(self) -> str:
        return self.stdout + self.stderr


class _BoundedBuffer:
    """Byte accumulator that silently drops everything past ``limit``."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, limit)
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        room = self.limit - self._size
        if room <= 0:
            self.truncated = self.truncated or bool(data)
            return
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self._chunks.append(data)
        self._size += len(data)

    def text(self) -> str:
        # Never longer than ``limit``: each byte decodes to at most one char.
        return b"".join(self._chunks).decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, buf: _BoundedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        buf.feed(chunk)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _terminate(
    proc: asyncio.subprocess.Process,
    program: str,
    grace_period: float,
) -> None:
    """SIGTERM now; SIGKILL if the group is still alive after ``grace_period``."""
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning("process_kill", program=program, grace_period=grace_period)
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()


async def run_process(
    program: str,
    args: Sequence[str],
    *,
    cwd: str | os.PathLike[str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    env: Mapping[str, str] | None = None,
    grace_period: float = FORCE_KILL_DELAY,
) -> ProcessResult:
    """Run ``program args...`` and return its result; never raises for child failures."""
    start = time.perf_counter()

    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning("process_spawn_failed", program=program, error=e.strerror or str(e))
        return ProcessResult(
            exit_code=None,
            stdout="",
            stderr=f"Failed to start {program}: {e.strerror or e}",
            timed_out=False,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    stdout_buf = _BoundedBuffer(max_output)
    stderr_buf = _BoundedBuffer(max_output)
    readers = [
        asyncio.create_task(_drain(proc.stdout, stdout_buf)),
        asyncio.create_task(_drain(proc.stderr, stderr_buf)),
    ]
    timed_out = False

    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("process_timeout", program=program, timeout=timeout)
            await _terminate(proc, program, grace_period)

        # Grandchildren that escaped the group may still hold the pipes open.
        _, pending = await asyncio.wait(readers, timeout=grace_period)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    except asyncio.CancelledError:
        _signal_group(proc, signal.SIGKILL)
        for task in readers:
            task.cancel()
        # Reap before the caller releases the workspace.
        try:
            await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning("process_reap_timeout", program=program, pid=proc.pid)
        raise

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    if stdout_buf.truncated or stderr_buf.truncated:
        logger.info("process_output_truncated", program=program, max_output=max_output)
    logger.debug(
        "process_exited",
        program=program,
        exit_code=proc.returncode,
        timed_out=timed_out,
        duration_ms=duration_ms,
    )

    return ProcessResult(
        exit_code=proc.returncode,
        stdout=stdout_buf.text(),
        stderr=stderr_buf.text(),
        timed_out=timed_out,
        duration_ms=duration_ms,
    )


async def check_command(program: str, args: Sequence[str], *, timeout: float = 5.0) -> dict[str, object]:
    """Check a binary runs: ``{"ok": bool, "version": first output line | None}``."""
    result = await run_process(program, args, timeout=timeout, max_output=64 * 1024, grace_period=1.0)
    output = (result.stdout or result.stderr).strip()
    return {
        "ok": result.success,
        "version": output.splitlines()[0] if result.success and output else None,
    }
