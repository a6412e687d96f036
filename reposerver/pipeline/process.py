"""Subprocess execution shared by hooks, the indexer and runtime checks.

All external commands go through :func:`run_process`. A timeout and a task
cancellation (for example on service shutdown) are handled the same way: the
child's whole process group is killed and reaped before the exception
propagates, so no orphaned children are left behind.
"""

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Mapping, Sequence
from datetime import timedelta
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class ProcessTimeoutError(Exception):
    """Raised when a command exceeds its timeout and has been killed.

    Attributes:
        timeout: The timeout that was exceeded, in seconds.
        argv: The command that was killed.
    """

    def __init__(self, timeout: float, argv: Sequence[str]) -> None:
        self.timeout = timeout
        self.argv = list(argv)
        super().__init__(f"command timed out after {timeout:g}s: {' '.join(self.argv)}")


class ProcessResult(BaseModel):
    """Outcome of a finished subprocess.

    Attributes:
        exit_code: Exit status, None if the process was killed by a signal.
        stdout: Captured standard output, trimmed.
        stderr: Captured standard error, trimmed.
        duration: Wall-clock run time.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int | None = Field(..., description="Process exit code")
    stdout: str = Field("", description="Trimmed standard output")
    stderr: str = Field("", description="Trimmed standard error")
    duration: timedelta = Field(..., description="Run time")

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def duration_ms(self) -> int:
        return int(self.duration.total_seconds() * 1000)


async def run_process(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run a command to completion and capture its output.

    Args:
        argv: Program and arguments.
        env: Extra environment variables layered over the current environment.
        cwd: Working directory for the child.
        timeout: Seconds after which the child is killed, None for no limit.

    Returns:
        ProcessResult for the finished command. A non-zero exit is not an error
        at this level; callers decide what it means.

    Raises:
        ProcessTimeoutError: If the timeout elapsed. The child has been killed.
        OSError: If the program cannot be started.
    """
    child_env = dict(os.environ)
    if env:
        child_env.update(env)

    start = time.perf_counter()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=child_env,
        cwd=str(cwd) if cwd is not None else None,
        start_new_session=True,
    )

    try:
        if timeout is None:
            stdout, stderr = await proc.communicate()
        else:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await _kill(proc)
        raise ProcessTimeoutError(timeout or 0.0, argv) from None
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    return ProcessResult(
        exit_code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
        duration=timedelta(seconds=time.perf_counter() - start),
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a child's process group and wait for the child to exit."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    # Shielded so a second cancellation cannot leave the child unreaped.
    await asyncio.shield(proc.wait())
    logger.debug("process.killed", pid=proc.pid, exit_code=proc.returncode)


def summarize_output(prefix: str, stdout: str, stderr: str) -> str:
    """Build a one-line summary from the last line of a command's output.

    Args:
        prefix: Leading text of the summary.
        stdout: Captured standard output.
        stderr: Captured standard error.

    Returns:
        ``prefix`` followed by the last stderr line, or else the last stdout line.
    """
    out = stdout.strip().splitlines()[-1].strip() if stdout.strip() else ""
    err = stderr.strip().splitlines()[-1].strip() if stderr.strip() else ""

    if err:
        return f"{prefix}; stderr={err}"
    if out:
        return f"{prefix}; stdout={out}"
    return prefix
