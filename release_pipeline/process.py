"""External command execution for the pipeline's build and publish steps.

Every tool the pipeline drives (``rustup``, ``cargo``, ``zstd``, ``gh``) is
invoked through a :class:`CommandRunner`. The default runner uses ``plumbum``
and honours a per-command timeout and a shared cancellation event, which are
the only points where a branch may block.
"""

from __future__ import annotations

import dataclasses
import os
import subprocess
import threading
import time
import typing as typ
from pathlib import Path

from plumbum import local
from plumbum.commands import ProcessTimedOut

from .errors import PipelineCancelled

__all__ = ["BudgetedRunner", "CommandResult", "CommandRunner", "PlumbumRunner", "tail"]


@dataclasses.dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Return stdout and stderr joined, for error reporting."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner(typ.Protocol):
    """Callable that runs ``argv`` and returns its :class:`CommandResult`."""

    def __call__(
        self,
        argv: typ.Sequence[str],
        *,
        cwd: Path | None = None,
        env: typ.Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult: ...


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class PlumbumRunner:
    """Run commands with :data:`plumbum.local`.

    Raises
    ------
    plumbum.commands.CommandNotFound
        If the executable is not available in ``PATH``.
    plumbum.commands.ProcessTimedOut
        If the command outlives ``timeout`` seconds. The process is killed.
    PipelineCancelled
        If ``cancel`` is set while the command runs. The process is killed.
    """

    def __init__(self, poll_interval: float = 0.5) -> None:
        self.poll_interval = poll_interval

    def __call__(
        self,
        argv: typ.Sequence[str],
        *,
        cwd: Path | None = None,
        env: typ.Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        argv = tuple(argv)
        command = local[argv[0]][argv[1:]]
        merged_env = {**os.environ, **env} if env else None
        proc = command.popen(
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env,
        )
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    message = f"Cancelled: {' '.join(argv)}"
                    raise PipelineCancelled(message) from None
                if deadline is not None and time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    message = f"Command timed out after {timeout}s"
                    raise ProcessTimedOut(message, list(argv)) from None
        return CommandResult(
            argv=argv,
            returncode=int(proc.returncode),
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )


class BudgetedRunner:
    """Wrap a runner so every command shares one wall-clock budget.

    Each call's timeout is capped by the time left in the budget; once the
    budget is spent, further calls time out immediately.

    Parameters
    ----------
    runner : CommandRunner
        Runner that executes the commands.
    budget : float | None
        Seconds available to all commands together; ``None`` is unbounded.
    clock : Callable[[], float]
        Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        runner: CommandRunner,
        budget: float | None,
        *,
        clock: typ.Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.budget = budget
        self.clock = clock
        self.deadline = None if budget is None else clock() + budget

    def remaining(self) -> float | None:
        """Return seconds left in the budget, or ``None`` when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    def __call__(
        self,
        argv: typ.Sequence[str],
        *,
        cwd: Path | None = None,
        env: typ.Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            message = f"Branch budget of {self.budget}s exhausted"
            raise ProcessTimedOut(message, list(argv))
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        return self.runner(argv, cwd=cwd, env=env, timeout=timeout, cancel=cancel)


def tail(text: str, lines: int = 20) -> str:
    """Return the last ``lines`` lines of ``text`` for compact error messages."""
    return "\n".join(text.strip().splitlines()[-lines:])
