"""Publish the crate to crates.io for tagged releases."""

from __future__ import annotations

import dataclasses
import os
import threading
import typing as typ
from pathlib import Path

from plumbum.commands import CommandNotFound, ProcessTimedOut

from .errors import RegistryConflictError, RegistryError
from .matrix import Channel
from .process import CommandRunner, tail

__all__ = ["TOKEN_ENV", "RegistryPublisher", "RegistryResult", "is_version_conflict"]

TOKEN_ENV = "CARGO_REGISTRY_TOKEN"

_CONFLICT_MARKERS = (
    "already uploaded",
    "already exists",
)


@dataclasses.dataclass(frozen=True, slots=True)
class RegistryResult:
    """Outcome of a successful :meth:`RegistryPublisher.publish`."""

    argv: tuple[str, ...]
    dry_run: bool
    output: str


def is_version_conflict(output: str) -> bool:
    """Return ``True`` when cargo's ``output`` reports an existing version.

    Examples
    --------
    >>> is_version_conflict("error: crate version `0.1.0` is already uploaded")
    True
    """
    lowered = output.lower()
    return any(marker in lowered for marker in _CONFLICT_MARKERS)


class RegistryPublisher:
    """Run ``cargo publish --locked`` for the release channel.

    The registry token is passed to cargo through ``CARGO_REGISTRY_TOKEN``
    instead of ``cargo login`` so no credentials file is written.

    Parameters
    ----------
    workspace : Path
        Crate root.
    runner : CommandRunner
        Executes ``cargo``.
    toolchain : str | None
        Pinned toolchain passed as ``+toolchain``.
    token : str | None
        Registry token; read from the environment when omitted.
    timeout : float | None
        Wall-clock budget for the publish.
    """

    def __init__(
        self,
        workspace: Path,
        runner: CommandRunner,
        *,
        toolchain: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.workspace = workspace
        self.runner = runner
        self.toolchain = toolchain
        self.token = token
        self.timeout = timeout

    def command(self, *, dry_run: bool = False) -> list[str]:
        """Return the ``cargo publish`` invocation."""
        argv = ["cargo"]
        if self.toolchain:
            argv.append(f"+{self.toolchain}")
        argv += ["publish", "--locked"]
        if dry_run:
            argv.append("--dry-run")
        return argv

    def publish(
        self,
        channel: Channel,
        *,
        dry_run: bool = False,
        cancel: threading.Event | None = None,
        environ: typ.Mapping[str, str] | None = None,
    ) -> RegistryResult:
        """Publish the crate version checked out in :attr:`workspace`.

        Raises
        ------
        RegistryError
            If called for the staging channel, no token is available, the
            lockfile is missing, or cargo fails.
        RegistryConflictError
            If the version is already on the registry. Cargo's output is
            kept verbatim and the publish is not retried.
        """
        if channel is not Channel.RELEASE:
            message = "Registry publishing only runs on the release channel"
            raise RegistryError(message)
        if not (self.workspace / "Cargo.lock").is_file():
            message = (
                f"Cargo.lock not found in {self.workspace}; publish must be locked"
            )
            raise RegistryError(message)

        env = os.environ if environ is None else environ
        token = self.token or env.get(TOKEN_ENV)
        if not token and not dry_run:
            message = f"{TOKEN_ENV} is not set; cannot publish to crates.io"
            raise RegistryError(message)

        argv = self.command(dry_run=dry_run)
        try:
            result = self.runner(
                argv,
                cwd=self.workspace,
                env={TOKEN_ENV: token} if token else None,
                timeout=self.timeout,
                cancel=cancel,
            )
        except CommandNotFound as exc:
            message = "cargo is not installed; cannot publish the crate"
            raise RegistryError(message) from exc
        except ProcessTimedOut as exc:
            message = f"cargo publish timed out after {self.timeout}s"
            raise RegistryError(message) from exc

        if result.ok:
            if dry_run:
                print("Crate publish dry run passed")
            else:
                print("Published crate to crates.io")
            return RegistryResult(
                argv=result.argv, dry_run=dry_run, output=result.output
            )
        if is_version_conflict(result.output):
            raise RegistryConflictError(result.output.strip())
        message = f"cargo publish failed (exit {result.returncode})"
        if detail := tail(result.output):
            message = f"{message}:\n{detail}"
        raise RegistryError(message)
