"""Compile the project for a single target with a pinned toolchain.

The build honours the committed ``Cargo.lock`` (``--locked``) and never edits
toolchain configuration: the toolchain is selected per invocation with
``+toolchain`` rather than ``rustup override``. Each branch builds into its own
``--target-dir`` so concurrent branches do not contend for cargo's lock.
"""

from __future__ import annotations

import dataclasses
import shutil
import threading
import typing as typ
from pathlib import Path

from plumbum.commands import CommandNotFound, ProcessTimedOut

from .errors import BuildError
from .manifest import hash_file
from .process import CommandRunner, tail

if typ.TYPE_CHECKING:
    from .matrix import Target

__all__ = ["PINNED_FILES", "Builder", "Toolchain", "fingerprint_pinned_files"]

PINNED_FILES = ("Cargo.lock", "rust-toolchain", "rust-toolchain.toml")

_PROFILE_DIRS = {"dev": "debug", "test": "debug", "bench": "release"}


@dataclasses.dataclass(frozen=True, slots=True)
class Toolchain:
    """Toolchain and profile threaded into every build invocation.

    Attributes
    ----------
    channel : str | None
        Toolchain passed as ``cargo +<channel>``; ``None`` defers to
        ``rust-toolchain.toml``.
    profile : str
        Cargo profile, ``ci-release`` by default.
    """

    channel: str | None = None
    profile: str = "ci-release"

    @property
    def profile_dir(self) -> str:
        """Directory cargo writes the profile's output to."""
        return _PROFILE_DIRS.get(self.profile, self.profile)


class Builder:
    """Build raw executables for individual targets.

    Parameters
    ----------
    workspace : Path
        Root of the Rust project.
    bin_name : str
        Name of the binary target to collect.
    toolchain : Toolchain
        Pinned toolchain and profile.
    runner : CommandRunner
        Executes ``rustup`` and ``cargo``.
    cancel : threading.Event | None
        Set to abort in-flight commands.
    """

    def __init__(
        self,
        workspace: Path,
        bin_name: str,
        toolchain: Toolchain,
        runner: CommandRunner,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        self.workspace = workspace
        self.bin_name = bin_name
        self.toolchain = toolchain
        self.runner = runner
        self.cancel = cancel

    def target_add_command(self, target: Target) -> list[str]:
        """Return the ``rustup`` invocation installing ``target``'s std."""
        argv = ["rustup", "target", "add"]
        if self.toolchain.channel:
            argv += ["--toolchain", self.toolchain.channel]
        return [*argv, target.name]

    def build_command(self, target: Target, target_dir: Path) -> list[str]:
        """Return the locked ``cargo build`` invocation for ``target``.

        Examples
        --------
        >>> builder.build_command(target, Path("work/cargo-target"))  # doctest: +SKIP
        ['cargo', 'build', '--profile', 'ci-release', '--locked', '--target',
         'x86_64-unknown-linux-gnu', '--target-dir', 'work/cargo-target']
        """
        argv = ["cargo"]
        if self.toolchain.channel:
            argv.append(f"+{self.toolchain.channel}")
        return [
            *argv,
            "build",
            "--profile",
            self.toolchain.profile,
            "--locked",
            "--target",
            target.name,
            "--target-dir",
            target_dir.as_posix(),
        ]

    def build(self, target: Target, branch_dir: Path) -> Path:
        """Build ``target`` and copy the executable into ``branch_dir``.

        Returns
        -------
        Path
            ``branch_dir / <bin_name><bin_ext>``.

        Raises
        ------
        BuildError
            If the lockfile is missing, a command fails or times out, the
            toolchain files change, or the executable is not produced.
        PipelineCancelled
            If the run is cancelled mid-build.
        """
        self._require_manifests()
        before = fingerprint_pinned_files(self.workspace)
        target_dir = branch_dir / "cargo-target"

        self._run(target, self.target_add_command(target))
        self._run(target, self.build_command(target, target_dir))

        if (after := fingerprint_pinned_files(self.workspace)) != before:
            changed = sorted(
                name for name in before.keys() | after.keys()
                if before.get(name) != after.get(name)
            )
            message = (
                f"Build for {target.name} modified pinned files: {', '.join(changed)}"
            )
            raise BuildError(message)

        binary_name = target.binary_name(self.bin_name)
        built = target_dir / target.name / self.toolchain.profile_dir / binary_name
        if not built.is_file():
            message = f"Binary not found at {built} after building {target.name}"
            raise BuildError(message)
        destination = branch_dir / binary_name
        shutil.copy2(built, destination)
        print(f"Built {target.name} -> {destination}")
        return destination

    def _require_manifests(self) -> None:
        for name in ("Cargo.toml", "Cargo.lock"):
            if not (self.workspace / name).is_file():
                message = f"{name} not found in {self.workspace}; builds must be locked"
                raise BuildError(message)

    def _run(self, target: Target, argv: list[str]) -> None:
        try:
            result = self.runner(
                argv,
                cwd=self.workspace,
                cancel=self.cancel,
            )
        except CommandNotFound as exc:
            message = f"{argv[0]} is not installed; cannot build {target.name}"
            raise BuildError(message) from exc
        except ProcessTimedOut as exc:
            message = f"{argv[0]} timed out for {target.name}: {exc}"
            raise BuildError(message) from exc
        if not result.ok:
            message = (
                f"{' '.join(argv[:2])} failed for {target.name} "
                f"(exit {result.returncode})"
            )
            if detail := tail(result.output):
                message = f"{message}:\n{detail}"
            raise BuildError(message)


def fingerprint_pinned_files(workspace: Path) -> dict[str, str]:
    """Return SHA-256 digests of the lockfile and toolchain pins present."""
    return {
        name: hash_file(path, "sha256")
        for name in PINNED_FILES
        if (path := workspace / name).is_file()
    }
