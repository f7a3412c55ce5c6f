"""Gather per-target archives into a single collection directory."""

from __future__ import annotations

import dataclasses
import enum
import shutil
import typing as typ
from pathlib import Path

from .errors import CollectionError
from .fs_utils import initialize_dir

if typ.TYPE_CHECKING:
    from .matrix import Target

__all__ = [
    "BranchFailure",
    "BranchOutcome",
    "BranchStage",
    "BuildArtifact",
    "CollectionResult",
    "collect_artifacts",
]


class BranchStage(enum.Enum):
    """Step of a branch that produced a failure."""

    BUILD = "build"
    PACKAGE = "package"


@dataclasses.dataclass(frozen=True, slots=True)
class BuildArtifact:
    """Executable and archive produced by one successful branch."""

    target: Target
    binary_path: Path
    archive_path: Path


@dataclasses.dataclass(frozen=True, slots=True)
class BranchFailure:
    """Why a branch did not produce an archive."""

    target: Target
    stage: BranchStage
    reason: str

    def describe(self) -> str:
        """Return a one-line summary such as ``x86_64-pc-windows-msvc (build): …``."""
        first_line = self.reason.strip().splitlines()[0] if self.reason.strip() else ""
        return f"{self.target.name} ({self.stage.value}): {first_line}"


@dataclasses.dataclass(frozen=True, slots=True)
class BranchOutcome:
    """Terminal status reported by a branch: an artefact or a failure."""

    target: Target
    artifact: BuildArtifact | None = None
    failure: BranchFailure | None = None

    def __post_init__(self) -> None:
        if (self.artifact is None) == (self.failure is None):
            message = "BranchOutcome requires exactly one of artifact or failure"
            raise ValueError(message)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the branch produced an archive."""
        return self.artifact is not None

    @classmethod
    def succeeded(cls, artifact: BuildArtifact) -> BranchOutcome:
        """Return a successful outcome for ``artifact``."""
        return cls(target=artifact.target, artifact=artifact)

    @classmethod
    def failed(cls, target: Target, stage: BranchStage, reason: str) -> BranchOutcome:
        """Return a failed outcome for ``target``."""
        return cls(target=target, failure=BranchFailure(target, stage, reason))


@dataclasses.dataclass(frozen=True, slots=True)
class CollectionResult:
    """Outcome of :func:`collect_artifacts`."""

    directory: Path
    files: tuple[Path, ...]
    failures: tuple[BranchFailure, ...]

    @property
    def ok(self) -> bool:
        """Return ``True`` when no branch failed."""
        return not self.failures


def _register_archive(name: str, path: Path, seen: dict[str, Path]) -> None:
    if previous := seen.get(name):
        message = (
            "Archive name collision: "
            f"{name} would collect both {previous} and {path}"
        )
        raise CollectionError(message)
    seen[name] = path


def _require_archive(artifact: BuildArtifact) -> None:
    path = artifact.archive_path
    if not path.is_file():
        message = (
            f"Branch {artifact.target.name} reported success but its archive "
            f"{path} is missing"
        )
        raise CollectionError(message)
    if path.stat().st_size <= 0:
        message = f"Archive {path} for {artifact.target.name} is empty"
        raise CollectionError(message)


def collect_artifacts(
    outcomes: typ.Iterable[BranchOutcome], destination: Path
) -> CollectionResult:
    """Copy every successful branch's archive into ``destination``.

    ``destination`` is recreated empty first, so it ends up holding exactly
    the archives of successful branches. Failed branches are carried through
    in :attr:`CollectionResult.failures`.

    Parameters
    ----------
    outcomes : Iterable[BranchOutcome]
        Terminal status of every branch of the run.
    destination : Path
        Collection directory.

    Returns
    -------
    CollectionResult
        Collected archives sorted by name, plus the failures.

    Raises
    ------
    CollectionError
        If a successful branch's archive is missing or empty, or two branches
        produced the same archive name. ``destination`` is removed so no
        partial set is left behind.
    """
    outcomes = list(outcomes)
    artifacts = sorted(
        (outcome.artifact for outcome in outcomes if outcome.artifact is not None),
        key=lambda artifact: artifact.archive_path.name,
    )
    failures = tuple(
        outcome.failure for outcome in outcomes if outcome.failure is not None
    )

    initialize_dir(destination)
    seen: dict[str, Path] = {}
    collected: list[Path] = []
    try:
        for artifact in artifacts:
            _require_archive(artifact)
            name = artifact.archive_path.name
            _register_archive(name, artifact.archive_path, seen)
            partial = destination / f".{name}.partial"
            shutil.copy2(artifact.archive_path, partial)
            collected.append(partial.replace(destination / name))
    except (CollectionError, OSError) as exc:
        shutil.rmtree(destination, ignore_errors=True)
        if isinstance(exc, CollectionError):
            raise
        message = f"Failed to collect artefacts into {destination}: {exc}"
        raise CollectionError(message) from exc

    print(f"Collected {len(collected)} archive(s) into '{destination}'.")
    return CollectionResult(destination, tuple(collected), failures)
