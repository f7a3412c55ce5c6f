"""Tests for collecting branch archives."""

from __future__ import annotations

from pathlib import Path

import pytest

from release_pipeline.collector import (
    BranchOutcome,
    BranchStage,
    BuildArtifact,
    collect_artifacts,
)
from release_pipeline.errors import CollectionError
from release_pipeline.matrix import DEFAULT_TARGETS

LINUX = DEFAULT_TARGETS["x86_64-unknown-linux-gnu"]
MACOS = DEFAULT_TARGETS["aarch64-apple-darwin"]
WINDOWS = DEFAULT_TARGETS["x86_64-pc-windows-msvc"]


def _success(tmp_path: Path, target, name: str, data: bytes = b"data") -> BranchOutcome:
    branch = tmp_path / "work" / target.name
    branch.mkdir(parents=True, exist_ok=True)
    archive = branch / name
    archive.write_bytes(data)
    return BranchOutcome.succeeded(BuildArtifact(target, branch / "demo", archive))


def test_collects_successful_archives_sorted_by_name(tmp_path: Path) -> None:
    """Archives are copied in name order and failures are carried through."""
    outcomes = [
        _success(tmp_path, WINDOWS, "demo-x86_64-pc-windows-msvc.zip"),
        BranchOutcome.failed(LINUX, BranchStage.BUILD, "linker failed"),
        _success(tmp_path, MACOS, "demo-aarch64-apple-darwin.zip"),
    ]

    result = collect_artifacts(outcomes, tmp_path / "artifacts")

    assert [p.name for p in result.files] == [
        "demo-aarch64-apple-darwin.zip",
        "demo-x86_64-pc-windows-msvc.zip",
    ]
    assert sorted(p.name for p in result.directory.iterdir()) == [
        p.name for p in result.files
    ]
    assert not result.ok, "a failed branch makes the collection incomplete"
    assert [f.target for f in result.failures] == [LINUX]


def test_stale_files_are_removed(tmp_path: Path) -> None:
    """The collection directory only holds this run's archives."""
    destination = tmp_path / "artifacts"
    destination.mkdir()
    (destination / "old.zip").write_bytes(b"stale")

    result = collect_artifacts(
        [_success(tmp_path, MACOS, "demo-aarch64-apple-darwin.zip")], destination
    )

    assert sorted(p.name for p in destination.iterdir()) == [
        "demo-aarch64-apple-darwin.zip"
    ]
    assert result.ok, "Expected every branch to be collected"


def test_all_branches_failed_yields_empty_collection(tmp_path: Path) -> None:
    """No successful branch still produces a (empty) collection."""
    outcomes = [BranchOutcome.failed(MACOS, BranchStage.PACKAGE, "disk full")]
    result = collect_artifacts(outcomes, tmp_path / "artifacts")
    assert result.files == (), "failed branches contribute no files"
    assert result.failures[0].describe() == "aarch64-apple-darwin (package): disk full"


def test_missing_archive_is_fatal(tmp_path: Path) -> None:
    """A success without its archive aborts collection and cleans up."""
    outcome = _success(tmp_path, LINUX, "demo-x86_64-unknown-linux-gnu.tar.gz")
    assert outcome.artifact is not None
    outcome.artifact.archive_path.unlink()
    destination = tmp_path / "artifacts"

    with pytest.raises(CollectionError, match="is missing"):
        collect_artifacts([outcome], destination)
    assert not destination.exists(), "Expected no collection directory after the error"


def test_empty_archive_is_fatal(tmp_path: Path) -> None:
    """Zero-length archives are never collected."""
    outcome = _success(tmp_path, LINUX, "demo-x86_64-unknown-linux-gnu.tar.gz", b"")
    with pytest.raises(CollectionError, match="is empty"):
        collect_artifacts([outcome], tmp_path / "artifacts")


def test_name_collision_is_fatal(tmp_path: Path) -> None:
    """Two branches may not produce the same archive name."""
    outcomes = [
        _success(tmp_path, LINUX, "demo.zip"),
        _success(tmp_path, MACOS, "demo.zip"),
    ]
    with pytest.raises(CollectionError, match="Archive name collision"):
        collect_artifacts(outcomes, tmp_path / "artifacts")


def test_outcome_requires_exactly_one_result() -> None:
    """An outcome is either an artefact or a failure."""
    with pytest.raises(ValueError, match="exactly one"):
        BranchOutcome(LINUX)
