"""Tests for the SHA256 and MD5 digest manifests."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from release_pipeline.errors import PipelineError
from release_pipeline.manifest import (
    hash_file,
    parse_manifest,
    verify_manifest,
    write_manifests,
)


@pytest.fixture
def artifacts(tmp_path: Path) -> Path:
    """Provide a collection directory holding two archives."""
    directory = tmp_path / "artifacts"
    directory.mkdir()
    (directory / "demo-x86_64-pc-windows-msvc.zip").write_bytes(b"windows")
    (directory / "demo-aarch64-apple-darwin.zip").write_bytes(b"macos")
    return directory


def test_manifests_list_every_archive_sorted(artifacts: Path) -> None:
    """Each manifest has one ``digest  name`` line per archive, sorted."""
    result = write_manifests(artifacts)

    sha_lines = result.paths["sha256"].read_text(encoding="utf-8").splitlines()
    assert sha_lines == [
        f"{hashlib.sha256(b'macos').hexdigest()}  demo-aarch64-apple-darwin.zip",
        f"{hashlib.sha256(b'windows').hexdigest()}  demo-x86_64-pc-windows-msvc.zip",
    ]
    md5_lines = result.paths["md5"].read_text(encoding="utf-8").splitlines()
    assert [line.split("  ")[1] for line in md5_lines] == [
        "demo-aarch64-apple-darwin.zip",
        "demo-x86_64-pc-windows-msvc.zip",
    ]
    assert result.paths["sha256"].name == "SHA256"
    assert result.paths["md5"].name == "MD5"
    assert len(result.for_algorithm("md5")) == 2


def test_manifests_are_deterministic(artifacts: Path) -> None:
    """Rewriting the manifests does not hash the manifests themselves."""
    first = write_manifests(artifacts).paths["sha256"].read_bytes()
    second = write_manifests(artifacts).paths["sha256"].read_bytes()
    assert first == second, "manifests must be byte-identical across runs"


def test_manifests_use_unix_line_endings(artifacts: Path) -> None:
    """``sha256sum -c`` expects LF-terminated lines on every host."""
    for path in write_manifests(artifacts).paths.values():
        data = path.read_bytes()
        assert b"\r" not in data, f"{path.name} contains carriage returns"
        assert data.endswith(b"\n"), f"{path.name} lacks a trailing newline"


def test_missing_directory_is_an_error(tmp_path: Path) -> None:
    """Hashing requires the collection directory to exist."""
    with pytest.raises(PipelineError, match="does not exist"):
        write_manifests(tmp_path / "absent")


def test_hash_file_matches_hashlib(tmp_path: Path) -> None:
    """Streaming digests equal a one-shot digest."""
    path = tmp_path / "blob"
    data = b"x" * (3 * 1024 * 1024 + 7)
    path.write_bytes(data)
    assert hash_file(path, "sha256") == hashlib.sha256(data).hexdigest()


def test_parse_manifest_accepts_binary_mode_lines() -> None:
    """``sha256sum -b`` style ``*name`` entries are understood."""
    assert parse_manifest("ABC *demo.zip\n\ndef  demo.tar.gz\n") == [
        ("abc", "demo.zip"),
        ("def", "demo.tar.gz"),
    ]
    with pytest.raises(PipelineError, match="Malformed manifest line 1"):
        parse_manifest("no-separator\n")


def test_verify_reports_mismatches_and_missing_files(artifacts: Path) -> None:
    """Verification flags tampered and removed archives."""
    write_manifests(artifacts)
    (artifacts / "demo-aarch64-apple-darwin.zip").write_bytes(b"tampered")
    (artifacts / "demo-x86_64-pc-windows-msvc.zip").unlink()

    result = verify_manifest(artifacts)

    assert not result.ok
    assert result.mismatched == ("demo-aarch64-apple-darwin.zip",)
    assert result.missing == ("demo-x86_64-pc-windows-msvc.zip",)


def test_verify_passes_for_untouched_archives(artifacts: Path) -> None:
    """A freshly written manifest verifies."""
    write_manifests(artifacts)
    result = verify_manifest(artifacts, "md5")
    assert result.ok
    assert len(result.verified) == 2
