"""Behavioural tests for the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pipeline_test_helpers import FakeRunner, decode_output_file

from release_pipeline import cli, pipeline
from release_pipeline.manifest import write_manifests
from release_pipeline.matrix import DEFAULT_MATRIX, Channel


@pytest.fixture
def github_output(
    workspace: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Point ``GITHUB_OUTPUT`` at a temporary file inside the test workspace."""
    path = tmp_path / "github_output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(path))
    return path


@pytest.fixture
def fake_toolchain(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    """Replace the real toolchain runner used by pipeline runs."""
    runner = FakeRunner()
    monkeypatch.setattr(pipeline, "PlumbumRunner", lambda: runner)
    return runner


def test_matrix_prints_workflow_json(
    workspace: Path,
    github_output: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """``matrix`` prints and exports the channel's build matrix."""
    assert cli.main(["matrix", "--channel", "release"]) == 0

    printed = json.loads(capsys.readouterr().out)
    names = [entry["name"] for entry in printed["target"]]
    assert names[0] == "x86_64-unknown-linux-gnu"
    assert json.loads(decode_output_file(github_output)["matrix"]) == printed


def test_matrix_defaults_to_event_channel(
    workspace: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Without ``--channel`` a manual dispatch selects staging."""
    monkeypatch.setenv("GITHUB_EVENT_NAME", "workflow_dispatch")
    assert cli.main(["matrix"]) == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["target"][0]["name"] == "aarch64-apple-darwin"


def test_unsupported_event_fails(
    workspace: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Runs started by other events exit non-zero with an annotation."""
    monkeypatch.setenv("GITHUB_EVENT_NAME", "pull_request")
    assert cli.main(["matrix"]) == 1
    assert "::error title=Matrix Failure::Unsupported event" in capsys.readouterr().err


def test_run_without_publishing(
    workspace: Path,
    github_output: Path,
    fake_toolchain: FakeRunner,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """``run --no-publish`` builds, collects and hashes every target."""
    exit_code = cli.main(["run", "--channel", "staging", "--no-publish"])

    assert exit_code == 0, "Expected the command to succeed"
    assert "Status: success" in capsys.readouterr().out
    outputs = decode_output_file(github_output)
    assert outputs["status"] == "success"
    assert len(outputs["staged_files"].splitlines()) == 3
    assert (workspace / "dist" / "artifacts" / "SHA256").is_file()


def test_run_reports_failed_targets(
    workspace: Path,
    fake_toolchain: FakeRunner,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """A failed branch makes the run exit non-zero and names the target."""
    fake_toolchain.fail_targets.add("x86_64-pc-windows-msvc")

    exit_code = cli.main(["run", "--channel", "staging", "--no-publish"])

    assert exit_code == 1, "Expected the command to fail"
    captured = capsys.readouterr()
    assert "x86_64-pc-windows-msvc (build)" in captured.out
    assert "failed targets: x86_64-pc-windows-msvc" in captured.err


def test_hash_and_verify(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """``hash`` writes manifests that ``verify`` accepts until tampering."""
    directory = tmp_path / "artifacts"
    directory.mkdir()
    (directory / "demo.zip").write_bytes(b"zip")

    assert cli.main(["hash", str(directory)]) == 0
    assert "demo.zip" in capsys.readouterr().out
    assert cli.main(["verify", str(directory)]) == 0

    (directory / "demo.zip").write_bytes(b"changed")
    assert cli.main(["verify", str(directory), "--algorithm", "md5"]) == 1
    assert "::error title=Checksum Mismatch::demo.zip" in capsys.readouterr().err


def test_publish_dry_run(
    workspace: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """``publish --dry-run`` plans the gh calls for a collected directory."""
    monkeypatch.setenv("GITHUB_EVENT_NAME", "push")
    monkeypatch.setenv("GITHUB_REF", "refs/tags/v1.2.3")
    directory = tmp_path / "artifacts"
    directory.mkdir()
    for target in DEFAULT_MATRIX.targets_for(Channel.RELEASE):
        (directory / f"demo-{target.name}.zst").write_bytes(b"zst")
    write_manifests(directory)

    exit_code = cli.main(["publish", "--directory", str(directory), "--dry-run"])

    assert exit_code == 0, "Expected the command to succeed"
    out = capsys.readouterr().out
    assert "[dry-run] gh release create v1.2.3" in out
    assert "Release v1.2.3 is published with 5 file(s)" in out


def test_publish_with_missing_target_leaves_draft(
    workspace: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """A release missing matrix archives is attached but not published."""
    monkeypatch.setenv("GITHUB_EVENT_NAME", "push")
    monkeypatch.setenv("GITHUB_REF", "refs/tags/v1.2.3")
    directory = tmp_path / "artifacts"
    directory.mkdir()
    (directory / "demo-x86_64-unknown-linux-gnu.zst").write_bytes(b"zst")

    exit_code = cli.main(["publish", "--directory", str(directory), "--dry-run"])

    assert exit_code == 1, "Expected the command to fail"
    captured = capsys.readouterr()
    assert "Release v1.2.3 is draft with 3 file(s)" in captured.out
    assert "gh release edit" not in captured.out, "a partial release must stay a draft"
    assert "demo-x86_64-pc-windows-msvc.zst" in captured.err


def test_publish_crate_refuses_staging(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Crate publishing outside a tag push is rejected."""
    assert cli.main(["publish-crate", "--dry-run"]) == 1
    assert "only runs on the release channel" in capsys.readouterr().err
