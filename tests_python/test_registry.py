"""Tests for publishing the crate to crates.io."""

from __future__ import annotations

from pathlib import Path

import pytest
from pipeline_test_helpers import FakeRunner

from release_pipeline.errors import RegistryConflictError, RegistryError
from release_pipeline.matrix import Channel
from release_pipeline.process import CommandResult
from release_pipeline.registry import TOKEN_ENV, RegistryPublisher, is_version_conflict

CONFLICT_OUTPUT = (
    "error: failed to publish to registry at https://crates.io\n\n"
    "Caused by:\n  the remote server responded with an error: "
    "crate version `1.2.3` is already uploaded"
)


def test_publish_passes_token_through_environment(
    workspace: Path, runner: FakeRunner
) -> None:
    """The token is handed to cargo via ``CARGO_REGISTRY_TOKEN``."""
    publisher = RegistryPublisher(workspace, runner, toolchain="1.89.0", token="secret")

    result = publisher.publish(Channel.RELEASE)

    assert result.argv == ("cargo", "+1.89.0", "publish", "--locked")
    (call,) = runner.calls
    assert call["env"] == {TOKEN_ENV: "secret"}
    assert call["cwd"] == workspace


def test_token_is_read_from_environment(workspace: Path, runner: FakeRunner) -> None:
    """Without an explicit token the environment provides it."""
    RegistryPublisher(workspace, runner).publish(
        Channel.RELEASE, environ={TOKEN_ENV: "from-env"}
    )
    assert runner.calls[0]["env"] == {TOKEN_ENV: "from-env"}


def test_missing_token_is_an_error(workspace: Path, runner: FakeRunner) -> None:
    """Real publishes require a token."""
    with pytest.raises(RegistryError, match=f"{TOKEN_ENV} is not set"):
        RegistryPublisher(workspace, runner).publish(Channel.RELEASE, environ={})
    assert runner.calls == []


def test_dry_run_needs_no_token(workspace: Path, runner: FakeRunner) -> None:
    """``--dry-run`` packages the crate without credentials."""
    result = RegistryPublisher(workspace, runner).publish(
        Channel.RELEASE, dry_run=True, environ={}
    )
    assert result.dry_run
    assert result.argv[-1] == "--dry-run"


def test_staging_never_publishes(workspace: Path, runner: FakeRunner) -> None:
    """The registry is only touched by release runs."""
    with pytest.raises(RegistryError, match="only runs on the release channel"):
        RegistryPublisher(workspace, runner, token="t").publish(Channel.STAGING)
    assert runner.calls == []


def test_existing_version_is_a_conflict(workspace: Path) -> None:
    """An already uploaded version surfaces cargo's message verbatim."""
    runner = FakeRunner(
        publish_result=CommandResult(("cargo",), 101, stderr=CONFLICT_OUTPUT)
    )

    with pytest.raises(RegistryConflictError) as excinfo:
        RegistryPublisher(workspace, runner, token="t").publish(Channel.RELEASE)

    assert str(excinfo.value) == CONFLICT_OUTPUT
    assert len(runner.calls) == 1, "conflicts must not be retried"


def test_other_failures_are_registry_errors(workspace: Path) -> None:
    """Non-conflict failures keep the tail of cargo's output."""
    runner = FakeRunner(
        publish_result=CommandResult(("cargo",), 101, stderr="error: 503 Service")
    )
    with pytest.raises(RegistryError, match="503 Service") as excinfo:
        RegistryPublisher(workspace, runner, token="t").publish(Channel.RELEASE)
    assert not isinstance(excinfo.value, RegistryConflictError)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        (CONFLICT_OUTPUT, True),
        ("crate demo@1.2.3 already exists on crates.io index", True),
        ("error: 401 Unauthorized", False),
    ],
)
def test_is_version_conflict(output: str, expected: bool) -> None:
    """Conflicts are recognised from cargo's wording."""
    assert is_version_conflict(output) is expected
