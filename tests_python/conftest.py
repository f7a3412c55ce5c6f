"""Shared fixtures for the release pipeline test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
from pipeline_test_helpers import FakeReleaseClient, FakeRunner, write_cargo_project

from release_pipeline.config import PipelineConfig
from release_pipeline.publisher import Publisher


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create a locked Cargo project and set ``GITHUB_WORKSPACE`` to it."""
    root = write_cargo_project(tmp_path / "workspace")
    monkeypatch.setenv("GITHUB_WORKSPACE", str(root))
    monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
    monkeypatch.delenv("GITHUB_EVENT_NAME", raising=False)
    monkeypatch.delenv("GITHUB_REF", raising=False)
    monkeypatch.delenv("GITHUB_REF_NAME", raising=False)
    return root


@pytest.fixture
def config(workspace: Path) -> PipelineConfig:
    """Return the default configuration for the ``demo`` workspace."""
    return PipelineConfig(workspace=workspace, project_name="demo", bin_name="demo")


@pytest.fixture
def runner() -> FakeRunner:
    """Provide a toolchain stand-in that builds every target."""
    return FakeRunner()


@pytest.fixture
def release_client() -> FakeReleaseClient:
    """Provide an empty in-memory release host."""
    return FakeReleaseClient()


@pytest.fixture
def publisher(release_client: FakeReleaseClient) -> Publisher:
    """Provide a publisher that never sleeps between retries."""
    return Publisher(release_client, sleep=lambda _: None)
