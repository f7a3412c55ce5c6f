"""Tests for loading the pipeline configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from release_pipeline.config import (
    DEFAULT_CONFIG_PATH,
    load_config,
    read_cargo_package,
)
from release_pipeline.environment import workspace_root
from release_pipeline.errors import ConfigError
from release_pipeline.matrix import DEFAULT_MATRIX, Channel, Host
from release_pipeline.packager import ArchiveMode


def _write_config(workspace: Path, text: str) -> Path:
    path = workspace / DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_when_config_file_is_absent(workspace: Path) -> None:
    """The built-in matrix and the crate name are used without a file."""
    config = load_config(DEFAULT_CONFIG_PATH, workspace)

    assert config.project_name == "demo"
    assert config.bin_name == "demo"
    assert config.matrix is DEFAULT_MATRIX, "Expected the built-in matrix"
    assert config.profile == "ci-release"
    assert config.channel(Channel.STAGING).archive is ArchiveMode.NATIVE
    assert config.channel(Channel.RELEASE).archive is ArchiveMode.ZSTD
    assert config.channel(Channel.RELEASE).publish_crate is True
    assert config.collection_dir() == workspace / "dist" / "artifacts"


def test_missing_explicit_config_is_an_error(workspace: Path) -> None:
    """A named configuration file that does not exist is not ignored."""
    with pytest.raises(FileNotFoundError, match="Configuration file not found"):
        load_config(Path("custom.toml"), workspace)


def test_loads_common_targets_and_channels(workspace: Path) -> None:
    """Configured values override the defaults."""
    _write_config(
        workspace,
        """
[common]
project_name = "tool"
bin_name = "toolbin"
toolchain = "1.89.0"
branch_timeout = 900
max_workers = 2
upload_attempts = 5

[targets.aarch64-unknown-linux-gnu]
host = "linux"
runner = "ubuntu-24.04-arm"

[channels.staging]
targets = ["x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu"]
archive = "zstd"

[channels.release]
publish_crate = false
""",
    )

    config = load_config(DEFAULT_CONFIG_PATH, workspace)

    assert config.project_name == "tool"
    assert config.bin_name == "toolbin"
    assert config.toolchain == "1.89.0"
    assert config.branch_timeout == 900.0
    assert config.max_workers == 2
    assert config.upload_attempts == 5
    staging = config.matrix.targets_for(Channel.STAGING)
    assert [t.name for t in staging] == [
        "x86_64-unknown-linux-gnu",
        "aarch64-unknown-linux-gnu",
    ]
    assert staging[1].host is Host.LINUX
    assert staging[1].runner == "ubuntu-24.04-arm"
    assert config.matrix.targets_for(Channel.RELEASE) == DEFAULT_MATRIX.targets_for(
        Channel.RELEASE
    )
    assert config.channel(Channel.STAGING).archive is ArchiveMode.ZSTD
    assert config.channel(Channel.RELEASE).publish_crate is False


def test_zero_branch_timeout_disables_the_budget(workspace: Path) -> None:
    """``branch_timeout = 0`` means no wall-clock limit."""
    _write_config(workspace, "[common]\nbranch_timeout = 0\n")
    config = load_config(DEFAULT_CONFIG_PATH, workspace)
    assert config.branch_timeout is None, "zero should disable the branch budget"


@pytest.mark.parametrize(
    ("text", "match"),
    [
        ("[channels.nightly]\n", "Unknown channel"),
        ('[channels.staging]\ntargets = ["sparc-sun-solaris"]\n', "Unknown target"),
        ('[channels.release]\narchive = "rar"\n', "Unknown archive mode"),
        ('[targets.foo]\nrunner = "x"\n', "Missing required key"),
        ('[targets.foo]\nhost = "beos"\n', "Unknown host"),
        ('[targets."../src"]\nhost = "linux"\n', "Invalid target name"),
        ("[common]\nbranch_timeout = -1\n", "positive number"),
        ("[common\n", "Invalid TOML"),
    ],
)
def test_invalid_configuration_is_rejected(
    workspace: Path, text: str, match: str
) -> None:
    """Malformed configuration raises :class:`ConfigError`."""
    _write_config(workspace, text)
    with pytest.raises(ConfigError, match=match):
        load_config(DEFAULT_CONFIG_PATH, workspace)


def test_read_cargo_package(workspace: Path) -> None:
    """The crate name and version come from ``Cargo.toml``."""
    package = read_cargo_package(workspace)
    assert (package.name, package.version) == ("demo", "1.2.3")


def test_read_cargo_package_requires_manifest(tmp_path: Path) -> None:
    """A workspace without ``Cargo.toml`` cannot provide a project name."""
    with pytest.raises(ConfigError, match="Cargo manifest not found"):
        read_cargo_package(tmp_path)


def test_workspace_root_prefers_github_workspace(tmp_path: Path) -> None:
    """Actions runs use ``GITHUB_WORKSPACE``; local runs the working directory."""
    assert workspace_root({"GITHUB_WORKSPACE": str(tmp_path)}) == tmp_path.resolve()
    assert workspace_root({}) == Path(".").resolve()
