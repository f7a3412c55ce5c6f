"""Configuration models and loader for the release pipeline.

The configuration lives in a TOML file (``.github/release-pipeline.toml`` by
default) with a ``[common]`` table, optional ``[targets.<key>]`` tables and a
``[channels.<channel>]`` table per channel. Every key is optional except the
project name, which falls back to ``[package].name`` in ``Cargo.toml``.

Usage
-----
Load the configuration for the current checkout::

    from pathlib import Path
    from release_pipeline.config import load_config

    config = load_config(Path(".github/release-pipeline.toml"), Path("."))
    print(config.collection_dir())
"""

from __future__ import annotations

import dataclasses
import typing as typ
from pathlib import Path

import tomllib

from .errors import ConfigError
from .matrix import DEFAULT_MATRIX, DEFAULT_TARGETS, Channel, Host, Target, TargetMatrix
from .packager import ArchiveMode

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "CargoPackage",
    "ChannelConfig",
    "PipelineConfig",
    "load_config",
    "read_cargo_package",
]

DEFAULT_CONFIG_PATH = Path(".github") / "release-pipeline.toml"


@dataclasses.dataclass(frozen=True, slots=True)
class CargoPackage:
    """Fields read from the ``[package]`` table of ``Cargo.toml``."""

    name: str
    version: str


@dataclasses.dataclass(frozen=True, slots=True)
class ChannelConfig:
    """Per-channel behaviour.

    Attributes
    ----------
    channel : Channel
        Channel the settings apply to.
    archive : ArchiveMode
        ``NATIVE`` packs zip/tar.gz by host; ``ZSTD`` compresses every binary
        as a single ``.zst`` file.
    publish_crate : bool
        Whether the registry publish runs alongside the build.
    """

    channel: Channel
    archive: ArchiveMode
    publish_crate: bool


DEFAULT_CHANNELS = {
    Channel.STAGING: ChannelConfig(Channel.STAGING, ArchiveMode.NATIVE, False),
    Channel.RELEASE: ChannelConfig(Channel.RELEASE, ArchiveMode.ZSTD, True),
}


@dataclasses.dataclass(slots=True)
class PipelineConfig:
    """Concrete configuration produced by :func:`load_config`.

    Attributes
    ----------
    workspace : Path
        Root of the Rust project checkout.
    project_name : str
        Name used as the archive prefix.
    bin_name : str
        Executable produced by ``cargo build``.
    matrix : TargetMatrix
        Targets per channel.
    channels : dict[Channel, ChannelConfig]
        Channel behaviour.
    profile : str
        Cargo build profile.
    toolchain : str | None
        Pinned toolchain passed as ``+toolchain``; ``None`` leaves the choice
        to the repository's ``rust-toolchain.toml``.
    dist_dir : str
        Directory beneath :attr:`workspace` holding branch workspaces and the
        collected artefacts.
    branch_timeout : float | None
        Wall-clock budget in seconds for each external command of a branch.
    max_workers : int | None
        Upper bound on concurrently running branches.
    staging_label : str
        Release tag used by staging runs.
    discussion_category : str
        Discussion category announced with published releases.
    upload_attempts : int
        Attempts per upload before a transport failure is fatal.
    """

    workspace: Path
    project_name: str
    bin_name: str
    matrix: TargetMatrix = DEFAULT_MATRIX
    channels: dict[Channel, ChannelConfig] = dataclasses.field(
        default_factory=lambda: dict(DEFAULT_CHANNELS)
    )
    profile: str = "ci-release"
    toolchain: str | None = None
    dist_dir: str = "dist"
    branch_timeout: float | None = 3600.0
    max_workers: int | None = None
    staging_label: str = "staging"
    discussion_category: str = "Announcements"
    upload_attempts: int = 3

    def dist_path(self) -> Path:
        """Return the absolute distribution directory."""
        return self.workspace / self.dist_dir

    def work_dir(self) -> Path:
        """Return the directory holding one private workspace per branch."""
        return self.dist_path() / "work"

    def collection_dir(self) -> Path:
        """Return the directory the collector fills with archives."""
        return self.dist_path() / "artifacts"

    def channel(self, channel: Channel) -> ChannelConfig:
        """Return the settings for ``channel``."""
        return self.channels.get(channel, DEFAULT_CHANNELS[channel])


def read_cargo_package(workspace: Path) -> CargoPackage:
    """Return the package name and version declared in ``Cargo.toml``.

    Raises
    ------
    ConfigError
        If the manifest is absent or lacks ``[package].name``.
    """
    manifest = workspace / "Cargo.toml"
    if not manifest.is_file():
        message = f"Cargo manifest not found at {manifest}"
        raise ConfigError(message)
    data = _load_toml(manifest)
    package = data.get("package", {})
    name = package.get("name")
    if not isinstance(name, str) or not name:
        message = f"Missing [package].name in {manifest}"
        raise ConfigError(message)
    version = package.get("version", "")
    return CargoPackage(name=name, version=str(version))


def load_config(config_file: Path | None, workspace: Path) -> PipelineConfig:
    """Load the pipeline configuration for ``workspace``.

    Parameters
    ----------
    config_file : Path | None
        TOML configuration. ``None``, or the default path when it does not
        exist, selects the built-in defaults.
    workspace : Path
        Root of the Rust project checkout.

    Returns
    -------
    PipelineConfig
        Fully realised configuration.

    Raises
    ------
    FileNotFoundError
        Raised when an explicitly named ``config_file`` is absent.
    ConfigError
        Raised when keys are missing or hold invalid values.
    """
    data: dict[str, typ.Any] = {}
    if config_file is not None:
        path = config_file if config_file.is_absolute() else workspace / config_file
        if path.is_file():
            data = _load_toml(path)
        elif config_file != DEFAULT_CONFIG_PATH:
            message = f"Configuration file not found at {path}"
            raise FileNotFoundError(message)
        source = path
    else:
        source = workspace / DEFAULT_CONFIG_PATH

    common = _table(data, "common", source)
    project_name = common.get("project_name") or read_cargo_package(workspace).name
    targets = _make_targets(_table(data, "targets", source), source)
    channel_tables = _table(data, "channels", source)
    matrix = _make_matrix(channel_tables, targets, source)
    channels = _make_channels(channel_tables, source)

    return PipelineConfig(
        workspace=workspace,
        project_name=project_name,
        bin_name=common.get("bin_name", project_name),
        matrix=matrix,
        channels=channels,
        profile=common.get("profile", "ci-release"),
        toolchain=common.get("toolchain") or None,
        dist_dir=common.get("dist_dir", "dist"),
        branch_timeout=_positive_number(
            common.get("branch_timeout", 3600), "branch_timeout", source
        ),
        max_workers=common.get("max_workers"),
        staging_label=common.get("staging_label", "staging"),
        discussion_category=common.get("discussion_category", "Announcements"),
        upload_attempts=int(common.get("upload_attempts", 3)),
    )


def _load_toml(path: Path) -> dict[str, typ.Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        message = f"Invalid TOML in {path}: {exc}"
        raise ConfigError(message) from exc


def _table(data: dict[str, typ.Any], key: str, source: Path) -> dict[str, typ.Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        message = f"[{key}] must be a table in {source}"
        raise ConfigError(message)
    return value


def _positive_number(value: object, label: str, source: Path) -> float | None:
    if value in (0, None):
        return None
    if not isinstance(value, (int, float)) or value < 0:
        message = f"{label} must be a positive number in {source}"
        raise ConfigError(message)
    return float(value)


def _require_keys(
    section: dict[str, typ.Any], keys: set[str], label: str, source: Path
) -> None:
    """Ensure ``section`` defines ``keys``.

    Examples
    --------
    >>> _require_keys(  # doctest: +SKIP
    ...     {'host': 'linux'},
    ...     {'host'},
    ...     'targets.linux',
    ...     Path('cfg'),
    ... )
    """
    if missing := sorted(key for key in keys if key not in section):
        joined = ", ".join(missing)
        message = (
            "Missing required key(s) "
            f"{joined} in [{label}] section of {source}"
        )
        raise ConfigError(message)


def _make_targets(tables: dict[str, typ.Any], source: Path) -> dict[str, Target]:
    targets = dict(DEFAULT_TARGETS)
    for key, entry in tables.items():
        if not isinstance(entry, dict):
            message = f"[targets.{key}] must be a table in {source}"
            raise ConfigError(message)
        _require_keys(entry, {"host"}, f"targets.{key}", source)
        try:
            host = Host(str(entry["host"]).lower())
        except ValueError:
            message = f"Unknown host {entry['host']!r} in [targets.{key}] of {source}"
            raise ConfigError(message) from None
        try:
            targets[key] = Target(
                name=str(entry.get("name", key)),
                host=host,
                runner=entry.get("runner", ""),
                bin_ext=entry.get("bin_ext"),
            )
        except ConfigError as exc:
            message = f"{exc} in [targets.{key}] of {source}"
            raise ConfigError(message) from None
    return targets


def _make_matrix(
    tables: dict[str, typ.Any], targets: dict[str, Target], source: Path
) -> TargetMatrix:
    if not tables:
        return DEFAULT_MATRIX
    channels: dict[Channel, list[Target]] = {}
    for key, entry in tables.items():
        channel = _parse_channel(key, source)
        names = entry.get("targets") if isinstance(entry, dict) else None
        if names is None:
            channels[channel] = list(DEFAULT_MATRIX.targets_for(channel))
            continue
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            message = f"[channels.{key}].targets must be a list of strings in {source}"
            raise ConfigError(message)
        resolved: list[Target] = []
        for name in names:
            if name not in targets:
                message = f"Unknown target '{name}' in [channels.{key}] of {source}"
                raise ConfigError(message)
            resolved.append(targets[name])
        channels[channel] = resolved
    for channel in Channel:
        channels.setdefault(channel, list(DEFAULT_MATRIX.targets_for(channel)))
    return TargetMatrix(channels)


def _make_channels(
    tables: dict[str, typ.Any], source: Path
) -> dict[Channel, ChannelConfig]:
    channels = dict(DEFAULT_CHANNELS)
    for key, entry in tables.items():
        channel = _parse_channel(key, source)
        if not isinstance(entry, dict):
            message = f"[channels.{key}] must be a table in {source}"
            raise ConfigError(message)
        default = DEFAULT_CHANNELS[channel]
        archive_name = entry.get("archive", default.archive.value)
        try:
            archive = ArchiveMode(archive_name)
        except ValueError:
            message = f"Unknown archive mode {archive_name!r} in [channels.{key}]"
            raise ConfigError(message) from None
        channels[channel] = ChannelConfig(
            channel=channel,
            archive=archive,
            publish_crate=bool(entry.get("publish_crate", default.publish_crate)),
        )
    return channels


def _parse_channel(key: str, source: Path) -> Channel:
    try:
        return Channel.parse(key)
    except ValueError as exc:
        message = f"{exc} (in {source})"
        raise ConfigError(message) from exc
