"""Command-line entry point for the release pipeline.

Examples
--------
Stage every target locally without publishing::

    python -m release_pipeline run --channel staging --no-publish

Emit the release build matrix for a workflow ``strategy``::

    export GITHUB_OUTPUT="$(mktemp)"
    python -m release_pipeline matrix --channel release

Inside a workflow the channel and tag come from ``GITHUB_EVENT_NAME`` and
``GITHUB_REF``, so ``python -m release_pipeline run`` is enough.
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
import typing as typ
from pathlib import Path

import cyclopts

from .builder import Builder, Toolchain
from .config import DEFAULT_CONFIG_PATH, PipelineConfig, load_config
from .environment import workspace_root
from .errors import PipelineCancelled, PipelineError, RegistryConflictError
from .github_output import prepare_run_outputs, write_github_output
from .manifest import (
    MANIFEST_ALGORITHMS,
    MANIFEST_FILES,
    verify_manifest,
    write_manifests,
)
from .matrix import Channel
from .packager import Packager, archive_name, select_format
from .pipeline import RunStatus, run_branch, run_pipeline
from .process import BudgetedRunner, PlumbumRunner
from .publisher import GhReleaseClient, Publisher, is_release_tag
from .registry import RegistryPublisher
from .triggers import trigger_from_env

app = cyclopts.App(
    name="release-pipeline",
    help="Build, package and publish release artefacts for a Rust project.",
)

ConfigFile = typ.Annotated[
    Path, cyclopts.Parameter(help="Pipeline configuration (TOML).")
]


def _fail(title: str, exc: BaseException) -> int:
    print(f"::error title={title}::{exc}", file=sys.stderr)
    return 1


def _export(values: dict[str, str | list[str]]) -> None:
    if github_output := os.environ.get("GITHUB_OUTPUT"):
        write_github_output(Path(github_output), values)


def _load(config_file: Path) -> PipelineConfig:
    return load_config(config_file, workspace_root())


def _resolve_channel(
    channel: str | None, tag: str | None
) -> tuple[Channel, str | None]:
    """Return the channel and tag from the options or the workflow event."""
    if channel is None:
        trigger = trigger_from_env()
        return trigger.channel, tag or trigger.tag
    resolved = Channel.parse(channel)
    if resolved is Channel.RELEASE and tag is None:
        ref_name = os.environ.get("GITHUB_REF_NAME", "")
        tag = ref_name if is_release_tag(ref_name) else None
    return resolved, tag


def _missing_archives(
    config: PipelineConfig, channel: Channel, archives: typ.Iterable[Path]
) -> list[str]:
    """Return the archive names the channel's matrix expects but lacks."""
    mode = config.channel(channel).archive
    expected = {
        archive_name(config.project_name, target, select_format(target.host, mode))
        for target in config.matrix.targets_for(channel)
    }
    return sorted(expected - {path.name for path in archives})


def _publisher(config: PipelineConfig, *, dry_run: bool) -> Publisher:
    client = GhReleaseClient(PlumbumRunner(), config.workspace, dry_run=dry_run)
    return Publisher(
        client,
        attempts=config.upload_attempts,
        staging_label=config.staging_label,
        discussion_category=config.discussion_category,
    )


@app.command
def matrix(
    *,
    channel: str | None = None,
    config_file: ConfigFile = DEFAULT_CONFIG_PATH,
) -> int:
    """Print the build matrix for ``channel`` as workflow JSON.

    Parameters
    ----------
    channel:
        ``staging`` or ``release``; defaults to the workflow event's channel.
    config_file:
        Pipeline configuration file.
    """
    try:
        resolved, _ = _resolve_channel(channel, None)
        config = _load(config_file)
        payload = json.dumps(config.matrix.as_github_matrix(resolved))
    except (FileNotFoundError, PipelineError, ValueError) as exc:
        return _fail("Matrix Failure", exc)
    print(payload)
    _export({"matrix": payload})
    return 0


@app.command
def build(
    target: str,
    *,
    channel: str | None = None,
    config_file: ConfigFile = DEFAULT_CONFIG_PATH,
) -> int:
    """Build and package a single ``target`` (one matrix job).

    Parameters
    ----------
    target:
        Target triple from the channel's matrix.
    channel:
        ``staging`` or ``release``; selects the archive format.
    config_file:
        Pipeline configuration file.
    """
    try:
        resolved, _ = _resolve_channel(channel, None)
        config = _load(config_file)
        selected = config.matrix.target(resolved, target)
    except (FileNotFoundError, PipelineError, ValueError) as exc:
        return _fail("Build Failure", exc)

    runner = BudgetedRunner(PlumbumRunner(), config.branch_timeout)
    builder = Builder(
        config.workspace,
        config.bin_name,
        Toolchain(channel=config.toolchain, profile=config.profile),
        runner,
    )
    packager = Packager(
        config.project_name, runner, mode=config.channel(resolved).archive
    )
    outcome = run_branch(
        selected, builder, packager, config.work_dir() / selected.name
    )
    if outcome.artifact is None:
        return 1
    archive = outcome.artifact.archive_path
    print(f"Archive: {archive}")
    _export({"archive_path": archive.as_posix(), "archive_name": archive.name})
    return 0


@app.command
def run(
    *,
    channel: str | None = None,
    tag: str | None = None,
    config_file: ConfigFile = DEFAULT_CONFIG_PATH,
    publish: bool = True,
    dry_run: bool = False,
) -> int:
    """Build every target of ``channel``, then collect, hash and publish.

    Parameters
    ----------
    channel:
        ``staging`` or ``release``; defaults to the workflow event's channel.
    tag:
        Release tag (``vX.Y.Z``); defaults to the pushed tag.
    config_file:
        Pipeline configuration file.
    publish:
        Publish the release and, on the release channel, the crate.
    dry_run:
        Print the planned ``gh`` commands and run ``cargo publish --dry-run``.
    """
    try:
        resolved, resolved_tag = _resolve_channel(channel, tag)
        config = _load(config_file)
    except (FileNotFoundError, PipelineError, ValueError) as exc:
        return _fail("Release Pipeline Failure", exc)

    publisher = _publisher(config, dry_run=dry_run) if publish else None
    registry = (
        RegistryPublisher(
            config.workspace,
            PlumbumRunner(),
            toolchain=config.toolchain,
            timeout=config.branch_timeout,
        )
        if publish
        else None
    )

    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda *_: cancel.set())
    try:
        report = run_pipeline(
            config,
            resolved,
            tag=resolved_tag,
            publisher=publisher,
            registry=registry,
            registry_dry_run=dry_run,
            cancel=cancel,
        )
    except PipelineCancelled as exc:
        return _fail("Release Pipeline Cancelled", exc)
    except PipelineError as exc:
        return _fail("Release Pipeline Failure", exc)
    finally:
        signal.signal(signal.SIGTERM, previous)

    print(report.render())
    _export(prepare_run_outputs(report))
    if report.status is RunStatus.FAILED:
        failed = ", ".join(f.target.name for f in report.failures) or "none"
        print(
            f"::error title=Release Pipeline Failed::failed targets: {failed}",
            file=sys.stderr,
        )
        return 1
    return 0


@app.command(name="hash")
def hash_artifacts(directory: Path) -> int:
    """Write ``SHA256`` and ``MD5`` manifests for the files in ``directory``.

    Parameters
    ----------
    directory:
        Directory holding the collected archives.
    """
    try:
        result = write_manifests(directory)
    except PipelineError as exc:
        return _fail("Hash Failure", exc)
    for algorithm in MANIFEST_ALGORITHMS:
        print(result.paths[algorithm].read_text(encoding="utf-8"), end="")
    return 0


@app.command
def verify(directory: Path, *, algorithm: str = "sha256") -> int:
    """Check the files in ``directory`` against its manifest.

    Parameters
    ----------
    directory:
        Directory holding the archives and manifests.
    algorithm:
        ``sha256`` or ``md5``.
    """
    if algorithm not in MANIFEST_FILES:
        message = f"Unsupported algorithm {algorithm!r}"
        return _fail("Verify Failure", ValueError(message))
    try:
        result = verify_manifest(directory, algorithm)
    except PipelineError as exc:
        return _fail("Verify Failure", exc)
    for name in result.verified:
        print(f"{name}: OK")
    for name in result.mismatched:
        print(f"::error title=Checksum Mismatch::{name}", file=sys.stderr)
    for name in result.missing:
        print(f"::error title=Missing Artefact::{name}", file=sys.stderr)
    return 0 if result.ok else 1


@app.command(name="publish")
def publish_release(
    *,
    channel: str | None = None,
    tag: str | None = None,
    directory: Path | None = None,
    config_file: ConfigFile = DEFAULT_CONFIG_PATH,
    dry_run: bool = False,
) -> int:
    """Publish an already collected artefact directory.

    Parameters
    ----------
    channel:
        ``staging`` or ``release``; defaults to the workflow event's channel.
    tag:
        Release tag (``vX.Y.Z``); defaults to the pushed tag.
    directory:
        Collected artefacts; defaults to the configured collection directory.
    config_file:
        Pipeline configuration file.
    dry_run:
        Print the planned ``gh`` commands without running them.
    """
    try:
        resolved, resolved_tag = _resolve_channel(channel, tag)
        config = _load(config_file)
        source = directory or config.collection_dir()
        manifests = write_manifests(source)
        archives = sorted(
            path
            for path in source.iterdir()
            if path.is_file() and path not in manifests.paths.values()
        )
        if not archives:
            message = f"No artefacts discovered in {source}"
            raise PipelineError(message)
        missing = _missing_archives(config, resolved, archives)
        record = _publisher(config, dry_run=dry_run).publish(
            resolved,
            [*archives, *manifests.paths.values()],
            tag=resolved_tag,
            finalize=not missing,
        )
    except (FileNotFoundError, PipelineError, ValueError) as exc:
        return _fail("Publish Failure", exc)
    count = len(record.attached_files)
    print(f"Release {record.tag} is {record.state.value} with {count} file(s)")
    if missing:
        print(
            f"::error title=Missing Artefacts::{', '.join(missing)}",
            file=sys.stderr,
        )
        return 1
    return 0


@app.command(name="publish-crate")
def publish_crate(
    *,
    config_file: ConfigFile = DEFAULT_CONFIG_PATH,
    dry_run: bool = False,
) -> int:
    """Publish the crate to crates.io (release channel only).

    Parameters
    ----------
    config_file:
        Pipeline configuration file.
    dry_run:
        Run ``cargo publish --dry-run``.
    """
    try:
        resolved, _ = _resolve_channel(None, None)
        config = _load(config_file)
        RegistryPublisher(
            config.workspace,
            PlumbumRunner(),
            toolchain=config.toolchain,
            timeout=config.branch_timeout,
        ).publish(resolved, dry_run=dry_run)
    except RegistryConflictError as exc:
        return _fail("Version Already Published", exc)
    except (FileNotFoundError, PipelineError, ValueError) as exc:
        return _fail("Registry Failure", exc)
    return 0


def main(tokens: typ.Sequence[str] | None = None) -> int:
    """Run the CLI and return its exit code."""
    result = app(tokens)
    return result if isinstance(result, int) else 0
