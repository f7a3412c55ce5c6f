"""Run the whole release pipeline for one channel.

The run fans out one branch per target (build, then package) on a thread
pool, joins on every branch, collects the successful archives, writes the
digest manifests and publishes the lot. For the release channel the crate is
published to crates.io alongside the builds, independent of their outcome.

Usage
-----
Build and stage every target locally without publishing::

    from pathlib import Path
    from release_pipeline.config import load_config
    from release_pipeline.matrix import Channel
    from release_pipeline.pipeline import run_pipeline

    config = load_config(None, Path("."))
    report = run_pipeline(config, Channel.STAGING)
    print(report.render())
"""

from __future__ import annotations

import concurrent.futures as cf
import dataclasses
import enum
import shutil
import sys
import threading
import typing as typ

from .builder import Builder, Toolchain
from .collector import (
    BranchFailure,
    BranchOutcome,
    BranchStage,
    BuildArtifact,
    CollectionResult,
    collect_artifacts,
)
from .errors import (
    BuildError,
    CollectionError,
    PackagingError,
    PipelineCancelled,
    PublishError,
    RegistryConflictError,
    RegistryError,
)
from .fs_utils import initialize_dir
from .manifest import HashManifestEntry, ManifestResult, write_manifests
from .matrix import Channel
from .packager import Packager
from .process import BudgetedRunner, CommandRunner, PlumbumRunner

if typ.TYPE_CHECKING:
    from pathlib import Path

    from .config import PipelineConfig
    from .matrix import Target
    from .publisher import Publisher, ReleaseRecord
    from .registry import RegistryPublisher, RegistryResult

__all__ = ["RunReport", "RunStatus", "run_branch", "run_pipeline"]


class RunStatus(enum.Enum):
    """Overall result of a run: the worst outcome across every step."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclasses.dataclass(slots=True)
class RunReport:
    """Everything a run produced, and everything that went wrong."""

    channel: Channel
    tag: str | None
    outcomes: tuple[BranchOutcome, ...]
    collection: CollectionResult | None = None
    manifests: ManifestResult | None = None
    release: ReleaseRecord | None = None
    registry: RegistryResult | None = None
    errors: list[str] = dataclasses.field(default_factory=list)

    @property
    def failures(self) -> tuple[BranchFailure, ...]:
        """Failed branches in matrix order."""
        return tuple(o.failure for o in self.outcomes if o.failure is not None)

    @property
    def manifest_entries(self) -> tuple[HashManifestEntry, ...]:
        """Digest entries written for the collected archives."""
        return self.manifests.entries if self.manifests else ()

    @property
    def status(self) -> RunStatus:
        """``FAILED`` if any branch or run-level step failed."""
        if self.failures or self.errors:
            return RunStatus.FAILED
        return RunStatus.SUCCESS

    def render(self) -> str:
        """Return a human-readable summary naming every failure."""
        label = self.channel.value + (f" ({self.tag})" if self.tag else "")
        lines = [f"Channel: {label}", f"Status: {self.status.value}"]
        files = self.collection.files if self.collection else ()
        lines.append(f"Artefacts ({len(files)}):")
        lines.extend(f"  - {path.name}" for path in files)
        if self.failures:
            lines.append(f"Failed targets ({len(self.failures)}):")
            lines.extend(f"  - {failure.describe()}" for failure in self.failures)
        if self.release is not None:
            lines.append(
                f"Release: {self.release.tag} ({self.release.state.value}, "
                f"{len(self.release.attached_files)} file(s))"
            )
        if self.registry is not None:
            mode = "dry run" if self.registry.dry_run else "published"
            lines.append(f"crates.io: {mode}")
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"  - {error}" for error in self.errors)
        return "\n".join(lines)


def run_branch(
    target: Target,
    builder: Builder,
    packager: Packager,
    branch_dir: Path,
) -> BranchOutcome:
    """Build and package ``target`` inside its private ``branch_dir``.

    Build and packaging errors are returned as failed outcomes so sibling
    branches are unaffected. Only :class:`PipelineCancelled` propagates.
    """
    initialize_dir(branch_dir)
    try:
        binary = builder.build(target, branch_dir)
    except (BuildError, OSError) as exc:
        print(f"::error title=Build Failure::{target.name}: {exc}", file=sys.stderr)
        return BranchOutcome.failed(target, BranchStage.BUILD, str(exc))
    try:
        archive = packager.package(target, binary, branch_dir / "package")
    except (PackagingError, OSError) as exc:
        print(
            f"::error title=Packaging Failure::{target.name}: {exc}",
            file=sys.stderr,
        )
        return BranchOutcome.failed(target, BranchStage.PACKAGE, str(exc))
    return BranchOutcome.succeeded(BuildArtifact(target, binary, archive))


def _branch_tools(
    config: PipelineConfig,
    channel: Channel,
    runner: CommandRunner,
    cancel: threading.Event,
) -> tuple[Builder, Packager]:
    # Each branch gets its own budget.
    budgeted = BudgetedRunner(runner, config.branch_timeout)
    builder = Builder(
        config.workspace,
        config.bin_name,
        Toolchain(channel=config.toolchain, profile=config.profile),
        budgeted,
        cancel=cancel,
    )
    packager = Packager(
        config.project_name,
        budgeted,
        mode=config.channel(channel).archive,
        cancel=cancel,
    )
    return builder, packager


def _fan_out(
    pool: cf.ThreadPoolExecutor,
    config: PipelineConfig,
    channel: Channel,
    runner: CommandRunner,
    cancel: threading.Event,
) -> list[BranchOutcome]:
    work_dir = initialize_dir(config.work_dir())
    futures: dict[cf.Future[BranchOutcome], Target] = {}
    for target in config.matrix.targets_for(channel):
        builder, packager = _branch_tools(config, channel, runner, cancel)
        future = pool.submit(
            run_branch, target, builder, packager, work_dir / target.name
        )
        futures[future] = target

    try:
        cf.wait(futures, return_when=cf.ALL_COMPLETED)
    except KeyboardInterrupt:
        cancel.set()
        for future in futures:
            future.cancel()
        cf.wait(futures, return_when=cf.ALL_COMPLETED)

    cancelled = cancel.is_set() or any(
        future.cancelled() or isinstance(future.exception(), PipelineCancelled)
        for future in futures
    )
    if cancelled:
        shutil.rmtree(work_dir, ignore_errors=True)
        message = "Run cancelled; discarded artefacts from completed branches"
        raise PipelineCancelled(message)

    # Re-raises unexpected branch exceptions.
    return [future.result() for future in futures]


def run_pipeline(
    config: PipelineConfig,
    channel: Channel,
    *,
    tag: str | None = None,
    runner: CommandRunner | None = None,
    publisher: Publisher | None = None,
    registry: RegistryPublisher | None = None,
    registry_dry_run: bool = False,
    cancel: threading.Event | None = None,
) -> RunReport:
    """Build, collect, hash and publish every target of ``channel``.

    Parameters
    ----------
    config : PipelineConfig
        Loaded configuration.
    channel : Channel
        Channel whose matrix is built.
    tag : str | None
        Release tag for the release channel.
    runner : CommandRunner | None
        Executes the toolchain; :class:`PlumbumRunner` when omitted.
    publisher : Publisher | None
        Publishes the collected files; publishing is skipped when ``None``.
    registry : RegistryPublisher | None
        Publishes the crate for release runs whose channel enables it.
    registry_dry_run : bool
        Forward ``--dry-run`` to ``cargo publish``.
    cancel : threading.Event | None
        Set from another thread to cancel the run.

    Returns
    -------
    RunReport
        Outcome of every step. ``status`` is ``FAILED`` if any branch or step
        failed.

    Raises
    ------
    PipelineCancelled
        If the run is cancelled before the branches join.
    """
    runner = runner or PlumbumRunner()
    cancel = cancel or threading.Event()
    targets = config.matrix.targets_for(channel)
    wants_crate = (
        registry is not None
        and channel is Channel.RELEASE
        and config.channel(channel).publish_crate
    )
    workers = config.max_workers or len(targets) + int(wants_crate)

    with cf.ThreadPoolExecutor(max_workers=workers) as pool:
        registry_future = (
            pool.submit(
                registry.publish, channel, dry_run=registry_dry_run, cancel=cancel
            )
            if wants_crate and registry is not None
            else None
        )
        try:
            outcomes = _fan_out(pool, config, channel, runner, cancel)
        except PipelineCancelled:
            cancel.set()
            raise
        report = RunReport(channel=channel, tag=tag, outcomes=tuple(outcomes))
        _collect_and_publish(report, config, publisher)
        if registry_future is not None:
            _record_registry(report, registry_future)

    shutil.rmtree(config.work_dir(), ignore_errors=True)
    return report


def _collect_and_publish(
    report: RunReport, config: PipelineConfig, publisher: Publisher | None
) -> None:
    try:
        report.collection = collect_artifacts(report.outcomes, config.collection_dir())
    except CollectionError as exc:
        print(f"::error title=Collection Failure::{exc}", file=sys.stderr)
        report.errors.append(f"collection: {exc}")
        return

    report.manifests = write_manifests(report.collection.directory)
    if publisher is None:
        return
    if not report.collection.files:
        report.errors.append("publish: no artefacts were produced; nothing published")
        return

    files = [*report.collection.files, *report.manifests.paths.values()]
    try:
        report.release = publisher.publish(
            report.channel,
            files,
            tag=report.tag,
            finalize=report.collection.ok,
        )
    except PublishError as exc:
        print(f"::error title=Publish Failure::{exc}", file=sys.stderr)
        report.errors.append(f"publish: {exc}")
        return
    if not report.collection.ok and report.channel is Channel.RELEASE:
        print(
            f"::warning title=Release Left As Draft::{report.release.tag} is missing "
            f"{len(report.failures)} target(s)",
            file=sys.stderr,
        )


def _record_registry(report: RunReport, future: cf.Future[RegistryResult]) -> None:
    try:
        report.registry = future.result()
    except RegistryConflictError as exc:
        print(f"::error title=Version Already Published::{exc}", file=sys.stderr)
        report.errors.append(f"crates.io: {exc}")
    except (RegistryError, PipelineCancelled) as exc:
        print(f"::error title=Registry Failure::{exc}", file=sys.stderr)
        report.errors.append(f"crates.io: {exc}")
