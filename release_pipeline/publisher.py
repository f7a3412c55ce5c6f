"""Create or update the hosted release that carries the collected artefacts.

A release record moves through ``absent → draft → published``. Staging runs
keep a draft pre-release under a fixed label; release runs publish the record
for a ``vX.Y.Z`` tag with notes generated by GitHub. Publishing is an upsert:
re-running against the same tag updates the existing record, replacing assets
of the same name and keeping the rest.

Assets are always uploaded while the record is still a draft and the record
is only published once every upload has succeeded. Archives go up before the
checksum manifests. If uploads fail after all retries, the assets added by the
run (or the whole record, when the run created it) are removed again and any
asset the run replaced is restored from a snapshot taken before the upload.

Examples
--------
Publish the collected archives for ``v1.2.3``::

    client = GhReleaseClient(runner=PlumbumRunner(), workspace=Path("."))
    Publisher(client).publish(Channel.RELEASE, files, tag="v1.2.3")
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import json
import re
import sys
import tempfile
import threading
import time
import typing as typ
from pathlib import Path

from plumbum.commands import CommandNotFound, ProcessTimedOut
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .errors import PublishConflictError, PublishError
from .manifest import MANIFEST_FILES
from .matrix import Channel
from .process import CommandResult, CommandRunner, tail

__all__ = [
    "GENERATED_NOTES",
    "STAGING_NOTES",
    "TAG_PATTERN",
    "GhReleaseClient",
    "Publisher",
    "ReleaseClient",
    "ReleaseRecord",
    "ReleaseState",
    "RemoteRelease",
    "TransportError",
    "is_release_tag",
]

TAG_PATTERN = re.compile(r"^v[0-9]+\.[0-9]+\.[0-9]+$")
STAGING_NOTES = "Staging build. Artefacts are short-lived and may be replaced."
GENERATED_NOTES = "Generated from the changes since the previous tag."


class TransportError(PublishError):
    """Raised by a client when a request to the release host fails."""


class ReleaseState(enum.Enum):
    """Lifecycle of a hosted release record."""

    ABSENT = "absent"
    DRAFT = "draft"
    PUBLISHED = "published"


@dataclasses.dataclass(frozen=True, slots=True)
class RemoteRelease:
    """Release record as reported by the host."""

    tag: str
    is_draft: bool
    is_prerelease: bool = False
    assets: tuple[str, ...] = ()
    url: str = ""

    @property
    def state(self) -> ReleaseState:
        """Return the lifecycle state of the record."""
        return ReleaseState.DRAFT if self.is_draft else ReleaseState.PUBLISHED


@dataclasses.dataclass(frozen=True, slots=True)
class ReleaseRecord:
    """Release record left behind by :meth:`Publisher.publish`."""

    tag: str
    channel: Channel
    attached_files: frozenset[str]
    notes: str
    state: ReleaseState
    url: str = ""


class ReleaseClient(typ.Protocol):
    """Operations the publisher needs from the release host."""

    def view(self, tag: str) -> RemoteRelease | None: ...

    def create(
        self,
        tag: str,
        *,
        title: str,
        notes: str | None,
        prerelease: bool,
    ) -> None: ...

    def upload(self, tag: str, path: Path) -> None: ...

    def download(self, tag: str, asset_name: str, directory: Path) -> Path: ...

    def publish(self, tag: str, *, discussion_category: str | None) -> None: ...

    def delete(self, tag: str) -> None: ...

    def delete_asset(self, tag: str, asset_name: str) -> None: ...


def is_release_tag(tag: str) -> bool:
    """Return ``True`` when ``tag`` looks like ``v<major>.<minor>.<patch>``.

    Examples
    --------
    >>> is_release_tag("v1.2.3")
    True
    >>> is_release_tag("v1.2")
    False
    """
    return TAG_PATTERN.fullmatch(tag) is not None


class GhReleaseClient:
    """Drive GitHub releases with the ``gh`` CLI.

    Parameters
    ----------
    runner : CommandRunner
        Executes ``gh``.
    workspace : Path
        Checkout the ``gh`` commands run in; selects the repository.
    dry_run : bool
        When ``True``, print the mutating ``gh`` invocations instead of
        running them. Releases start out absent and the planned changes are
        tracked in memory so the publisher sees a consistent record.
    timeout : float | None
        Wall-clock budget per ``gh`` invocation.
    """

    def __init__(
        self,
        runner: CommandRunner,
        workspace: Path,
        *,
        dry_run: bool = False,
        timeout: float | None = 600.0,
    ) -> None:
        self.runner = runner
        self.workspace = workspace
        self.dry_run = dry_run
        self.timeout = timeout
        self._planned: dict[str, RemoteRelease] = {}

    def view(self, tag: str) -> RemoteRelease | None:
        if self.dry_run:
            return self._planned.get(tag)
        argv = [
            "gh",
            "release",
            "view",
            tag,
            "--json",
            "tagName,isDraft,isPrerelease,assets,url",
        ]
        result = self._invoke(argv)
        if not result.ok:
            if "release not found" in result.stderr.lower():
                return None
            raise TransportError(self._describe(argv, result.returncode, result.output))
        payload = json.loads(result.stdout)
        return RemoteRelease(
            tag=payload.get("tagName", tag),
            is_draft=bool(payload.get("isDraft")),
            is_prerelease=bool(payload.get("isPrerelease")),
            assets=tuple(asset["name"] for asset in payload.get("assets") or ()),
            url=payload.get("url", ""),
        )

    def create(
        self,
        tag: str,
        *,
        title: str,
        notes: str | None,
        prerelease: bool,
    ) -> None:
        argv = ["gh", "release", "create", tag, "--draft", "--title", title]
        argv += ["--notes", notes] if notes is not None else ["--generate-notes"]
        if prerelease:
            argv.append("--prerelease")
        else:
            argv.append("--verify-tag")
        if self._mutate(argv):
            self._planned[tag] = RemoteRelease(tag, True, prerelease)

    def upload(self, tag: str, path: Path) -> None:
        argv = ["gh", "release", "upload", tag, path.as_posix(), "--clobber"]
        if self._mutate(argv) and (planned := self._planned.get(tag)):
            assets = tuple(sorted({*planned.assets, path.name}))
            self._planned[tag] = dataclasses.replace(planned, assets=assets)

    def download(self, tag: str, asset_name: str, directory: Path) -> Path:
        argv = [
            "gh",
            "release",
            "download",
            tag,
            "--pattern",
            asset_name,
            "--dir",
            directory.as_posix(),
            "--clobber",
        ]
        self._mutate(argv)
        return directory / asset_name

    def publish(self, tag: str, *, discussion_category: str | None) -> None:
        argv = ["gh", "release", "edit", tag, "--draft=false"]
        if discussion_category:
            argv += ["--discussion-category", discussion_category]
        if self._mutate(argv) and (planned := self._planned.get(tag)):
            self._planned[tag] = dataclasses.replace(planned, is_draft=False)

    def delete(self, tag: str) -> None:
        if self._mutate(["gh", "release", "delete", tag, "--yes"]):
            self._planned.pop(tag, None)

    def delete_asset(self, tag: str, asset_name: str) -> None:
        argv = ["gh", "release", "delete-asset", tag, asset_name, "--yes"]
        if self._mutate(argv) and (planned := self._planned.get(tag)):
            assets = tuple(name for name in planned.assets if name != asset_name)
            self._planned[tag] = dataclasses.replace(planned, assets=assets)

    def _mutate(self, argv: list[str]) -> bool:
        """Run ``argv``; return ``True`` when it was only printed (dry run)."""
        if self.dry_run:
            print(f"[dry-run] {' '.join(argv)}")
            return True
        result = self._invoke(argv)
        if not result.ok:
            raise TransportError(self._describe(argv, result.returncode, result.output))
        return False

    def _invoke(self, argv: list[str]) -> CommandResult:
        try:
            return self.runner(argv, cwd=self.workspace, timeout=self.timeout)
        except CommandNotFound as exc:
            message = "gh is not installed; cannot publish the release"
            raise PublishError(message) from exc
        except ProcessTimedOut as exc:
            message = f"{' '.join(argv[:3])} timed out: {exc}"
            raise TransportError(message) from exc

    @staticmethod
    def _describe(argv: list[str], returncode: int, output: str) -> str:
        message = f"{' '.join(argv[:3])} failed (exit {returncode})"
        if detail := tail(output, 5):
            message = f"{message}: {detail}"
        return message


# tag -> (lock, number of publishes holding or waiting for it)
_TAG_LOCKS: dict[str, tuple[threading.Lock, int]] = {}
_TAG_LOCKS_GUARD = threading.Lock()


@contextlib.contextmanager
def _tag_lock(tag: str) -> typ.Iterator[None]:
    """Serialise publishes of ``tag`` within the process.

    The entry for ``tag`` is dropped once no publish uses it.
    """
    with _TAG_LOCKS_GUARD:
        lock, users = _TAG_LOCKS.get(tag, (threading.Lock(), 0))
        _TAG_LOCKS[tag] = (lock, users + 1)
    try:
        with lock:
            yield
    finally:
        with _TAG_LOCKS_GUARD:
            lock, users = _TAG_LOCKS[tag]
            if users == 1:
                del _TAG_LOCKS[tag]
            else:
                _TAG_LOCKS[tag] = (lock, users - 1)


def _upload_order(files: typ.Iterable[Path]) -> list[Path]:
    """Return ``files`` with archives first and checksum manifests last."""
    manifests = set(MANIFEST_FILES.values())
    return sorted(files, key=lambda path: (path.name in manifests, path.name))


class Publisher:
    """Upsert release records through a :class:`ReleaseClient`.

    Parameters
    ----------
    client : ReleaseClient
        Release host.
    attempts : int
        Attempts per host request before a transport failure is fatal.
    backoff : float
        Seconds to wait before the second attempt; grows linearly.
    staging_label : str
        Tag of the staging record.
    discussion_category : str | None
        Discussion category announced when a release is published.
    sleep : Callable[[float], None]
        Wait function, replaceable in tests.
    """

    def __init__(
        self,
        client: ReleaseClient,
        *,
        attempts: int = 3,
        backoff: float = 2.0,
        staging_label: str = "staging",
        discussion_category: str | None = "Announcements",
        sleep: typ.Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            message = "attempts must be at least 1"
            raise ValueError(message)
        self.client = client
        self.attempts = attempts
        self.backoff = backoff
        self.staging_label = staging_label
        self.discussion_category = discussion_category
        self.sleep = sleep

    def resolve_tag(self, channel: Channel, tag: str | None) -> str:
        """Return the tag the record for ``channel`` is keyed by.

        Raises
        ------
        PublishError
            If a release run has no tag or the tag is not ``vX.Y.Z``.
        """
        if channel is Channel.STAGING:
            return tag or self.staging_label
        if not tag or not is_release_tag(tag):
            message = f"Release tag must match v<major>.<minor>.<patch>, got {tag!r}"
            raise PublishError(message)
        return tag

    def publish(
        self,
        channel: Channel,
        files: typ.Sequence[Path],
        *,
        tag: str | None = None,
        finalize: bool = True,
    ) -> ReleaseRecord:
        """Attach ``files`` to the record for ``channel`` and ``tag``.

        Parameters
        ----------
        channel : Channel
            Staging keeps a draft pre-release; release publishes.
        files : Sequence[Path]
            Archives and manifests to attach.
        tag : str | None
            Release tag. Staging falls back to :attr:`staging_label`.
        finalize : bool
            When ``False`` a release record is left as a draft, used when
            some targets failed to build.

        Returns
        -------
        ReleaseRecord
            The record after the upsert.

        Raises
        ------
        PublishError
            If the tag is invalid, file names collide, or the host keeps
            failing. The record is rolled back first.
        PublishConflictError
            If another writer changed the record's assets concurrently.
        """
        resolved = self.resolve_tag(channel, tag)
        names = [path.name for path in files]
        if duplicates := sorted({name for name in names if names.count(name) > 1}):
            message = f"Duplicate asset names for {resolved}: {', '.join(duplicates)}"
            raise PublishError(message)
        notes = STAGING_NOTES if channel is Channel.STAGING else GENERATED_NOTES

        with _tag_lock(resolved), tempfile.TemporaryDirectory() as scratch:
            existing = self._retry("view", self.client.view, resolved)
            created = existing is None
            if created:
                self._retry(
                    "create",
                    self.client.create,
                    resolved,
                    title=resolved,
                    notes=STAGING_NOTES if channel is Channel.STAGING else None,
                    prerelease=channel is Channel.STAGING,
                )
                baseline: frozenset[str] = frozenset()
                was_published = False
            else:
                baseline = frozenset(existing.assets)
                was_published = existing.state is ReleaseState.PUBLISHED

            added: list[str] = []
            replaced: dict[str, Path] = {}
            try:
                for path in _upload_order(files):
                    if path.name in baseline:
                        replaced[path.name] = self._retry(
                            "download",
                            self.client.download,
                            resolved,
                            path.name,
                            Path(scratch),
                        )
                    self._retry("upload", self.client.upload, resolved, path)
                    if path.name not in baseline:
                        added.append(path.name)
                    print(f"Uploaded {path.name} to {resolved}")
                expected = baseline | set(names)
                current = self._retry("view", self.client.view, resolved)
                self._check_consistent(resolved, current, expected)
                publish_now = (
                    channel is Channel.RELEASE and finalize and not was_published
                )
                if publish_now:
                    self._retry(
                        "publish",
                        self.client.publish,
                        resolved,
                        discussion_category=self.discussion_category,
                    )
            except PublishError:
                self._rollback(
                    resolved, created=created, added=added, replaced=replaced
                )
                raise

        if was_published or publish_now:
            state = ReleaseState.PUBLISHED
        else:
            state = ReleaseState.DRAFT
        return ReleaseRecord(
            tag=resolved,
            channel=channel,
            attached_files=frozenset(expected),
            notes=notes,
            state=state,
            url=current.url if current is not None else "",
        )

    def _check_consistent(
        self, tag: str, current: RemoteRelease | None, expected: frozenset[str]
    ) -> None:
        if current is None:
            message = f"Release {tag} disappeared while uploading"
            raise PublishConflictError(message)
        if (actual := frozenset(current.assets)) != expected:
            unexpected = sorted(actual - expected)
            lost = sorted(expected - actual)
            message = (
                f"Release {tag} changed concurrently "
                f"(unexpected: {unexpected}, missing: {lost})"
            )
            raise PublishConflictError(message)

    def _rollback(
        self,
        tag: str,
        *,
        created: bool,
        added: list[str],
        replaced: dict[str, Path],
    ) -> None:
        try:
            if created:
                self._retry("delete", self.client.delete, tag)
                print(
                    f"::warning title=Release Rolled Back::Deleted draft {tag}",
                    file=sys.stderr,
                )
                return
            for snapshot in _upload_order(replaced.values()):
                self._retry("upload", self.client.upload, tag, snapshot)
            for name in added:
                self._retry("delete-asset", self.client.delete_asset, tag, name)
            if added or replaced:
                print(
                    f"::warning title=Release Rolled Back::Removed {len(added)} and "
                    f"restored {len(replaced)} asset(s) on {tag}",
                    file=sys.stderr,
                )
        except PublishError as exc:
            print(
                f"::error title=Rollback Failure::Release {tag} may hold a partial "
                f"upload: {exc}",
                file=sys.stderr,
            )

    def _retry(self, label: str, func: typ.Callable[..., typ.Any], *args, **kwargs):
        """Call ``func``, retrying :class:`TransportError` with linear backoff."""

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            print(
                f"::warning title=Publish Retry::{label} attempt "
                f"{retry_state.attempt_number} failed: {exc}",
                file=sys.stderr,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            retry=retry_if_exception_type(TransportError),
            before_sleep=_before_sleep,
            sleep=self.sleep,
        )
        try:
            return retrying(func, *args, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt
            cause = last.exception()
            message = (
                f"gh release {label} failed after {last.attempt_number} "
                f"attempt(s): {cause}"
            )
            raise PublishError(message) from cause
