"""Shared fakes and helpers for the release pipeline test suites."""

from __future__ import annotations

import dataclasses
import threading
import typing as typ
from pathlib import Path

from plumbum.commands import ProcessTimedOut

from release_pipeline.process import CommandResult
from release_pipeline.publisher import RemoteRelease, TransportError

__all__ = [
    "FakeReleaseClient",
    "FakeRunner",
    "decode_output_file",
    "write_cargo_project",
]


def decode_output_file(path: Path) -> dict[str, str]:
    """Parse GitHub output records written with ``write_github_output``.

    Parameters
    ----------
    path : Path
        Path to the output file containing GitHub workflow output records.

    Returns
    -------
    dict[str, str]
        Mapping of output keys to their decoded string values.
    """

    lines = path.read_text(encoding="utf-8").splitlines()
    values: dict[str, str] = {}
    index = 0
    while index < len(lines):
        line = lines[index]
        if "<<" in line:
            key, delimiter = line.split("<<", 1)
            index += 1
            buffer: list[str] = []
            while index < len(lines) and lines[index] != delimiter:
                buffer.append(lines[index])
                index += 1
            values[key] = "\n".join(buffer)
            index += 1  # Skip the delimiter terminator.
            continue
        if "=" in line:
            key, value = line.split("=", 1)
            decoded = (
                value.replace("%0A", "\n")
                .replace("%0D", "\r")
                .replace("%25", "%")
            )
            values[key] = decoded
        index += 1
    return values


def write_cargo_project(root: Path, name: str = "demo") -> Path:
    """Populate ``root`` with a minimal locked Cargo project."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(
        f'[package]\nname = "{name}"\nversion = "1.2.3"\nedition = "2021"\n',
        encoding="utf-8",
    )
    (root / "Cargo.lock").write_text(
        f'version = 3\n\n[[package]]\nname = "{name}"\nversion = "1.2.3"\n',
        encoding="utf-8",
    )
    return root


def _option(argv: typ.Sequence[str], flag: str) -> str:
    return argv[list(argv).index(flag) + 1]


class FakeRunner:
    """Stand-in for the toolchain that fabricates build outputs.

    ``cargo build`` writes an executable where cargo would, ``zstd`` writes a
    compressed placeholder, and ``cargo publish`` answers with
    ``publish_result``. Builds for ``fail_targets`` exit with status 101 and
    builds for ``timeout_targets`` raise :class:`ProcessTimedOut`.
    """

    def __init__(
        self,
        *,
        bin_name: str = "demo",
        fail_targets: typ.Iterable[str] = (),
        timeout_targets: typ.Iterable[str] = (),
        publish_result: CommandResult | None = None,
        on_build: typ.Callable[[str], None] | None = None,
    ) -> None:
        self.bin_name = bin_name
        self.fail_targets = set(fail_targets)
        self.timeout_targets = set(timeout_targets)
        self.publish_result = publish_result
        self.on_build = on_build
        self.calls: list[dict[str, typ.Any]] = []
        self._lock = threading.Lock()

    def __call__(
        self,
        argv: typ.Sequence[str],
        *,
        cwd: Path | None = None,
        env: typ.Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        argv = tuple(argv)
        with self._lock:
            self.calls.append(
                {"argv": argv, "cwd": cwd, "env": env, "timeout": timeout}
            )
        if argv[0] == "zstd":
            destination = Path(_option(argv, "-o"))
            destination.write_bytes(b"zst:" + Path(argv[-1]).read_bytes())
            return CommandResult(argv, 0)
        if argv[0] == "cargo" and "build" in argv:
            return self._build(argv)
        if argv[0] == "cargo" and "publish" in argv:
            return self.publish_result or CommandResult(argv, 0, "Uploading demo")
        return CommandResult(argv, 0)

    def commands(self, program: str) -> list[tuple[str, ...]]:
        """Return the recorded argv lists that ran ``program``."""
        return [call["argv"] for call in self.calls if call["argv"][0] == program]

    def _build(self, argv: tuple[str, ...]) -> CommandResult:
        triple = _option(argv, "--target")
        if self.on_build is not None:
            self.on_build(triple)
        if triple in self.timeout_targets:
            message = f"cargo build for {triple} exceeded its budget"
            raise ProcessTimedOut(message, list(argv))
        if triple in self.fail_targets:
            message = f"error: linker failed for {triple}"
            return CommandResult(argv, 101, stderr=message)
        profile = _option(argv, "--profile")
        ext = ".exe" if "windows" in triple else ""
        binary = (
            Path(_option(argv, "--target-dir"))
            / triple
            / profile
            / f"{self.bin_name}{ext}"
        )
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_bytes(f"binary for {triple}".encode())
        return CommandResult(argv, 0)


@dataclasses.dataclass
class FakeReleaseClient:
    """In-memory release host.

    ``upload_failures`` maps asset names to the number of transport failures
    their upload raises before succeeding. ``contents`` holds the bytes of
    every asset, keyed by tag and asset name.
    """

    releases: dict[str, RemoteRelease] = dataclasses.field(default_factory=dict)
    contents: dict[str, dict[str, bytes]] = dataclasses.field(default_factory=dict)
    upload_failures: dict[str, int] = dataclasses.field(default_factory=dict)
    calls: list[tuple[str, ...]] = dataclasses.field(default_factory=list)
    intruder_asset: str | None = None

    def view(self, tag: str) -> RemoteRelease | None:
        self.calls.append(("view", tag))
        return self.releases.get(tag)

    def create(
        self,
        tag: str,
        *,
        title: str,
        notes: str | None,
        prerelease: bool,
    ) -> None:
        self.calls.append(("create", tag))
        self.releases[tag] = RemoteRelease(
            tag, True, prerelease, url=f"https://example.test/{title}"
        )

    def upload(self, tag: str, path: Path) -> None:
        self.calls.append(("upload", tag, path.name))
        if self.upload_failures.get(path.name, 0) > 0:
            self.upload_failures[path.name] -= 1
            message = f"upload of {path.name} failed: HTTP 502"
            raise TransportError(message)
        release = self.releases[tag]
        assets = {*release.assets, path.name}
        if self.intruder_asset:
            assets.add(self.intruder_asset)
        self.releases[tag] = dataclasses.replace(release, assets=tuple(sorted(assets)))
        self.contents.setdefault(tag, {})[path.name] = path.read_bytes()

    def download(self, tag: str, asset_name: str, directory: Path) -> Path:
        self.calls.append(("download", tag, asset_name))
        destination = directory / asset_name
        destination.write_bytes(self.contents.get(tag, {}).get(asset_name, b""))
        return destination

    def publish(self, tag: str, *, discussion_category: str | None) -> None:
        self.calls.append(("publish", tag))
        self.releases[tag] = dataclasses.replace(self.releases[tag], is_draft=False)

    def delete(self, tag: str) -> None:
        self.calls.append(("delete", tag))
        self.releases.pop(tag, None)
        self.contents.pop(tag, None)

    def delete_asset(self, tag: str, asset_name: str) -> None:
        self.calls.append(("delete-asset", tag, asset_name))
        release = self.releases[tag]
        assets = tuple(name for name in release.assets if name != asset_name)
        self.releases[tag] = dataclasses.replace(release, assets=assets)
        self.contents.get(tag, {}).pop(asset_name, None)

    def operations(self) -> list[str]:
        """Return the recorded operation names in call order."""
        return [call[0] for call in self.calls]
