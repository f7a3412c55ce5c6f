"""Digest manifests for collected release artefacts.

Two manifests are written next to the archives: ``SHA256`` and ``MD5``. Each
holds one ``<digest>  <file name>`` line per archive, sorted by file name, in
the format ``sha256sum``/``md5sum`` emit and ``--check`` consumes.
"""

from __future__ import annotations

import dataclasses
import hashlib
import typing as typ
from pathlib import Path

from .errors import PipelineError

__all__ = [
    "MANIFEST_ALGORITHMS",
    "MANIFEST_FILES",
    "HashManifestEntry",
    "ManifestResult",
    "VerificationResult",
    "hash_file",
    "parse_manifest",
    "render_manifest",
    "verify_manifest",
    "write_manifests",
]

MANIFEST_ALGORITHMS = ("sha256", "md5")
MANIFEST_FILES = {"sha256": "SHA256", "md5": "MD5"}

_CHUNK_SIZE = 1024 * 1024


@dataclasses.dataclass(frozen=True, slots=True)
class HashManifestEntry:
    """Digest of one collected file under one algorithm."""

    file_name: str
    algorithm: str
    digest: str


@dataclasses.dataclass(frozen=True, slots=True)
class ManifestResult:
    """Manifests written by :func:`write_manifests`."""

    paths: dict[str, Path]
    entries: tuple[HashManifestEntry, ...]

    def for_algorithm(self, algorithm: str) -> list[HashManifestEntry]:
        """Return the entries computed with ``algorithm`` in manifest order."""
        return [entry for entry in self.entries if entry.algorithm == algorithm]


@dataclasses.dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of :func:`verify_manifest`."""

    verified: tuple[str, ...]
    mismatched: tuple[str, ...]
    missing: tuple[str, ...]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every listed file exists and matches."""
        return not self.mismatched and not self.missing


def hash_file(path: Path, algorithm: str) -> str:
    """Return the hex digest of ``path`` using ``algorithm``.

    Parameters
    ----------
    path:
        Path to the file whose contents should be hashed.
    algorithm:
        Hashing algorithm name supported by :mod:`hashlib` (for example
        ``"sha256"``).
    """

    hasher = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def render_manifest(entries: typ.Iterable[HashManifestEntry]) -> str:
    """Return manifest text for ``entries`` sorted by file name."""
    ordered = sorted(entries, key=lambda entry: entry.file_name)
    return "".join(f"{entry.digest}  {entry.file_name}\n" for entry in ordered)


def _collected_files(directory: Path) -> list[Path]:
    reserved = set(MANIFEST_FILES.values())
    return sorted(
        (
            path
            for path in directory.iterdir()
            if path.is_file() and path.name not in reserved
        ),
        key=lambda path: path.name,
    )


def write_manifests(directory: Path) -> ManifestResult:
    """Hash every file in ``directory`` and write ``SHA256`` and ``MD5``.

    Parameters
    ----------
    directory : Path
        Collection directory produced by the artefact collector.

    Returns
    -------
    ManifestResult
        Manifest paths keyed by algorithm, and every computed entry.

    Raises
    ------
    PipelineError
        If ``directory`` does not exist.

    Examples
    --------
    >>> result = write_manifests(Path("dist/artifacts"))  # doctest: +SKIP
    >>> result.paths["sha256"].read_text()  # doctest: +SKIP
    'e3b0...  proj-a.zip\\n'
    """
    if not directory.is_dir():
        message = f"Artefact directory {directory} does not exist"
        raise PipelineError(message)

    files = _collected_files(directory)
    entries: list[HashManifestEntry] = []
    paths: dict[str, Path] = {}
    for algorithm in MANIFEST_ALGORITHMS:
        computed = [
            HashManifestEntry(path.name, algorithm, hash_file(path, algorithm))
            for path in files
        ]
        manifest_path = directory / MANIFEST_FILES[algorithm]
        manifest_path.write_text(
            render_manifest(computed), encoding="utf-8", newline="\n"
        )
        entries.extend(computed)
        paths[algorithm] = manifest_path
    return ManifestResult(paths=paths, entries=tuple(entries))


def parse_manifest(text: str) -> list[tuple[str, str]]:
    """Return ``(digest, file_name)`` pairs from manifest ``text``.

    Lines in binary mode (``digest *name``) are accepted.

    Raises
    ------
    PipelineError
        If a non-empty line does not follow ``<digest>  <file name>``.
    """
    pairs: list[tuple[str, str]] = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        digest, sep, name = line.partition(" ")
        name = name[1:] if name[:1] in {" ", "*"} else name
        if not sep or not digest or not name:
            message = f"Malformed manifest line {number}: {line!r}"
            raise PipelineError(message)
        pairs.append((digest.lower(), name))
    return pairs


def verify_manifest(directory: Path, algorithm: str = "sha256") -> VerificationResult:
    """Check ``directory``'s files against its manifest for ``algorithm``.

    Raises
    ------
    PipelineError
        If the manifest file is absent.
    """
    manifest_path = directory / MANIFEST_FILES[algorithm]
    if not manifest_path.is_file():
        message = f"Manifest {manifest_path} not found"
        raise PipelineError(message)

    verified: list[str] = []
    mismatched: list[str] = []
    missing: list[str] = []
    for digest, name in parse_manifest(manifest_path.read_text(encoding="utf-8")):
        path = directory / name
        if not path.is_file():
            missing.append(name)
        elif hash_file(path, algorithm) != digest:
            mismatched.append(name)
        else:
            verified.append(name)
    return VerificationResult(tuple(verified), tuple(mismatched), tuple(missing))
