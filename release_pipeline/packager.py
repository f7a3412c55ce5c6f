"""Wrap built executables in the archive format their platform expects.

macOS and Windows binaries ship as ``.zip``, Linux binaries as ``.tar.gz``.
Channels configured for ``zstd`` instead compress the bare executable with
``zstd --ultra -22``. Zip and tar archives are written with fixed timestamps
and ownership so packaging the same binary twice yields identical bytes.
"""

from __future__ import annotations

import enum
import gzip
import shutil
import tarfile
import threading
import typing as typ
import zipfile
from pathlib import Path

from plumbum.commands import CommandNotFound, ProcessTimedOut

from .errors import PackagingError, PipelineError
from .fs_utils import safe_destination_path
from .matrix import Host
from .process import CommandRunner, tail

if typ.TYPE_CHECKING:
    from .matrix import Target

__all__ = [
    "ArchiveFormat",
    "ArchiveMode",
    "Packager",
    "archive_name",
    "select_format",
]

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_EXECUTABLE_MODE = 0o755


class ArchiveMode(enum.Enum):
    """Channel-wide packaging policy."""

    NATIVE = "native"
    ZSTD = "zstd"


class ArchiveFormat(enum.Enum):
    """Archive formats, valued by their file extension."""

    ZIP = "zip"
    TAR_GZ = "tar.gz"
    ZST = "zst"


def select_format(host: Host, mode: ArchiveMode = ArchiveMode.NATIVE) -> ArchiveFormat:
    """Return the archive format for ``host`` under ``mode``.

    Examples
    --------
    >>> select_format(Host.LINUX)
    <ArchiveFormat.TAR_GZ: 'tar.gz'>
    >>> select_format(Host.WINDOWS, ArchiveMode.ZSTD)
    <ArchiveFormat.ZST: 'zst'>
    """
    if mode is ArchiveMode.ZSTD:
        return ArchiveFormat.ZST
    if host is Host.LINUX:
        return ArchiveFormat.TAR_GZ
    return ArchiveFormat.ZIP


def archive_name(project_name: str, target: Target, fmt: ArchiveFormat) -> str:
    """Return ``{project_name}-{target}.{extension}``."""
    return f"{project_name}-{target.name}.{fmt.value}"


class Packager:
    """Produce one archive per built executable.

    Parameters
    ----------
    project_name : str
        Prefix of every archive name.
    runner : CommandRunner
        Executes ``zstd`` for the single-file format.
    mode : ArchiveMode
        Packaging policy of the current channel.
    cancel : threading.Event | None
        Set to abort an in-flight ``zstd`` invocation.
    """

    def __init__(
        self,
        project_name: str,
        runner: CommandRunner,
        *,
        mode: ArchiveMode = ArchiveMode.NATIVE,
        cancel: threading.Event | None = None,
    ) -> None:
        self.project_name = project_name
        self.runner = runner
        self.mode = mode
        self.cancel = cancel

    def package(self, target: Target, binary: Path, output_dir: Path) -> Path:
        """Archive ``binary`` for ``target`` into ``output_dir``.

        Returns
        -------
        Path
            Path of the written archive.

        Raises
        ------
        PackagingError
            If ``binary`` is missing or empty, or the archive cannot be
            written.
        """
        if not binary.is_file() or binary.stat().st_size == 0:
            message = f"Executable for {target.name} is missing or empty: {binary}"
            raise PackagingError(message)

        fmt = select_format(target.host, self.mode)
        try:
            destination = safe_destination_path(
                output_dir, archive_name(self.project_name, target, fmt)
            )
        except PipelineError as exc:
            raise PackagingError(str(exc)) from exc
        if destination.exists():
            destination.unlink()
        try:
            if fmt is ArchiveFormat.ZIP:
                _write_zip(binary, destination)
            elif fmt is ArchiveFormat.TAR_GZ:
                _write_tar_gz(binary, destination)
            else:
                self._write_zst(target, binary, destination)
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as exc:
            destination.unlink(missing_ok=True)
            message = f"Failed to write {destination.name}: {exc}"
            raise PackagingError(message) from exc
        print(f"Packed {target.name} -> {destination.name}")
        return destination

    def _write_zst(self, target: Target, binary: Path, destination: Path) -> None:
        argv = [
            "zstd",
            "--ultra",
            "-22",
            "--quiet",
            "--force",
            "-o",
            destination.as_posix(),
            binary.as_posix(),
        ]
        try:
            result = self.runner(argv, cancel=self.cancel)
        except CommandNotFound as exc:
            message = f"zstd is not installed; cannot package {target.name}"
            raise PackagingError(message) from exc
        except ProcessTimedOut as exc:
            message = f"zstd timed out for {target.name}: {exc}"
            raise PackagingError(message) from exc
        if not result.ok or not destination.is_file():
            destination.unlink(missing_ok=True)
            message = f"zstd failed for {target.name} (exit {result.returncode})"
            if detail := tail(result.output):
                message = f"{message}:\n{detail}"
            raise PackagingError(message)


def _write_zip(binary: Path, destination: Path) -> None:
    info = zipfile.ZipInfo(filename=binary.name, date_time=_ZIP_EPOCH)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = (0o100000 | _EXECUTABLE_MODE) << 16
    with zipfile.ZipFile(destination, "w") as archive:
        with binary.open("rb") as reader, archive.open(info, "w") as writer:
            shutil.copyfileobj(reader, writer)


def _write_tar_gz(binary: Path, destination: Path) -> None:
    info = tarfile.TarInfo(binary.name)
    info.size = binary.stat().st_size
    info.mode = _EXECUTABLE_MODE
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    with destination.open("wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as compressed:
            with tarfile.open(
                fileobj=compressed, mode="w", format=tarfile.GNU_FORMAT
            ) as archive:
                with binary.open("rb") as reader:
                    archive.addfile(info, reader)
