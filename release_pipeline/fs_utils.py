"""Filesystem helpers for branch workspaces and collection directories."""

from __future__ import annotations

import shutil
from pathlib import Path

from .errors import PipelineError

__all__ = ["initialize_dir", "safe_destination_path"]


def initialize_dir(path: Path) -> Path:
    """Return ``path`` as a freshly created, empty directory.

    Previous runs may leave files behind; the directory is removed first so a
    run never mixes artefacts from different builds.
    """
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
    return path


def safe_destination_path(root: Path, destination: str) -> Path:
    """Return ``destination`` resolved beneath ``root``.

    Parameters
    ----------
    root : Path
        Directory under which the file must reside.
    destination : str
        Relative file name, usually derived from a target triple.

    Returns
    -------
    Path
        Absolute destination located below ``root``.

    Raises
    ------
    PipelineError
        Raised when ``destination`` resolves outside ``root``.
    """

    target = (root / destination).resolve()
    root_resolved = root.resolve()
    if not target.is_relative_to(root_resolved):
        message = f"Destination escapes directory {root}: {destination}"
        raise PipelineError(message)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target
