"""Environment helpers shared by the release pipeline."""

from __future__ import annotations

import os
import typing as typ
from pathlib import Path

__all__ = ["workspace_root"]


def workspace_root(environ: typ.Mapping[str, str] | None = None) -> Path:
    """Return the checkout root, falling back to the working directory.

    Parameters
    ----------
    environ:
        Environment to read; :data:`os.environ` when omitted.

    ``GITHUB_WORKSPACE`` is set on Actions runners; local runs use ``.``.
    """
    env = os.environ if environ is None else environ
    return Path(env.get("GITHUB_WORKSPACE") or ".").resolve()
