"""Helpers for exporting run results as GitHub Actions outputs."""

from __future__ import annotations

import json
import typing as typ
from pathlib import Path

if typ.TYPE_CHECKING:
    from .pipeline import RunReport

__all__ = ["prepare_run_outputs", "write_github_output"]


def prepare_run_outputs(report: RunReport) -> dict[str, str | list[str]]:
    """Assemble workflow outputs describing a finished run.

    Parameters
    ----------
    report : RunReport
        Outcome of :func:`release_pipeline.pipeline.run_pipeline`.

    Returns
    -------
    dict[str, str | list[str]]
        Output values ready for :func:`write_github_output`. List values are
        written with the multi-line delimiter syntax.

    Examples
    --------
    >>> outputs = prepare_run_outputs(report)  # doctest: +SKIP
    >>> sorted(outputs)  # doctest: +SKIP
    ['artifact_dir', 'checksum_map', 'failed_targets', 'staged_files', 'status']
    """

    collection = report.collection
    staged = [path.name for path in collection.files] if collection else []
    checksum_map = {
        entry.file_name: entry.digest
        for entry in report.manifest_entries
        if entry.algorithm == "sha256"
    }
    return {
        "status": report.status.value,
        "artifact_dir": collection.directory.as_posix() if collection else "",
        "staged_files": staged,
        "checksum_map": json.dumps(dict(sorted(checksum_map.items()))),
        "failed_targets": [failure.target.name for failure in report.failures],
    }


def write_github_output(file: Path, values: typ.Mapping[str, str | list[str]]) -> None:
    """Append ``values`` to the GitHub Actions output ``file``.

    Parameters
    ----------
    file : Path
        Target ``GITHUB_OUTPUT`` file that receives the exported values.
    values : Mapping[str, str | list[str]]
        Mapping of output names to values ready for GitHub Actions
        consumption.

    Examples
    --------
    >>> github_output = Path("/tmp/github_output")
    >>> write_github_output(github_output, {"name": "value"})
    >>> "name=value" in github_output.read_text()
    True
    """

    file.parent.mkdir(parents=True, exist_ok=True)
    with file.open("a", encoding="utf-8") as handle:
        for key, value in values.items():
            if isinstance(value, list):
                delimiter = f"gh_{key.upper()}"
                handle.write(f"{key}<<{delimiter}\n")
                handle.write("\n".join(value))
                handle.write(f"\n{delimiter}\n")
            else:
                escaped = (
                    value.replace("%", "%25")
                    .replace("\r", "%0D")
                    .replace("\n", "%0A")
                )
                handle.write(f"{key}={escaped}\n")
