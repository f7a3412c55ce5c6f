"""Exception hierarchy shared by the release pipeline."""

from __future__ import annotations

__all__ = [
    "BuildError",
    "CollectionError",
    "ConfigError",
    "PackagingError",
    "PipelineCancelled",
    "PipelineError",
    "PublishConflictError",
    "PublishError",
    "RegistryConflictError",
    "RegistryError",
]


class PipelineError(RuntimeError):
    """Base class for failures raised by the release pipeline."""


class ConfigError(PipelineError):
    """Raised when the pipeline configuration is missing or invalid."""


class BuildError(PipelineError):
    """Raised when compiling a target fails."""


class PackagingError(PipelineError):
    """Raised when an archive cannot be produced for a target."""


class CollectionError(PipelineError):
    """Raised when the collected artefact set is inconsistent.

    A branch reported success but its archive is missing, empty, or collides
    with another branch's archive. This is fatal to the whole run.
    """


class PublishError(PipelineError):
    """Raised when the hosted release cannot be created or updated."""


class PublishConflictError(PublishError):
    """Raised when another writer changed the release while we published."""


class RegistryError(PipelineError):
    """Raised when publishing to the package registry fails."""


class RegistryConflictError(RegistryError):
    """Raised when the registry already holds the version being published.

    The registry's own message is kept verbatim in ``args[0]``. Retrying
    cannot succeed.
    """


class PipelineCancelled(PipelineError):
    """Raised when a run is cancelled before the join completes."""
