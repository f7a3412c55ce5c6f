"""Build, package and publish release artefacts for a Rust project."""

from .config import PipelineConfig, load_config
from .errors import (
    BuildError,
    CollectionError,
    ConfigError,
    PackagingError,
    PipelineCancelled,
    PipelineError,
    PublishConflictError,
    PublishError,
    RegistryConflictError,
    RegistryError,
)
from .matrix import Channel, Host, Target, TargetMatrix
from .pipeline import RunReport, RunStatus, run_pipeline
from .triggers import Trigger, resolve_trigger

__all__ = [
    "BuildError",
    "Channel",
    "CollectionError",
    "ConfigError",
    "Host",
    "load_config",
    "PackagingError",
    "PipelineCancelled",
    "PipelineConfig",
    "PipelineError",
    "PublishConflictError",
    "PublishError",
    "RegistryConflictError",
    "RegistryError",
    "resolve_trigger",
    "run_pipeline",
    "RunReport",
    "RunStatus",
    "Target",
    "TargetMatrix",
    "Trigger",
]
