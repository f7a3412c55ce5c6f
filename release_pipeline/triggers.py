"""Map the GitHub event that started a workflow onto a publication channel."""

from __future__ import annotations

import dataclasses
import os
import typing as typ

from .matrix import Channel
from .publisher import is_release_tag

__all__ = ["Trigger", "resolve_trigger", "trigger_from_env"]

_TAG_PREFIX = "refs/tags/"


@dataclasses.dataclass(frozen=True, slots=True)
class Trigger:
    """Channel selected by an event, with the pushed tag for releases."""

    channel: Channel
    tag: str | None = None


def resolve_trigger(event_name: str, ref: str | None = None) -> Trigger:
    """Return the trigger for ``event_name`` and ``ref``.

    Parameters
    ----------
    event_name : str
        Value of ``GITHUB_EVENT_NAME``.
    ref : str | None
        Value of ``GITHUB_REF`` (``refs/tags/v1.2.3``) or a bare tag.

    Raises
    ------
    ValueError
        For events other than a manual dispatch or a ``vX.Y.Z`` tag push.

    Examples
    --------
    >>> resolve_trigger("workflow_dispatch")
    Trigger(channel=<Channel.STAGING: 'staging'>, tag=None)
    >>> resolve_trigger("push", "refs/tags/v1.2.3").tag
    'v1.2.3'
    """
    if event_name == "workflow_dispatch":
        return Trigger(Channel.STAGING)
    if event_name == "push":
        tag = (ref or "").removeprefix(_TAG_PREFIX)
        if is_release_tag(tag):
            return Trigger(Channel.RELEASE, tag)
        message = f"Push of {ref!r} is not a release tag (expected vX.Y.Z)"
        raise ValueError(message)
    message = f"Unsupported event '{event_name}'"
    raise ValueError(message)


def trigger_from_env(environ: typ.Mapping[str, str] | None = None) -> Trigger:
    """Return the trigger described by the GitHub Actions environment.

    Local runs without ``GITHUB_EVENT_NAME`` are treated as manual dispatches.
    """
    env = os.environ if environ is None else environ
    event_name = env.get("GITHUB_EVENT_NAME") or "workflow_dispatch"
    return resolve_trigger(event_name, env.get("GITHUB_REF"))
