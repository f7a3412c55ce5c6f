"""Build targets and the per-channel matrices that enumerate them.

Usage
-----
Look up the targets built by the staging channel::

    from release_pipeline.matrix import DEFAULT_MATRIX, Channel

    for target in DEFAULT_MATRIX.targets_for(Channel.STAGING):
        print(target.name, target.runner)
"""

from __future__ import annotations

import dataclasses
import enum
import re
import typing as typ

from .errors import ConfigError

__all__ = [
    "DEFAULT_MATRIX",
    "DEFAULT_TARGETS",
    "Channel",
    "Host",
    "Target",
    "TargetMatrix",
]


class Host(enum.Enum):
    """Operating system family a target is built on and for."""

    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"


class Channel(enum.Enum):
    """Publication path: manual staging or tag-triggered release."""

    STAGING = "staging"
    RELEASE = "release"

    @classmethod
    def parse(cls, value: str | Channel) -> Channel:
        """Return the channel named by ``value``.

        Examples
        --------
        >>> Channel.parse("Release")
        <Channel.RELEASE: 'release'>
        """
        if isinstance(value, Channel):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(channel.value for channel in cls)
            message = f"Unknown channel {value!r}; expected one of: {choices}"
            raise ValueError(message) from None


_TARGET_NAME = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]*")


_DEFAULT_RUNNERS = {
    Host.LINUX: "ubuntu-latest",
    Host.MACOS: "macos-latest",
    Host.WINDOWS: "windows-latest",
}


@dataclasses.dataclass(frozen=True, slots=True)
class Target:
    """A platform triple the pipeline produces a binary for.

    Parameters
    ----------
    name : str
        Rust target triple, for example ``"x86_64-unknown-linux-gnu"``.
    host : Host
        Operating system family; selects the archive format.
    runner : str, optional
        CI runner label the target builds on. Derived from ``host`` when
        omitted.
    bin_ext : str | None, optional
        Executable suffix. ``".exe"`` for Windows hosts when omitted.
    """

    name: str
    host: Host
    runner: str = ""
    bin_ext: str | None = None

    def __post_init__(self) -> None:
        if not _TARGET_NAME.fullmatch(self.name) or ".." in self.name:
            message = (
                f"Invalid target name {self.name!r}; expected a platform triple "
                "such as x86_64-unknown-linux-gnu"
            )
            raise ConfigError(message)
        if not self.runner:
            object.__setattr__(self, "runner", _DEFAULT_RUNNERS[self.host])
        if self.bin_ext is None:
            ext = ".exe" if self.host is Host.WINDOWS else ""
            object.__setattr__(self, "bin_ext", ext)

    def binary_name(self, bin_name: str) -> str:
        """Return the executable file name for ``bin_name`` on this target."""
        return f"{bin_name}{self.bin_ext}"


DEFAULT_TARGETS: dict[str, Target] = {
    "x86_64-unknown-linux-gnu": Target("x86_64-unknown-linux-gnu", Host.LINUX),
    "aarch64-apple-darwin": Target("aarch64-apple-darwin", Host.MACOS),
    "x86_64-pc-windows-msvc": Target("x86_64-pc-windows-msvc", Host.WINDOWS),
}


class TargetMatrix:
    """Ordered, duplicate-free targets for each channel.

    Parameters
    ----------
    channels : Mapping[Channel, Iterable[Target]]
        Targets per channel, in build order.

    Raises
    ------
    ConfigError
        If a channel has no targets, lists a target twice, or two distinct
        targets share a name.
    """

    def __init__(
        self, channels: typ.Mapping[Channel, typ.Iterable[Target]]
    ) -> None:
        self._channels: dict[Channel, tuple[Target, ...]] = {}
        known: dict[str, Target] = {}
        for channel, targets in channels.items():
            ordered = tuple(targets)
            if not ordered:
                message = f"Channel '{channel.value}' has no targets"
                raise ConfigError(message)
            seen: set[str] = set()
            for target in ordered:
                if target.name in seen:
                    message = (
                        f"Duplicate target '{target.name}' in channel "
                        f"'{channel.value}'"
                    )
                    raise ConfigError(message)
                seen.add(target.name)
                previous = known.setdefault(target.name, target)
                if previous != target:
                    message = f"Conflicting definitions for target '{target.name}'"
                    raise ConfigError(message)
            self._channels[channel] = ordered

    @property
    def channels(self) -> tuple[Channel, ...]:
        """Channels this matrix defines."""
        return tuple(self._channels)

    def targets_for(self, channel: Channel) -> tuple[Target, ...]:
        """Return the targets built for ``channel`` in build order."""
        try:
            return self._channels[channel]
        except KeyError:
            message = f"No targets configured for channel '{channel.value}'"
            raise ConfigError(message) from None

    def target(self, channel: Channel, name: str) -> Target:
        """Return the target called ``name`` within ``channel``."""
        for target in self.targets_for(channel):
            if target.name == name:
                return target
        message = f"Target '{name}' is not part of the {channel.value} matrix"
        raise ConfigError(message)

    def as_github_matrix(self, channel: Channel) -> dict[str, list[dict[str, str]]]:
        """Return ``channel``'s targets shaped for a workflow ``strategy.matrix``.

        Examples
        --------
        >>> DEFAULT_MATRIX.as_github_matrix(Channel.RELEASE)["target"][0]
        {'name': 'x86_64-unknown-linux-gnu', 'os': 'ubuntu-latest', 'extension': ''}
        """
        return {
            "target": [
                {
                    "name": target.name,
                    "os": target.runner,
                    "extension": target.bin_ext or "",
                }
                for target in self.targets_for(channel)
            ]
        }


DEFAULT_MATRIX = TargetMatrix(
    {
        Channel.STAGING: [
            DEFAULT_TARGETS["aarch64-apple-darwin"],
            DEFAULT_TARGETS["x86_64-unknown-linux-gnu"],
            DEFAULT_TARGETS["x86_64-pc-windows-msvc"],
        ],
        Channel.RELEASE: [
            DEFAULT_TARGETS["x86_64-unknown-linux-gnu"],
            DEFAULT_TARGETS["aarch64-apple-darwin"],
            DEFAULT_TARGETS["x86_64-pc-windows-msvc"],
        ],
    }
)
