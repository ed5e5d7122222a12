"""Target platform identifiers and host detection."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List
import platform

from .errors import ConfigurationError

_OS_ALIASES = {
    "linux": "linux",
    "macos": "macos",
    "darwin": "macos",
    "osx": "macos",
    "windows": "windows",
    "win32": "windows",
}

_ARCH_ALIASES = {
    "x64": "x64",
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "x86": "x86",
    "i686": "x86",
    "i386": "x86",
    "riscv64": "riscv64",
}

# Runtime library search variable per operating system.
RUNTIME_LIBRARY_VARIABLES = {
    "linux": "LD_LIBRARY_PATH",
    "macos": "DYLD_LIBRARY_PATH",
    "windows": "PATH",
}


@dataclass(frozen=True, slots=True, order=True)
class PlatformId:
    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}-{self.arch}"

    @property
    def runtime_library_variable(self) -> str:
        return RUNTIME_LIBRARY_VARIABLES[self.os]

    @classmethod
    def parse(cls, value: str) -> "PlatformId":
        """Parse ``linux-x64`` style ids, also accepting ``x86_64-linux`` doubles."""

        text = str(value).strip().lower()
        first, sep, second = text.partition("-")
        if not sep or not first or not second:
            raise ConfigurationError(f"Invalid platform '{value}': expected '<os>-<arch>'")
        if first in _OS_ALIASES and second in _ARCH_ALIASES:
            return cls(os=_OS_ALIASES[first], arch=_ARCH_ALIASES[second])
        if first in _ARCH_ALIASES and second in _OS_ALIASES:
            return cls(os=_OS_ALIASES[second], arch=_ARCH_ALIASES[first])
        raise ConfigurationError(f"Unknown platform '{value}'")


DEFAULT_MATRIX: tuple[PlatformId, ...] = (
    PlatformId("linux", "x64"),
    PlatformId("linux", "arm64"),
    PlatformId("macos", "x64"),
    PlatformId("macos", "arm64"),
)


def parse_platforms(values: Iterable[str]) -> List[PlatformId]:
    """Parse platform names, dropping duplicates while keeping first-seen order."""

    result: List[PlatformId] = []
    for value in values:
        for part in str(value).split(","):
            if not part.strip():
                continue
            platform_id = PlatformId.parse(part)
            if platform_id not in result:
                result.append(platform_id)
    return result


def host_platform() -> PlatformId:
    os_name = platform.system().lower()
    machine = platform.machine().lower()
    try:
        return PlatformId(os=_OS_ALIASES[os_name], arch=_ARCH_ALIASES[machine])
    except KeyError:
        raise ConfigurationError(f"Unsupported host platform: {os_name}/{machine}") from None


__all__ = [
    "DEFAULT_MATRIX",
    "PlatformId",
    "RUNTIME_LIBRARY_VARIABLES",
    "host_platform",
    "parse_platforms",
]
