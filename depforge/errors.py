"""Error taxonomy for build stages."""
from __future__ import annotations


class DepforgeError(RuntimeError):
    """Base error carrying the platform and stage a failure belongs to."""

    stage: str = "build"

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        stage: str | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.platform = platform
        if stage is not None:
            self.stage = stage
        self.diagnostic = diagnostic

    def __str__(self) -> str:
        prefix = f"[{self.platform}] " if self.platform else ""
        return f"{prefix}{self.stage}: {self.message}"


class ConfigurationError(DepforgeError):
    stage = "config"


class ToolchainUnavailable(DepforgeError):
    stage = "toolchain"


class SourceUnreadable(DepforgeError):
    stage = "sources"


class DependencyBuildFailed(DepforgeError):
    stage = "dependencies"


class PackageBuildFailed(DepforgeError):
    stage = "package"


class NativeLibraryMissing(DepforgeError):
    stage = "shell"


__all__ = [
    "ConfigurationError",
    "DepforgeError",
    "DependencyBuildFailed",
    "NativeLibraryMissing",
    "PackageBuildFailed",
    "SourceUnreadable",
    "ToolchainUnavailable",
]
