"""Per-platform build context passed explicitly to every stage."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

from core.command_runner import CommandRunner

from .artifact_store import ArtifactStore
from .platforms import PlatformId
from .toolchains import ToolchainSpec


@dataclass(frozen=True, slots=True)
class BuildContext:
    """Everything a stage may depend on for one platform.

    Nothing here is mutated during a build; each platform gets its own
    instance and the store is shared only through content-addressed keys.
    """

    spec: ToolchainSpec
    platform: PlatformId
    store: ArtifactStore
    runner: CommandRunner
    output_root: Path
    use_cache: bool = True
    native_environment: Dict[str, str] = field(default_factory=dict)

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    @property
    def platform_name(self) -> str:
        return str(self.platform)

    def scratch_dir(self, label: str) -> Path:
        return self.store.scratch_dir(f"{self.platform}-{label}")


__all__ = ["BuildContext"]
