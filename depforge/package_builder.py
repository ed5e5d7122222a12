"""Compile project sources against cached dependency artifacts."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import shutil

from core.command_runner import CommandError

from .artifact_store import CacheKey, DependencyArtifactSet
from .context import BuildContext
from .errors import PackageBuildFailed
from .manifest import ProjectManifest
from .source_filter import FilteredSourceTree
from .toolchains import CompileRequest, ToolchainCapability

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Package:
    platform: str
    name: str
    version: str
    root: Path
    files: tuple[str, ...]
    source_digest: str
    dependency_key: CacheKey

    @property
    def label(self) -> str:
        return f"{self.name}-{self.version}"


class PackageBuilder:
    """Builds the final package for one platform.

    The dependency set is taken as given: its key was derived and checked
    by the dependency cache builder.
    """

    def build(
        self,
        context: BuildContext,
        tree: FilteredSourceTree,
        artifacts: DependencyArtifactSet,
        manifest: ProjectManifest,
        toolchain: ToolchainCapability,
    ) -> Package:
        workdir = context.scratch_dir("package")
        output_dir = workdir / "out"
        destination = context.output_root / context.platform_name / f"{manifest.name}-{manifest.version}"
        try:
            try:
                source_dir = tree.materialize(workdir / "src")
            except OSError as exc:
                raise PackageBuildFailed(
                    "Could not stage project sources for compilation",
                    platform=context.platform_name,
                    diagnostic=str(exc),
                ) from exc
            request = CompileRequest(
                stage="package",
                source_dir=source_dir,
                output_dir=output_dir,
                name=manifest.name,
                version=manifest.version,
                deps_dir=artifacts.root,
                environment=dict(context.native_environment),
            )
            try:
                toolchain.compile(request)
            except CommandError as exc:
                raise PackageBuildFailed(
                    f"Building {manifest.name} {manifest.version} failed",
                    platform=context.platform_name,
                    diagnostic=exc.result.diagnostic,
                ) from exc

            files: tuple[str, ...] = ()
            if not context.dry_run:
                output_dir.mkdir(parents=True, exist_ok=True)
                files = tuple(
                    sorted(path.relative_to(output_dir).as_posix() for path in output_dir.rglob("*") if path.is_file())
                )
                self._install(output_dir, destination)
                logger.info("[%s] packaged %s (%d files)", context.platform, destination, len(files))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        return Package(
            platform=context.platform_name,
            name=manifest.name,
            version=manifest.version,
            root=destination,
            files=files,
            source_digest=tree.digest(),
            dependency_key=artifacts.key,
        )

    @staticmethod
    def _install(output_dir: Path, destination: Path) -> None:
        # Replace the previous package wholesale so no stale file survives.
        destination.parent.mkdir(parents=True, exist_ok=True)
        previous = destination.with_name(f".{destination.name}.old")
        if previous.exists():
            shutil.rmtree(previous)
        if destination.exists():
            os.rename(destination, previous)
        shutil.copytree(output_dir, destination)
        if previous.exists():
            shutil.rmtree(previous)


__all__ = ["Package", "PackageBuilder"]
