"""Run the build pipeline once per target platform and collect the outcomes."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Protocol, Sequence
import logging

from core.command_runner import CommandRunner

from .artifact_store import ArtifactStore, CacheKey
from .context import BuildContext
from .dependency_cache import DependencyCacheBuilder
from .errors import DepforgeError
from .manifest import ProjectManifest
from .native import NativeEnvironment, SearchPathResolver
from .package_builder import Package, PackageBuilder
from .platforms import PlatformId
from .source_filter import SourceFilter
from .toolchains import ToolchainCapability, ToolchainSpec

logger = logging.getLogger(__name__)


class ToolchainProvider(Protocol):
    def resolve(self, spec: ToolchainSpec, platform: PlatformId) -> ToolchainCapability:
        ...


@dataclass(slots=True)
class PlatformResult:
    platform: PlatformId
    package: Package | None = None
    dependency_key: CacheKey | None = None
    dependency_hit: bool | None = None
    stage: str | None = None
    message: str | None = None
    diagnostic: str | None = None

    @property
    def ok(self) -> bool:
        return self.package is not None

    def describe(self) -> str:
        if self.ok:
            cache = "cached deps" if self.dependency_hit else "built deps"
            return f"{self.platform}: ok ({cache}) -> {self.package.root}"
        text = f"{self.platform}: FAILED in {self.stage}: {self.message}"
        if self.diagnostic:
            indented = "\n".join(f"    {line}" for line in self.diagnostic.splitlines())
            text = f"{text}\n{indented}"
        return text


@dataclass(slots=True)
class MatrixReport:
    results: List[PlatformResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> List[PlatformResult]:
        return [result for result in self.results if not result.ok]

    @property
    def packages(self) -> Dict[str, Package]:
        return {str(result.platform): result.package for result in self.results if result.package is not None}

    def lines(self) -> List[str]:
        return [result.describe() for result in self.results]


class PlatformMatrixEvaluator:
    """Builds the project for each requested platform independently.

    Platforms run concurrently up to ``jobs``. A failure is recorded on its
    platform's result and never cancels or fails sibling platforms.
    """

    def __init__(
        self,
        *,
        spec: ToolchainSpec,
        manifest: ProjectManifest,
        source_root: Path,
        store: ArtifactStore,
        runner: CommandRunner,
        toolchains: ToolchainProvider,
        output_root: Path,
        source_filter: SourceFilter | None = None,
        dependency_builder: DependencyCacheBuilder | None = None,
        package_builder: PackageBuilder | None = None,
        native: NativeEnvironment | None = None,
        jobs: int = 4,
        use_cache: bool = True,
    ) -> None:
        self._spec = spec
        self._manifest = manifest
        self._source_root = source_root
        self._store = store
        self._runner = runner
        self._toolchains = toolchains
        self._output_root = output_root
        self._source_filter = source_filter or SourceFilter(
            ignore=manifest.source.ignore,
            include=manifest.source.include,
        )
        self._dependency_builder = dependency_builder or DependencyCacheBuilder(
            source_root=source_root,
            dependency_inputs=manifest.source.dependency_inputs,
        )
        self._package_builder = package_builder or PackageBuilder()
        self._native = native or NativeEnvironment(SearchPathResolver())
        self._jobs = max(1, jobs)
        self._use_cache = use_cache

    def _context(self, platform: PlatformId) -> BuildContext:
        # Missing native libraries fail before anything is compiled.
        native_environment = self._native.variables(self._manifest.native, platform, stage="dependencies")
        return BuildContext(
            spec=self._spec,
            platform=platform,
            store=self._store,
            runner=self._runner,
            output_root=self._output_root,
            use_cache=self._use_cache,
            native_environment=native_environment,
        )

    def build_platform(self, platform: PlatformId) -> PlatformResult:
        result = PlatformResult(platform=platform)
        try:
            toolchain = self._toolchains.resolve(self._spec, platform)
            context = self._context(platform)
            tree = self._source_filter.filter(self._source_root, platform=str(platform))
            outcome = self._dependency_builder.obtain(context, self._manifest, toolchain)
            result.dependency_key = outcome.artifacts.key
            result.dependency_hit = outcome.hit
            result.package = self._package_builder.build(context, tree, outcome.artifacts, self._manifest, toolchain)
        except DepforgeError as exc:
            logger.error("[%s] %s failed: %s", platform, exc.stage, exc.message)
            result.stage = exc.stage
            result.message = exc.message
            result.diagnostic = exc.diagnostic
        return result

    def evaluate(self, platforms: Sequence[PlatformId]) -> MatrixReport:
        results: Dict[PlatformId, PlatformResult] = {}
        if not platforms:
            return MatrixReport()

        with ThreadPoolExecutor(max_workers=min(self._jobs, len(platforms))) as executor:
            futures = {executor.submit(self.build_platform, platform): platform for platform in platforms}
            for future in as_completed(futures):
                platform = futures[future]
                try:
                    results[platform] = future.result()
                except Exception as exc:
                    logger.exception("[%s] unexpected error", platform)
                    results[platform] = PlatformResult(
                        platform=platform,
                        stage="internal",
                        message=f"{type(exc).__name__}: {exc}",
                    )

        return MatrixReport(results=[results[platform] for platform in platforms])


__all__ = [
    "MatrixReport",
    "PlatformMatrixEvaluator",
    "PlatformResult",
    "ToolchainProvider",
]
