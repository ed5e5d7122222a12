"""Compile external dependencies once per fingerprint and reuse them."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Sequence
import hashlib
import json
import logging
import shutil

from core.command_runner import CommandError

from .artifact_store import CacheKey, DependencyArtifactSet
from .context import BuildContext
from .errors import DependencyBuildFailed, SourceUnreadable
from .manifest import Dependency, ProjectManifest
from .toolchains import CompileRequest, ToolchainCapability

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "depforge.lock.json"


def dependency_fingerprint(dependencies: Iterable[Dependency]) -> str:
    """Stable hash over dependency names, versions and integrity values.

    Declaration order does not matter; project sources never take part.
    """

    entries = sorted({(dep.name, dep.version, dep.integrity) for dep in dependencies})
    canonical = json.dumps(
        [{"name": name, "version": version, "integrity": integrity} for name, version, integrity in entries],
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def cache_key_for(context: BuildContext, dependencies: Iterable[Dependency]) -> CacheKey:
    return CacheKey(
        platform=context.platform_name,
        toolchain=context.spec.identity,
        fingerprint=dependency_fingerprint(dependencies),
    )


@dataclass(frozen=True, slots=True)
class CacheOutcome:
    artifacts: DependencyArtifactSet
    hit: bool


class DependencyCacheBuilder:
    """Returns the :class:`DependencyArtifactSet` for a manifest, compiling on a miss.

    Misses are serialized per cache key: the first caller compiles while
    the others wait on the key's lock and then read the published entry.
    ``dependency_inputs`` names files (such as ``Cargo.lock``) copied next
    to the generated lock file so the toolchain can fetch the locked graph.
    """

    def __init__(self, *, source_root: Path | None = None, dependency_inputs: Sequence[str] = ()) -> None:
        self._source_root = source_root
        self._dependency_inputs = list(dependency_inputs)

    def obtain(
        self,
        context: BuildContext,
        manifest: ProjectManifest,
        toolchain: ToolchainCapability,
    ) -> CacheOutcome:
        key = cache_key_for(context, manifest.dependencies)
        store = context.store

        if context.use_cache:
            cached = store.load(key)
            if cached is not None:
                logger.info("[%s] dependency cache hit %s", context.platform, key.fingerprint[:12])
                return CacheOutcome(artifacts=cached, hit=True)

        with store.locks.hold(key.lock_name):
            if context.use_cache:
                cached = store.load(key)
                if cached is not None:
                    logger.info("[%s] dependency artifacts built concurrently, reusing %s", context.platform, key.fingerprint[:12])
                    return CacheOutcome(artifacts=cached, hit=True)
            logger.info("[%s] dependency cache miss %s, compiling", context.platform, key.fingerprint[:12])
            return CacheOutcome(artifacts=self._build(context, manifest, toolchain, key), hit=False)

    def _stage_inputs(self, context: BuildContext, manifest: ProjectManifest, staging: Path) -> None:
        lock_payload = {
            "name": manifest.name,
            "dependencies": [
                {"name": dep.name, "version": dep.version, "integrity": dep.integrity}
                for dep in sorted(manifest.dependencies, key=lambda dep: (dep.name, dep.version))
            ],
        }
        (staging / LOCK_FILE_NAME).write_text(json.dumps(lock_payload, indent=2, sort_keys=True), encoding="utf-8")

        for relative in self._dependency_inputs:
            if self._source_root is None:
                break
            source = self._source_root / PurePosixPath(relative)
            try:
                content = source.read_bytes()
            except OSError as exc:
                raise SourceUnreadable(
                    f"Dependency input '{relative}' could not be read",
                    platform=context.platform_name,
                    diagnostic=str(exc),
                ) from exc
            target = staging / PurePosixPath(relative)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

    def _build(
        self,
        context: BuildContext,
        manifest: ProjectManifest,
        toolchain: ToolchainCapability,
        key: CacheKey,
    ) -> DependencyArtifactSet:
        workdir = context.scratch_dir("deps")
        source_dir = workdir / "src"
        output_dir = workdir / "out"
        source_dir.mkdir()
        try:
            self._stage_inputs(context, manifest, source_dir)
            request = CompileRequest(
                stage="deps",
                source_dir=source_dir,
                output_dir=output_dir,
                name=manifest.name,
                version=manifest.version,
                environment=dict(context.native_environment),
            )
            try:
                toolchain.compile(request)
            except CommandError as exc:
                raise DependencyBuildFailed(
                    f"Compiling {len(manifest.dependencies)} dependencies failed",
                    platform=context.platform_name,
                    diagnostic=exc.result.diagnostic,
                ) from exc

            if context.dry_run:
                # Nothing was compiled, so nothing may be cached.
                return DependencyArtifactSet(key=key, root=context.store.unpacked_dir(key), files=(), archive_sha256="")
            output_dir.mkdir(parents=True, exist_ok=True)
            return context.store.publish(
                key,
                output_dir,
                metadata={"project": manifest.name, "dependencies": len(manifest.dependencies)},
            )
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


__all__ = [
    "CacheOutcome",
    "DependencyCacheBuilder",
    "LOCK_FILE_NAME",
    "cache_key_for",
    "dependency_fingerprint",
]
