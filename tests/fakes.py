"""Test doubles shared by the depforge test modules."""
from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Dict, Iterable
import threading
import time

from core.command_runner import CommandError, CommandResult
from depforge.errors import ToolchainUnavailable
from depforge.manifest import Dependency, ProjectManifest
from depforge.platforms import PlatformId
from depforge.toolchains import CompileRequest, CompileResult, ToolchainSpec


def make_spec(platforms: Iterable[str] = ("linux-x64", "macos-arm64"), *, version: str = "1.0.0") -> ToolchainSpec:
    triples = {
        "linux-x64": "x86_64-unknown-linux-gnu",
        "linux-arm64": "aarch64-unknown-linux-gnu",
        "macos-x64": "x86_64-apple-darwin",
        "macos-arm64": "aarch64-apple-darwin",
    }
    return ToolchainSpec(
        name="fake",
        version=version,
        targets={name: triples[name] for name in platforms},
        commands={"deps": [["fake-build", "deps"]], "package": [["fake-build", "package"]]},
    )


def make_manifest(*dependencies: Dependency, name: str = "demo", version: str = "0.1.0") -> ProjectManifest:
    return ProjectManifest(
        name=name,
        version=version,
        toolchain="fake",
        source_dir=".",
        dependencies=list(dependencies)
        or [
            Dependency(name="serde", version="1.0.200", integrity="sha256-aaa"),
            Dependency(name="libc", version="0.2.150", integrity="sha256-bbb"),
        ],
    )


class FakeToolchain:
    """Writes predictable outputs and counts compile calls per stage."""

    def __init__(self, platform: PlatformId, *, fail_stage: str | None = None, delay: float = 0.0) -> None:
        self.platform = platform
        self.fail_stage = fail_stage
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self.environments: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def compile(self, request: CompileRequest) -> CompileResult:
        with self._lock:
            self.calls[request.stage] += 1
            self.environments[request.stage] = dict(request.environment)
        if self.delay:
            time.sleep(self.delay)
        if request.stage == self.fail_stage:
            raise CommandError(
                CommandResult(
                    command=["fake-build", request.stage],
                    returncode=101,
                    stdout="",
                    stderr=f"error[E0425]: {request.stage} failed on {self.platform}",
                )
            )

        request.output_dir.mkdir(parents=True, exist_ok=True)
        if request.stage == "deps":
            lock = (request.source_dir / "depforge.lock.json").read_text(encoding="utf-8")
            (request.output_dir / "lib").mkdir(exist_ok=True)
            (request.output_dir / "lib" / "libdeps.rlib").write_text(lock, encoding="utf-8")
        else:
            sources = sorted(
                path.relative_to(request.source_dir).as_posix()
                for path in request.source_dir.rglob("*")
                if path.is_file()
            )
            deps = sorted(path.name for path in Path(request.deps_dir).rglob("*") if path.is_file()) if request.deps_dir else []
            (request.output_dir / "bin").mkdir(exist_ok=True)
            (request.output_dir / "bin" / request.name).write_text(
                "\n".join([f"platform={self.platform}", *sources, *deps]),
                encoding="utf-8",
            )
        return CompileResult(output_dir=request.output_dir, commands=[["fake-build", request.stage]])


class FakeToolchainProvider:
    """Hands out one :class:`FakeToolchain` per platform."""

    def __init__(
        self,
        *,
        fail: Dict[str, str] | None = None,
        unavailable: Iterable[str] = (),
        delay: float = 0.0,
    ) -> None:
        self._fail = dict(fail or {})
        self._unavailable = set(unavailable)
        self._delay = delay
        self._lock = threading.Lock()
        self.toolchains: Dict[str, FakeToolchain] = {}

    def resolve(self, spec: ToolchainSpec, platform: PlatformId) -> FakeToolchain:
        name = str(platform)
        if name in self._unavailable or not spec.supports(platform):
            raise ToolchainUnavailable(f"fake toolchain missing for {name}", platform=name)
        with self._lock:
            toolchain = self.toolchains.get(name)
            if toolchain is None:
                toolchain = FakeToolchain(platform, fail_stage=self._fail.get(name), delay=self._delay)
                self.toolchains[name] = toolchain
            return toolchain

    def compiles(self, stage: str) -> Dict[str, int]:
        return {name: toolchain.calls[stage] for name, toolchain in sorted(self.toolchains.items())}
