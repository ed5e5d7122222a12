"""Pinned toolchain specifications and their per-platform resolution."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Protocol, Sequence
import hashlib
import json
import logging
import os
import re

from core.command_runner import CommandError, CommandRunner
from core.config_loader import normalize_string_list, normalize_string_mapping
from core.locking import StoreLocks

from .errors import ConfigurationError, ToolchainUnavailable
from .platforms import PlatformId

logger = logging.getLogger(__name__)

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")

STAGES = ("deps", "package")
_STAGE_VARIABLES = frozenset({"name", "version", "source_dir", "output_dir", "deps_dir"})


def expand_placeholders(value: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders in ``value`` from ``variables``."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            available = ", ".join(sorted(variables)) or "<none>"
            raise ConfigurationError(f"Unknown placeholder '{{{{{key}}}}}' in '{value}'. Available: {available}")
        return variables[key]

    return _PLACEHOLDER_PATTERN.sub(_replace, value)


def _normalize_commands(value: Any, *, field_name: str) -> List[List[str]]:
    """Accept one argv list or a list of argv lists."""

    if value is None:
        return []
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        if all(isinstance(item, str) for item in value):
            argv = normalize_string_list(value, field_name=field_name)
            return [argv] if argv else []
        commands: List[List[str]] = []
        for item in value:
            argv = normalize_string_list(item, field_name=field_name)
            if argv:
                commands.append(argv)
        return commands
    raise ConfigurationError(f"{field_name} must be a list of arguments or a list of commands")


@dataclass(slots=True)
class ToolchainSpec:
    name: str
    version: str
    channel: str = "stable"
    targets: Dict[str, str] = field(default_factory=dict)
    components: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    commands: Dict[str, List[List[str]]] = field(default_factory=dict)
    install: List[List[str]] = field(default_factory=list)
    root: str | None = None
    bin_dir: str = "bin"
    description: str | None = None

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "ToolchainSpec":
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Toolchain '{name}' definition must be a table")

        allowed_keys = {
            "description",
            "channel",
            "version",
            "targets",
            "components",
            "environment",
            "commands",
            "install",
            "root",
            "bin_dir",
        }
        unknown = {str(key) for key in data.keys() if str(key) not in allowed_keys}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Toolchain '{name}' contains unknown keys: {joined}")

        version = data.get("version")
        if not version or not str(version).strip():
            raise ConfigurationError(f"Toolchain '{name}' must pin a version")

        targets: Dict[str, str] = {}
        targets_section = data.get("targets", {})
        if not isinstance(targets_section, Mapping):
            raise ConfigurationError(f"Toolchain '{name}' targets must map platforms to target triples")
        for raw_platform, triple in targets_section.items():
            targets[str(PlatformId.parse(str(raw_platform)))] = str(triple)

        commands: Dict[str, List[List[str]]] = {}
        commands_section = data.get("commands", {})
        if not isinstance(commands_section, Mapping):
            raise ConfigurationError(f"Toolchain '{name}' commands must be a table")
        for stage, value in commands_section.items():
            stage_name = str(stage).strip().lower()
            if stage_name not in STAGES:
                raise ConfigurationError(f"Toolchain '{name}' has commands for unknown stage '{stage}'")
            commands[stage_name] = _normalize_commands(value, field_name=f"toolchains.{name}.commands.{stage_name}")

        root = data.get("root")
        description = data.get("description")
        try:
            return cls(
                name=name,
                version=str(version).strip(),
                channel=str(data.get("channel", "stable")).strip(),
                targets=targets,
                components=normalize_string_list(data.get("components"), field_name=f"toolchains.{name}.components"),
                environment=normalize_string_mapping(data.get("environment"), field_name=f"toolchains.{name}.environment"),
                commands=commands,
                install=_normalize_commands(data.get("install"), field_name=f"toolchains.{name}.install"),
                root=str(root) if root else None,
                bin_dir=str(data.get("bin_dir", "bin")),
                description=str(description) if description is not None else None,
            )
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc

    def merge(self, other: "ToolchainSpec") -> "ToolchainSpec":
        environment = dict(self.environment)
        environment.update(other.environment)
        targets = dict(self.targets)
        targets.update(other.targets)
        commands = {stage: [list(argv) for argv in argvs] for stage, argvs in self.commands.items()}
        commands.update({stage: [list(argv) for argv in argvs] for stage, argvs in other.commands.items()})
        return ToolchainSpec(
            name=self.name,
            version=other.version or self.version,
            channel=other.channel or self.channel,
            targets=targets,
            components=list(other.components or self.components),
            environment=environment,
            commands=commands,
            install=[list(argv) for argv in (other.install or self.install)],
            root=other.root or self.root,
            bin_dir=other.bin_dir or self.bin_dir,
            description=other.description or self.description,
        )

    def to_payload(self) -> Dict[str, Any]:
        # The description is documentation only and does not affect builds.
        return {
            "name": self.name,
            "version": self.version,
            "channel": self.channel,
            "targets": dict(sorted(self.targets.items())),
            "components": sorted(self.components),
            "environment": dict(sorted(self.environment.items())),
            "commands": {stage: self.commands[stage] for stage in sorted(self.commands)},
            "install": self.install,
            "root": self.root,
            "bin_dir": self.bin_dir,
        }

    @property
    def identity(self) -> str:
        canonical = json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    def supports(self, platform: PlatformId) -> bool:
        return str(platform) in self.targets

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.targets:
            errors.append(f"Toolchain '{self.name}' declares no target platforms")
        for stage in STAGES:
            if not self.commands.get(stage):
                errors.append(f"Toolchain '{self.name}' has no '{stage}' commands")
        return errors


@dataclass(slots=True)
class CompileRequest:
    stage: str
    source_dir: Path
    output_dir: Path
    name: str
    version: str
    deps_dir: Path | None = None
    # Native library search variables shared with the development shell.
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CompileResult:
    output_dir: Path
    commands: List[List[str]]


class ToolchainCapability(Protocol):
    """What the build stages need from a toolchain."""

    platform: PlatformId

    def compile(self, request: CompileRequest) -> CompileResult:
        ...


@dataclass(slots=True)
class Toolchain:
    spec: ToolchainSpec
    platform: PlatformId
    triple: str
    root: Path
    runner: CommandRunner

    @property
    def bin_path(self) -> Path:
        return self.root / self.spec.bin_dir

    def variables(self, request: CompileRequest | None = None) -> Dict[str, str]:
        variables = {
            "platform": str(self.platform),
            "triple": self.triple,
            "toolchain.root": str(self.root),
            "toolchain.version": self.spec.version,
            "toolchain.channel": self.spec.channel,
        }
        if request is not None:
            variables.update(
                {
                    "name": request.name,
                    "version": request.version,
                    "source_dir": str(request.source_dir),
                    "output_dir": str(request.output_dir),
                    "deps_dir": str(request.deps_dir) if request.deps_dir else "",
                }
            )
        return variables

    def environment(self, request: CompileRequest | None = None) -> Dict[str, str]:
        """Toolchain variables plus ``PATH`` with the toolchain binaries first."""

        variables = self.variables(request)
        environment: Dict[str, str] = {}
        for key, value in self.spec.environment.items():
            if request is None and _STAGE_VARIABLES.intersection(_PLACEHOLDER_PATTERN.findall(value)):
                # Stage paths only exist while compiling.
                continue
            environment[key] = expand_placeholders(value, variables)
        if request is not None:
            environment.update(request.environment)
        inherited = environment.get("PATH") or os.environ.get("PATH", "")
        environment["PATH"] = os.pathsep.join(part for part in (str(self.bin_path), inherited) if part)
        return environment

    def compile(self, request: CompileRequest) -> CompileResult:
        templates = self.spec.commands.get(request.stage)
        if not templates:
            raise ToolchainUnavailable(
                f"Toolchain '{self.spec.name}' has no '{request.stage}' commands",
                platform=str(self.platform),
            )

        variables = self.variables(request)
        environment = self.environment(request)
        request.output_dir.mkdir(parents=True, exist_ok=True)
        executed: List[List[str]] = []
        for template in templates:
            argv = [expand_placeholders(part, variables) for part in template]
            executed.append(argv)
            # CommandError propagates to the stage, which owns the error type.
            self.runner.run(
                argv,
                cwd=request.source_dir,
                env=environment,
                note=f"{self.platform} {request.stage}",
            )
        return CompileResult(output_dir=request.output_dir, commands=executed)


class ToolchainRegistry:
    def __init__(self, specs: Mapping[str, ToolchainSpec] | None = None) -> None:
        self._specs: Dict[str, ToolchainSpec] = {}
        if specs:
            self.merge(specs)

    @classmethod
    def with_builtins(cls) -> "ToolchainRegistry":
        return cls(_build_builtin_specs())

    def merge(self, specs: Mapping[str, ToolchainSpec]) -> None:
        for name, spec in specs.items():
            key = name.lower()
            existing = self._specs.get(key)
            self._specs[key] = existing.merge(spec) if existing else spec

    def merge_from_mapping(self, mapping: Mapping[str, Any]) -> None:
        if not mapping:
            return
        toolchains_section = mapping.get("toolchains")
        candidates = toolchains_section if isinstance(toolchains_section, Mapping) else mapping
        parsed: Dict[str, ToolchainSpec] = {}
        for raw_name, raw_value in candidates.items():
            name = str(raw_name).strip().lower()
            if not name or not isinstance(raw_value, Mapping):
                continue
            existing = self._specs.get(name)
            if existing is not None and "version" not in raw_value:
                raw_value = {**raw_value, "version": existing.version}
            parsed[name] = ToolchainSpec.from_mapping(name, raw_value)
        self.merge(parsed)

    def get(self, name: str) -> ToolchainSpec:
        spec = self._specs.get(name.lower())
        if spec is None:
            available = ", ".join(sorted(self._specs)) or "<none>"
            raise ConfigurationError(f"Unknown toolchain '{name}'. Available toolchains: {available}")
        return spec

    def available(self) -> Iterable[str]:
        return self._specs.keys()

    def validate(self) -> list[str]:
        errors: list[str] = []
        for spec in self._specs.values():
            errors.extend(spec.validate())
        return errors


def _build_builtin_specs() -> Dict[str, ToolchainSpec]:
    raw: Dict[str, Mapping[str, Any]] = {
        "rust": {
            "description": "Rust stable toolchain managed by rustup",
            "channel": "stable",
            "version": "1.83.0",
            "targets": {
                "linux-x64": "x86_64-unknown-linux-gnu",
                "linux-arm64": "aarch64-unknown-linux-gnu",
                "macos-x64": "x86_64-apple-darwin",
                "macos-arm64": "aarch64-apple-darwin",
            },
            "components": ["rustc", "cargo", "rust-std"],
            "environment": {
                "CARGO_TARGET_DIR": "{{output_dir}}",
                "RUSTUP_TOOLCHAIN": "{{toolchain.version}}",
            },
            "install": [
                ["rustup", "toolchain", "install", "{{toolchain.version}}", "--profile", "minimal", "--target", "{{triple}}"],
            ],
            "commands": {
                "deps": [["cargo", "build", "--release", "--locked", "--target", "{{triple}}"]],
                "package": [
                    ["cargo", "build", "--release", "--locked", "--target", "{{triple}}"],
                ],
            },
        },
    }
    return {name: ToolchainSpec.from_mapping(name, data) for name, data in raw.items()}


class ToolchainResolver:
    """Resolves a :class:`ToolchainSpec` to a runnable :class:`Toolchain` per platform.

    The first resolution of a ``(spec, platform)`` pair runs the spec's
    install commands and writes a stamp under
    ``<store>/toolchains/<identity>/<platform>``; later resolutions reuse it.
    """

    def __init__(self, store_root: Path, runner: CommandRunner, *, locks: StoreLocks | None = None) -> None:
        self._store_root = store_root
        self._runner = runner
        self._locks = locks or StoreLocks(store_root / "locks")
        self._resolved: Dict[str, Toolchain] = {}

    def _materialization_dir(self, spec: ToolchainSpec, platform: PlatformId) -> Path:
        return self._store_root / "toolchains" / spec.identity / str(platform)

    def resolve(self, spec: ToolchainSpec, platform: PlatformId) -> Toolchain:
        triple = spec.targets.get(str(platform))
        if triple is None:
            supported = ", ".join(sorted(spec.targets)) or "<none>"
            raise ToolchainUnavailable(
                f"Toolchain '{spec.name}' {spec.version} does not support {platform} (supported: {supported})",
                platform=str(platform),
            )

        key = f"toolchain-{spec.identity}-{platform}"
        cached = self._resolved.get(key)
        if cached is not None:
            return cached

        with self._locks.hold(key):
            cached = self._resolved.get(key)
            if cached is not None:
                return cached
            toolchain = self._materialize(spec, platform, triple)
            self._resolved[key] = toolchain
            return toolchain

    def _materialize(self, spec: ToolchainSpec, platform: PlatformId, triple: str) -> Toolchain:
        directory = self._materialization_dir(spec, platform)
        variables = {
            "platform": str(platform),
            "triple": triple,
            "toolchain.root": str(directory),
            "toolchain.version": spec.version,
            "toolchain.channel": spec.channel,
        }
        root = Path(expand_placeholders(spec.root, variables)) if spec.root else directory
        toolchain = Toolchain(spec=spec, platform=platform, triple=triple, root=root, runner=self._runner)

        stamp = directory / "toolchain.json"
        if stamp.is_file():
            logger.debug("Toolchain %s %s for %s already materialized", spec.name, spec.version, platform)
            return toolchain

        logger.info("Materializing toolchain %s %s for %s", spec.name, spec.version, platform)
        directory.mkdir(parents=True, exist_ok=True)
        for template in spec.install:
            argv = [expand_placeholders(part, variables) for part in template]
            try:
                self._runner.run(argv, cwd=directory, note=f"{platform} toolchain")
            except CommandError as exc:
                raise ToolchainUnavailable(
                    f"Installing toolchain '{spec.name}' {spec.version} failed",
                    platform=str(platform),
                    diagnostic=exc.result.diagnostic,
                ) from exc

        if self._runner.dry_run:
            return toolchain

        payload = {"spec": spec.to_payload(), "platform": str(platform), "triple": triple, "root": str(root)}
        partial = stamp.with_suffix(".json.partial")
        partial.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(partial, stamp)
        return toolchain


__all__ = [
    "CompileRequest",
    "CompileResult",
    "STAGES",
    "Toolchain",
    "ToolchainCapability",
    "ToolchainRegistry",
    "ToolchainResolver",
    "ToolchainSpec",
    "expand_placeholders",
]
