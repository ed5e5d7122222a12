"""Configuration loading for the depforge CLI."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Mapping

import yaml

from core.config_loader import (
    collect_config_files,
    load_config_file,
    merge_mappings,
    normalize_string_list,
    resolve_config_paths,
)

from .errors import ConfigurationError
from .manifest import ProjectManifest
from .platforms import DEFAULT_MATRIX, PlatformId, parse_platforms
from .toolchains import ToolchainRegistry, ToolchainSpec

CONFIG_FILE_NAMES = ("config", "toolchains", "project")
_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"
    log_file: str | None = None
    store_dir: str = ".depforge/store"
    output_dir: str = ".depforge/out"
    jobs: int = 4
    platforms: List[PlatformId] = field(default_factory=lambda: list(DEFAULT_MATRIX))
    shell: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        global_section = data.get("global", {}) if isinstance(data, Mapping) else {}
        if not isinstance(global_section, Mapping):
            raise ConfigurationError("[global] must be a table")

        log_level = str(global_section.get("log_level", "info")).lower()
        if log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"global.log_level '{log_level}' is not one of {', '.join(sorted(_LOG_LEVELS))}")

        try:
            jobs = int(global_section.get("jobs", 4))
        except (TypeError, ValueError):
            raise ConfigurationError("global.jobs must be an integer") from None
        if jobs < 1:
            raise ConfigurationError("global.jobs must be at least 1")

        try:
            platform_names = normalize_string_list(global_section.get("platforms"), field_name="global.platforms")
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc
        platforms = parse_platforms(platform_names) if platform_names else list(DEFAULT_MATRIX)

        log_file = global_section.get("log_file")
        shell = global_section.get("shell")
        return cls(
            log_level=log_level,
            log_file=str(log_file) if log_file else None,
            store_dir=str(global_section.get("store_dir", ".depforge/store")),
            output_dir=str(global_section.get("output_dir", ".depforge/out")),
            jobs=jobs,
            platforms=platforms,
            shell=str(shell) if shell else None,
        )


@dataclass(slots=True)
class ConfigurationStore:
    root: Path
    global_config: GlobalConfig
    manifest: ProjectManifest
    toolchains: ToolchainRegistry
    config_dirs: tuple[Path, ...] = field(default_factory=tuple)

    @classmethod
    def from_directory(cls, root: Path) -> "ConfigurationStore":
        return cls.from_directories(root, [root / "config"])

    @classmethod
    def from_directories(cls, root: Path, directories: Iterable[Path]) -> "ConfigurationStore":
        resolved_dirs, missing_dirs = resolve_config_paths(root, directories)
        if not resolved_dirs:
            missing_display = ", ".join(str(path) for path in missing_dirs) or "<none>"
            raise ConfigurationError(f"No configuration directories found. Missing: {missing_display}")

        global_data: Mapping[str, Any] = {}
        project_data: Mapping[str, Any] = {}
        toolchain_registry = ToolchainRegistry.with_builtins()

        try:
            for config_dir in resolved_dirs:
                files = collect_config_files(config_dir, names=CONFIG_FILE_NAMES)
                global_path = files.get("config")
                if global_path is not None:
                    global_data = merge_mappings(global_data, load_config_file(global_path))

                toolchains_path = files.get("toolchains")
                if toolchains_path is not None:
                    toolchain_registry.merge_from_mapping(load_config_file(toolchains_path))

                project_path = files.get("project")
                if project_path is not None:
                    project_data = merge_mappings(project_data, load_config_file(project_path))
        except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
            raise ConfigurationError(str(exc)) from exc

        if not project_data:
            raise ConfigurationError("No project configuration (project.toml/json/yaml) found in the provided directories")

        try:
            manifest = ProjectManifest.from_mapping(project_data, root=root)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc

        return cls(
            root=root,
            config_dirs=resolved_dirs,
            global_config=GlobalConfig.from_mapping(global_data),
            manifest=manifest,
            toolchains=toolchain_registry,
        )

    def toolchain_spec(self, override: str | None = None) -> ToolchainSpec:
        name = override or self.manifest.toolchain
        if not name:
            raise ConfigurationError("No toolchain specified. Set project.toolchain or pass --toolchain.")
        return self.toolchains.get(name)

    def resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else (self.root / path).resolve()

    @property
    def store_dir(self) -> Path:
        return self.resolve_path(self.global_config.store_dir)

    @property
    def output_dir(self) -> Path:
        return self.resolve_path(self.global_config.output_dir)

    @property
    def source_root(self) -> Path:
        return self.manifest.source_root(self.root)

    def validate(self) -> list[str]:
        """Return a list of problems that would make a build fail or misbehave."""

        errors: list[str] = []
        errors.extend(self.toolchains.validate())
        try:
            spec = self.toolchain_spec()
        except ConfigurationError as exc:
            errors.append(exc.message)
        else:
            for platform in self.global_config.platforms:
                if not spec.supports(platform):
                    errors.append(f"Platform '{platform}' is not supported by toolchain '{spec.name}'")
        if not self.source_root.is_dir():
            errors.append(f"project.source_dir '{self.source_root}' does not exist")
        for relative in self.manifest.source.dependency_inputs:
            if not (self.source_root / relative).is_file():
                errors.append(f"source.dependency_inputs entry '{relative}' does not exist")
        names = [library.name for library in self.manifest.native]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            errors.append(f"Native libraries declared more than once: {', '.join(duplicates)}")
        return errors


__all__ = ["ConfigurationStore", "GlobalConfig"]
