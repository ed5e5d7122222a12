"""Project manifest: identity, locked dependencies, native libraries and shell tools."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import tomllib

from core.config_loader import normalize_string_list, normalize_string_mapping

from .errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class Dependency:
    name: str
    version: str
    integrity: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Dependency":
        if not isinstance(data, Mapping):
            raise ConfigurationError("[[dependencies]] entries must be tables")
        missing = [key for key in ("name", "version", "integrity") if not str(data.get(key) or "").strip()]
        if missing:
            label = data.get("name") or "<unnamed>"
            raise ConfigurationError(f"Dependency '{label}' is missing: {', '.join(missing)}")
        return cls(
            name=str(data["name"]).strip(),
            version=str(data["version"]).strip(),
            integrity=str(data["integrity"]).strip(),
        )


@dataclass(frozen=True, slots=True)
class NativeLibrary:
    """A native library the project links against.

    ``pkg_config`` names the pkg-config module used to locate it and
    ``libraries`` the linker names (``ssl`` for ``libssl.so``) used when
    searching directories directly.
    """

    name: str
    pkg_config: str | None = None
    libraries: tuple[str, ...] = ()
    search_paths: tuple[str, ...] = ()

    @classmethod
    def from_value(cls, value: Any) -> "NativeLibrary":
        if isinstance(value, str):
            name = value.strip()
            if not name:
                raise ConfigurationError("[[native]] entries cannot be empty strings")
            return cls(name=name, pkg_config=name, libraries=(name,))
        if not isinstance(value, Mapping):
            raise ConfigurationError("[[native]] entries must be strings or tables")
        name = str(value.get("name") or "").strip()
        if not name:
            raise ConfigurationError("[[native]] entries must include a non-empty 'name'")
        pkg_config_value = value.get("pkg_config", name)
        pkg_config = str(pkg_config_value).strip() if pkg_config_value else ""
        libraries = normalize_string_list(value.get("libraries"), field_name="native.libraries") or [name]
        search_paths = normalize_string_list(value.get("search_paths"), field_name="native.search_paths")
        return cls(
            name=name,
            pkg_config=pkg_config or None,
            libraries=tuple(libraries),
            search_paths=tuple(search_paths),
        )


@dataclass(slots=True)
class ShellSettings:
    name: str
    tools: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SourceRules:
    ignore: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    dependency_inputs: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ProjectManifest:
    name: str
    version: str
    toolchain: str | None
    source_dir: str
    dependencies: List[Dependency] = field(default_factory=list)
    native: List[NativeLibrary] = field(default_factory=list)
    shell: ShellSettings | None = None
    source: SourceRules = field(default_factory=SourceRules)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, root: Path) -> "ProjectManifest":
        project_section = data.get("project")
        if not isinstance(project_section, Mapping):
            raise ConfigurationError("[project] section is required in project configuration")

        source_dir = str(project_section.get("source_dir") or ".")
        name = project_section.get("name")
        version = project_section.get("version")
        dependencies: List[Dependency] = []

        cargo = project_section.get("cargo")
        if cargo:
            cargo_root = (root / source_dir).resolve()
            cargo_name, cargo_version, cargo_dependencies = load_cargo_metadata(cargo_root)
            name = name or cargo_name
            version = version or cargo_version
            dependencies.extend(cargo_dependencies)

        if not name or not version:
            raise ConfigurationError("project.name and project.version are required")

        dependencies_section = data.get("dependencies", [])
        if isinstance(dependencies_section, Sequence) and not isinstance(dependencies_section, (str, bytes)):
            dependencies.extend(Dependency.from_mapping(entry) for entry in dependencies_section)
        else:
            raise ConfigurationError("[dependencies] must be an array of tables")

        seen: Dict[str, Dependency] = {}
        for dependency in dependencies:
            marker = f"{dependency.name}@{dependency.version}"
            if marker in seen and seen[marker].integrity != dependency.integrity:
                raise ConfigurationError(f"Dependency '{marker}' is declared with conflicting integrity values")
            seen[marker] = dependency

        native_section = data.get("native", [])
        if not isinstance(native_section, Sequence) or isinstance(native_section, (str, bytes)):
            raise ConfigurationError("[native] must be an array of tables or strings")
        native = [NativeLibrary.from_value(entry) for entry in native_section]

        shell: ShellSettings | None = None
        shell_section = data.get("shell")
        if isinstance(shell_section, Mapping):
            shell = ShellSettings(
                name=str(shell_section.get("name") or f"{name}-shell"),
                tools=normalize_string_list(shell_section.get("tools"), field_name="shell.tools"),
                environment=normalize_string_mapping(shell_section.get("environment"), field_name="shell.environment"),
            )

        source = SourceRules()
        source_section = data.get("source")
        if isinstance(source_section, Mapping):
            source = SourceRules(
                ignore=normalize_string_list(source_section.get("ignore"), field_name="source.ignore"),
                include=normalize_string_list(source_section.get("include"), field_name="source.include"),
                dependency_inputs=normalize_string_list(
                    source_section.get("dependency_inputs"),
                    field_name="source.dependency_inputs",
                ),
            )

        toolchain = project_section.get("toolchain")
        return cls(
            name=str(name),
            version=str(version),
            toolchain=str(toolchain).strip().lower() if toolchain else None,
            source_dir=source_dir,
            dependencies=list(seen.values()),
            native=native,
            shell=shell,
            source=source,
        )

    def source_root(self, workspace: Path) -> Path:
        path = Path(self.source_dir).expanduser()
        return path if path.is_absolute() else (workspace / path).resolve()


def _read_toml(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        raise ConfigurationError(f"'{path}' not found") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"'{path}' is not valid TOML: {exc}") from exc


def load_cargo_metadata(crate_root: Path) -> tuple[str, str, List[Dependency]]:
    """Read the crate name and version from ``Cargo.toml`` and locked packages from ``Cargo.lock``.

    Only packages with a ``source`` are external dependencies; path members
    of the workspace are project source. Registry packages use their
    ``checksum`` as integrity and git packages their pinned source URL.
    """

    cargo_toml = _read_toml(crate_root / "Cargo.toml")
    package = cargo_toml.get("package")
    if not isinstance(package, Mapping) or not package.get("name"):
        raise ConfigurationError(f"'{crate_root / 'Cargo.toml'}' has no [package] name")
    version = package.get("version", "0.0.0")
    if isinstance(version, Mapping):
        workspace = cargo_toml.get("workspace", {})
        version = workspace.get("package", {}).get("version", "0.0.0") if isinstance(workspace, Mapping) else "0.0.0"

    dependencies: List[Dependency] = []
    lock_path = crate_root / "Cargo.lock"
    if lock_path.exists():
        lock = _read_toml(lock_path)
        for entry in lock.get("package", []):
            source = entry.get("source")
            if not source:
                continue
            integrity = entry.get("checksum") or source
            dependencies.append(
                Dependency(name=str(entry["name"]), version=str(entry["version"]), integrity=str(integrity))
            )

    return str(package["name"]), str(version), dependencies


__all__ = [
    "Dependency",
    "NativeLibrary",
    "ProjectManifest",
    "ShellSettings",
    "SourceRules",
    "load_cargo_metadata",
]
