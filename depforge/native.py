"""Locate the native libraries a project links against.

Both the build stages and the development shell resolve libraries through
the same resolvers and export the same variables, so a binary that links
in the shell also links in the build.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Protocol, Sequence
import logging
import os

from core.command_runner import CommandRunner

from .errors import NativeLibraryMissing
from .manifest import NativeLibrary
from .platforms import PlatformId

logger = logging.getLogger(__name__)

_LIBRARY_PATTERNS = {
    "linux": ("lib{name}.so", "lib{name}.so.*", "lib{name}.a"),
    "macos": ("lib{name}.dylib", "lib{name}.*.dylib", "lib{name}.a"),
    "windows": ("{name}.dll", "{name}*.dll", "{name}.lib"),
}


class NativeLibraryResolver(Protocol):
    def resolve(self, library: NativeLibrary, platform: PlatformId) -> Path | None:
        ...


class PkgConfigResolver:
    """Asks ``pkg-config`` for a library's ``libdir``; only meaningful for the host."""

    def __init__(self, runner: CommandRunner, *, host: PlatformId, executable: str = "pkg-config") -> None:
        self._runner = runner
        self._host = host
        self._executable = executable

    def resolve(self, library: NativeLibrary, platform: PlatformId) -> Path | None:
        if platform != self._host or not library.pkg_config:
            return None
        result = self._runner.run(
            [self._executable, "--variable=libdir", library.pkg_config],
            check=False,
            note="pkg-config",
        )
        libdir = result.stdout.strip()
        if result.returncode != 0 or not libdir:
            logger.debug("pkg-config has no entry for %s: %s", library.pkg_config, result.diagnostic)
            return None
        path = Path(libdir)
        return path if path.is_dir() else None


class SearchPathResolver:
    """Looks for the library's files in its own search paths, then in ``default_paths``."""

    def __init__(self, default_paths: Sequence[Path] = ()) -> None:
        self._default_paths = list(default_paths)

    def resolve(self, library: NativeLibrary, platform: PlatformId) -> Path | None:
        patterns = _LIBRARY_PATTERNS[platform.os]
        directories = [Path(entry).expanduser() for entry in library.search_paths] + self._default_paths
        for directory in directories:
            if not directory.is_dir():
                continue
            for name in library.libraries:
                for pattern in patterns:
                    if any(directory.glob(pattern.format(name=name))):
                        return directory
        return None


class ChainedResolver:
    def __init__(self, resolvers: Iterable[NativeLibraryResolver]) -> None:
        self._resolvers = list(resolvers)

    def resolve(self, library: NativeLibrary, platform: PlatformId) -> Path | None:
        for resolver in self._resolvers:
            path = resolver.resolve(library, platform)
            if path is not None:
                return path
        return None


def unique_paths(paths: Iterable[Path]) -> List[Path]:
    ordered: List[Path] = []
    for path in paths:
        if path not in ordered:
            ordered.append(path)
    return ordered


def join_search_path(entries: Iterable[Path], inherited: str | None) -> str:
    """Join ``entries`` with the platform separator, then any ``inherited`` parts not already present."""

    parts = [str(entry) for entry in entries]
    if inherited:
        parts.extend(part for part in inherited.split(os.pathsep) if part and part not in parts)
    return os.pathsep.join(parts)


def resolve_library_dirs(
    resolver: NativeLibraryResolver,
    libraries: Iterable[NativeLibrary],
    platform: PlatformId,
    *,
    stage: str | None = None,
) -> List[Path]:
    """Return one directory per library, deduplicated; a missing library raises :class:`NativeLibraryMissing`."""

    directories: List[Path] = []
    for library in libraries:
        path = resolver.resolve(library, platform)
        if path is None:
            raise NativeLibraryMissing(
                f"Native library '{library.name}' could not be located",
                platform=str(platform),
                stage=stage,
                diagnostic=f"searched pkg-config '{library.pkg_config}' and {list(library.search_paths) or 'default paths'}",
            )
        directories.append(path)
    return unique_paths(directories)


def library_variables(library_dirs: Sequence[Path], platform: PlatformId, base: Mapping[str, str]) -> Dict[str, str]:
    """Linker, runtime and ``pkg-config`` search variables for ``library_dirs``.

    On platforms whose runtime search variable is ``PATH`` the caller owns
    ``PATH``, so it is left out here.
    """

    if not library_dirs:
        return {}
    variables = {"LIBRARY_PATH": join_search_path(library_dirs, base.get("LIBRARY_PATH"))}
    runtime_variable = platform.runtime_library_variable
    if runtime_variable != "PATH":
        variables[runtime_variable] = join_search_path(library_dirs, base.get(runtime_variable))
    pkgconfig_dirs = [path / "pkgconfig" for path in library_dirs if (path / "pkgconfig").is_dir()]
    if pkgconfig_dirs:
        variables["PKG_CONFIG_PATH"] = join_search_path(pkgconfig_dirs, base.get("PKG_CONFIG_PATH"))
    return variables


class NativeEnvironment:
    """Resolves a manifest's native libraries for one platform at a time."""

    def __init__(self, resolver: NativeLibraryResolver, *, base_environment: Mapping[str, str] | None = None) -> None:
        self._resolver = resolver
        self._base = dict(os.environ if base_environment is None else base_environment)

    def variables(self, libraries: Sequence[NativeLibrary], platform: PlatformId, *, stage: str | None = None) -> Dict[str, str]:
        if not libraries:
            return {}
        library_dirs = resolve_library_dirs(self._resolver, libraries, platform, stage=stage)
        logger.debug("[%s] native library directories: %s", platform, ", ".join(map(str, library_dirs)))
        return library_variables(library_dirs, platform, self._base)


__all__ = [
    "ChainedResolver",
    "NativeEnvironment",
    "NativeLibraryResolver",
    "PkgConfigResolver",
    "SearchPathResolver",
    "join_search_path",
    "library_variables",
    "resolve_library_dirs",
    "unique_paths",
]
