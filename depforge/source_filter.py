"""Reduce a project tree to the files that matter to the build."""
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Protocol, Sequence
import hashlib
import logging
import os

from .errors import SourceUnreadable

logger = logging.getLogger(__name__)

VCS_DIRECTORIES = (".git", ".hg", ".svn", ".jj", ".bzr")
# Root-level only; nested directories with these names are sources.
BUILD_OUTPUTS = ("/target/", "/result", "/result-*", "/.depforge/", "/_build/", "/build/", "/dist/")
EDITOR_FILES = (".idea", ".vscode", "*.swp", "*.swo", "*~", ".#*", ".DS_Store")


@dataclass(frozen=True, slots=True)
class SourceFile:
    path: str
    content: bytes


@dataclass(frozen=True, slots=True)
class FilteredSourceTree:
    files: tuple[SourceFile, ...]

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[SourceFile]:
        return iter(self.files)

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.files]

    def digest(self) -> str:
        hasher = hashlib.sha256()
        for entry in self.files:
            encoded = os.fsencode(entry.path)
            hasher.update(len(encoded).to_bytes(8, "big"))
            hasher.update(encoded)
            hasher.update(len(entry.content).to_bytes(8, "big"))
            hasher.update(entry.content)
        return hasher.hexdigest()

    def materialize(self, destination: Path) -> Path:
        """Write the tree into ``destination``, which must not already hold files."""

        destination.mkdir(parents=True, exist_ok=True)
        for entry in self.files:
            target = destination / PurePosixPath(entry.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(entry.content)
        return destination


class SourceEnumerator(Protocol):
    def list_files(self, root: Path, *, prune: "IgnoreRules") -> Iterable[tuple[str, bytes]]:
        ...


@dataclass(frozen=True, slots=True)
class _Pattern:
    glob: str
    anchored: bool
    directory_only: bool


class IgnoreRules:
    """Gitignore-style matching for relative POSIX paths.

    A pattern without ``/`` matches any single path component; a pattern
    containing ``/`` matches the root-relative path; a trailing ``/`` limits
    the pattern to directories.
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns: List[_Pattern] = []
        for raw in patterns:
            text = raw.strip()
            if not text or text.startswith("#"):
                continue
            directory_only = text.endswith("/")
            text = text.rstrip("/")
            anchored = "/" in text
            self._patterns.append(_Pattern(glob=text.lstrip("/"), anchored=anchored, directory_only=directory_only))

    def matches(self, relative_path: str, *, is_dir: bool) -> bool:
        parts = relative_path.split("/")
        for pattern in self._patterns:
            if pattern.directory_only and not is_dir:
                continue
            if pattern.anchored:
                if fnmatchcase(relative_path, pattern.glob):
                    return True
            elif fnmatchcase(parts[-1], pattern.glob):
                return True
        return False


class FilesystemEnumerator:
    """Walks a directory in sorted order, skipping pruned directories without descending."""

    def list_files(self, root: Path, *, prune: IgnoreRules) -> Iterable[tuple[str, bytes]]:
        def _raise(error: OSError) -> None:
            raise error

        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise, followlinks=False):
            current = Path(dirpath)
            relative_dir = current.relative_to(root).as_posix()
            prefix = "" if relative_dir == "." else f"{relative_dir}/"

            kept_dirs = [name for name in dirnames if not prune.matches(f"{prefix}{name}", is_dir=True)]
            dirnames[:] = sorted(kept_dirs)

            for name in sorted(filenames):
                relative = f"{prefix}{name}"
                if prune.matches(relative, is_dir=False):
                    continue
                path = current / name
                if path.is_symlink() and not path.exists():
                    logger.debug("Skipping dangling symlink %s", relative)
                    continue
                yield relative, path.read_bytes()


class SourceFilter:
    """Produces a :class:`FilteredSourceTree` from a project root.

    VCS metadata, previous build outputs and editor files are always
    excluded; ``ignore`` adds project rules. When ``include`` is given only
    files matching one of its globs are kept.
    """

    def __init__(
        self,
        enumerator: SourceEnumerator | None = None,
        *,
        ignore: Sequence[str] = (),
        include: Sequence[str] = (),
    ) -> None:
        self._enumerator = enumerator or FilesystemEnumerator()
        self._ignore = IgnoreRules([*VCS_DIRECTORIES, *BUILD_OUTPUTS, *EDITOR_FILES, *ignore])
        self._include = IgnoreRules(include) if include else None

    def filter(self, root: Path, *, platform: str | None = None) -> FilteredSourceTree:
        if not root.is_dir():
            raise SourceUnreadable(f"Source root '{root}' does not exist or is not a directory", platform=platform)

        entries: List[SourceFile] = []
        try:
            for relative, content in self._enumerator.list_files(root, prune=self._ignore):
                if self._include is not None and not self._include.matches(relative, is_dir=False):
                    continue
                entries.append(SourceFile(path=relative, content=content))
        except OSError as exc:
            raise SourceUnreadable(
                f"Could not read '{exc.filename or root}'",
                platform=platform,
                diagnostic=str(exc),
            ) from exc

        entries.sort(key=lambda entry: entry.path)
        tree = FilteredSourceTree(files=tuple(entries))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Filtered %s to %d files (%s)", root, len(tree), tree.digest()[:12])
        return tree


__all__ = [
    "BUILD_OUTPUTS",
    "EDITOR_FILES",
    "FilesystemEnumerator",
    "FilteredSourceTree",
    "IgnoreRules",
    "SourceEnumerator",
    "SourceFile",
    "SourceFilter",
    "VCS_DIRECTORIES",
]
