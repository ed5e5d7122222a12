"""Content-addressed store for compiled dependency artifacts.

Layout::

    <root>/deps/<platform>/<toolchain>/<fingerprint>/artifacts.tar.zst
    <root>/deps/<platform>/<toolchain>/<fingerprint>/entry.json
    <root>/unpacked/<platform>/<toolchain>/<fingerprint>/...

The archive is the source of truth; the unpacked directory is a view
recreated from it whenever missing.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List
import json
import logging
import os
import shutil
import tempfile

from core.archive import ArchiveArtifact, ArchiveError, ArchiveManager, file_sha256
from core.locking import StoreLocks

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "artifacts.tar.zst"
ENTRY_NAME = "entry.json"
ENTRY_FORMAT = 1


@dataclass(frozen=True, slots=True, order=True)
class CacheKey:
    platform: str
    toolchain: str
    fingerprint: str

    def __str__(self) -> str:
        return f"{self.platform}/{self.toolchain}/{self.fingerprint}"

    @property
    def lock_name(self) -> str:
        return f"deps-{self.platform}-{self.toolchain}-{self.fingerprint}"

    def to_mapping(self) -> Dict[str, str]:
        return {"platform": self.platform, "toolchain": self.toolchain, "fingerprint": self.fingerprint}


@dataclass(frozen=True, slots=True)
class DependencyArtifactSet:
    key: CacheKey
    root: Path
    files: tuple[str, ...]
    archive_sha256: str


class CorruptEntry(Exception):
    """A stored entry that cannot be trusted; callers treat it as absent."""


class ArtifactStore:
    def __init__(self, root: Path, *, archive_manager: ArchiveManager | None = None) -> None:
        self.root = root
        self._archives = archive_manager or ArchiveManager()
        self.locks = StoreLocks(root / "locks")

    def entry_dir(self, key: CacheKey) -> Path:
        return self.root / "deps" / key.platform / key.toolchain / key.fingerprint

    def unpacked_dir(self, key: CacheKey) -> Path:
        return self.root / "unpacked" / key.platform / key.toolchain / key.fingerprint

    def scratch_dir(self, label: str) -> Path:
        tmp_root = self.root / "tmp"
        tmp_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{label}-", dir=tmp_root))

    def contains(self, key: CacheKey) -> bool:
        return (self.entry_dir(key) / ENTRY_NAME).is_file()

    def load(self, key: CacheKey) -> DependencyArtifactSet | None:
        """Return the stored set for ``key``, or ``None`` when absent or corrupt.

        A corrupt entry is deleted so the next publish starts clean.
        """

        if not self.contains(key):
            return None
        try:
            return self._load_entry(key)
        except CorruptEntry as exc:
            logger.warning("Discarding corrupt cache entry %s: %s", key, exc)
            self.remove(key)
            return None

    def _read_entry(self, key: CacheKey) -> Dict[str, Any]:
        entry_path = self.entry_dir(key) / ENTRY_NAME
        try:
            data = json.loads(entry_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CorruptEntry(f"unreadable {ENTRY_NAME}: {exc}") from exc
        if not isinstance(data, dict) or data.get("format") != ENTRY_FORMAT:
            raise CorruptEntry(f"unexpected {ENTRY_NAME} format")
        if data.get("key") != key.to_mapping():
            raise CorruptEntry("entry key does not match its location")
        return data

    def _load_entry(self, key: CacheKey) -> DependencyArtifactSet:
        data = self._read_entry(key)
        archive = self.entry_dir(key) / ARCHIVE_NAME
        try:
            actual = file_sha256(archive)
        except OSError as exc:
            raise CorruptEntry(f"missing archive: {exc}") from exc
        expected = data.get("sha256")
        if actual != expected:
            raise CorruptEntry(f"archive checksum {actual[:12]} does not match {str(expected)[:12]}")

        files = tuple(str(item) for item in data.get("files", []))
        unpacked = self.unpacked_dir(key)
        if not self._unpacked_complete(unpacked, files):
            self._unpack(archive, unpacked)
        return DependencyArtifactSet(key=key, root=unpacked, files=files, archive_sha256=actual)

    @staticmethod
    def _unpacked_complete(directory: Path, files: tuple[str, ...]) -> bool:
        return directory.is_dir() and all((directory / name).exists() for name in files)

    def _unpack(self, archive: Path, destination: Path) -> None:
        staging = self.scratch_dir("unpack")
        try:
            self._archives.extract_archive(archive_path=archive, destination_dir=staging)
        except ArchiveError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise CorruptEntry(str(exc)) from exc

        if destination.exists():
            shutil.rmtree(destination, ignore_errors=True)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(staging, destination)
        except OSError:
            # Another reader unpacked the same archive first.
            shutil.rmtree(staging, ignore_errors=True)

    def publish(self, key: CacheKey, output_dir: Path, *, metadata: Dict[str, Any] | None = None) -> DependencyArtifactSet:
        """Store ``output_dir`` under ``key`` and return the stored view.

        The entry directory is assembled aside and renamed into place, so
        readers never observe a half-written entry.
        """

        files = sorted(
            path.relative_to(output_dir).as_posix()
            for path in output_dir.rglob("*")
            if path.is_file()
        )
        staging = self.scratch_dir("publish")
        try:
            archive = self._archives.create_archive(
                artifact=ArchiveArtifact(source_dir=output_dir, label=str(key)),
                target_path=staging / ARCHIVE_NAME,
            )
            entry = {
                "format": ENTRY_FORMAT,
                "key": key.to_mapping(),
                "sha256": file_sha256(archive),
                "files": files,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "metadata": dict(metadata or {}),
            }
            (staging / ENTRY_NAME).write_text(json.dumps(entry, indent=2, sort_keys=True), encoding="utf-8")

            destination = self.entry_dir(key)
            if destination.exists():
                shutil.rmtree(destination)
            # A view unpacked from a replaced archive would outlive it otherwise.
            shutil.rmtree(self.unpacked_dir(key), ignore_errors=True)
            destination.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staging, destination)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info("Stored dependency artifacts %s (%d files)", key, len(files))
        loaded = self.load(key)
        if loaded is None:
            raise RuntimeError(f"Freshly published cache entry {key} could not be read back")
        return loaded

    def remove(self, key: CacheKey) -> bool:
        removed = False
        for directory in (self.entry_dir(key), self.unpacked_dir(key)):
            if directory.exists():
                shutil.rmtree(directory, ignore_errors=True)
                removed = True
        return removed

    def entries(self) -> Iterator[Dict[str, Any]]:
        """Yield the decoded ``entry.json`` of every stored key, sorted by key."""

        deps_root = self.root / "deps"
        if not deps_root.is_dir():
            return
        paths: List[Path] = sorted(deps_root.glob(f"*/*/*/{ENTRY_NAME}"))
        for path in paths:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.warning("Skipping unreadable cache entry %s", path.parent)
                continue
            if isinstance(data, dict):
                yield data


__all__ = [
    "ArtifactStore",
    "CacheKey",
    "DependencyArtifactSet",
]
