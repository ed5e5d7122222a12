"""Reproducible zstandard-compressed tar archives for stored build artifacts."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import hashlib
import logging
import os
import tarfile
import tempfile

import zstandard as zstd

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.zst"
_CHUNK_SIZE = 1 << 20


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be read back."""


@dataclass(slots=True)
class ArchiveArtifact:
    """Description of filesystem content to package into an archive."""

    source_dir: Path
    label: str | None = None


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


class ArchiveManager:
    """Create and extract ``.tar.zst`` archives.

    Archives are built with sorted members and normalised ownership and
    timestamps, so the same directory content always yields the same bytes.
    """

    # (minimum uncompressed size, worker threads)
    _THREAD_STEPS = ((1 << 30, 8), (256 << 20, 4), (32 << 20, 2))

    def __init__(self, *, level: int = 10) -> None:
        self._level = level

    @classmethod
    def _zstd_threads(cls, source_size: int) -> int:
        """Worker threads for compressing ``source_size`` bytes; 0 keeps zstd single-threaded."""

        for minimum, threads in cls._THREAD_STEPS:
            if source_size >= minimum:
                return min(threads, os.cpu_count() or 1, source_size // (32 << 20))
        return 0

    def create_archive(self, *, artifact: ArchiveArtifact, target_path: Path) -> Path:
        """Archive ``artifact.source_dir`` into ``target_path``.

        The tarball is staged next to the target and compressed in a single
        pass; the target only appears once it is complete.
        """

        source_dir = Path(artifact.source_dir).expanduser()
        if not source_dir.is_dir():
            raise FileNotFoundError(f"Archive source directory '{source_dir}' does not exist")
        if not target_path.name.endswith(ARCHIVE_SUFFIX):
            raise ValueError(f"Archive target must end with {ARCHIVE_SUFFIX}: {target_path}")

        target_path.parent.mkdir(parents=True, exist_ok=True)
        temp_tar = self._create_reproducible_tar(root_dir=source_dir, temp_dir=target_path.parent)
        partial = target_path.with_name(f".{target_path.name}.partial")
        try:
            threads = self._zstd_threads(temp_tar.stat().st_size)
            compressor = zstd.ZstdCompressor(level=self._level, threads=threads if threads > 1 else 0)
            with temp_tar.open("rb") as src, partial.open("wb") as dst:
                compressor.copy_stream(src, dst)
            os.replace(partial, target_path)
        finally:
            temp_tar.unlink(missing_ok=True)
            partial.unlink(missing_ok=True)

        logger.debug("Archived %s to %s", artifact.label or source_dir.name, target_path)
        return target_path

    @staticmethod
    def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        info.mtime = 0
        return info

    def _create_reproducible_tar(self, *, root_dir: Path, temp_dir: Path) -> Path:
        with tempfile.NamedTemporaryFile(dir=temp_dir, suffix=".tar", delete=False) as temp_handle:
            temp_path = Path(temp_handle.name)

        try:
            with tarfile.open(temp_path, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for dirpath, dirnames, filenames in os.walk(root_dir):
                    dirnames.sort()
                    current = Path(dirpath)
                    for name in dirnames:
                        path = current / name
                        tar.add(path, arcname=path.relative_to(root_dir).as_posix(), recursive=False, filter=self._normalise)
                    for name in sorted(filenames):
                        path = current / name
                        tar.add(path, arcname=path.relative_to(root_dir).as_posix(), filter=self._normalise)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        return temp_path

    def extract_archive(self, *, archive_path: Path, destination_dir: Path) -> None:
        """Extract ``archive_path`` into ``destination_dir``.

        Any failure to decompress or untar is reported as :class:`ArchiveError`.
        """

        if not archive_path.is_file():
            raise ArchiveError(f"Archive '{archive_path}' does not exist")

        destination_dir.mkdir(parents=True, exist_ok=True)
        dctx = zstd.ZstdDecompressor()
        try:
            with archive_path.open("rb") as ifh:
                with dctx.stream_reader(ifh) as reader:
                    with tarfile.open(fileobj=reader, mode="r|") as tar:
                        tar.extractall(path=destination_dir, filter="data")
        except (zstd.ZstdError, tarfile.TarError, OSError) as exc:
            raise ArchiveError(f"Could not extract '{archive_path}': {exc}") from exc


__all__ = [
    "ARCHIVE_SUFFIX",
    "ArchiveArtifact",
    "ArchiveError",
    "ArchiveManager",
    "file_sha256",
]
