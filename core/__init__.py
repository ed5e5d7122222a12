"""Shared utilities for command execution, configuration loading, archives and locking."""

from .archive import ArchiveArtifact, ArchiveError, ArchiveManager
from .command_runner import (
    CommandError,
    CommandResult,
    CommandRunner,
    RecordingCommandRunner,
    SubprocessCommandRunner,
)
from .config_loader import (
    CONFIG_FORMATS,
    collect_config_files,
    load_config_file,
    merge_mappings,
    normalize_string_list,
    normalize_string_mapping,
    resolve_config_paths,
)
from .locking import KeyedLocks, StoreLocks, file_lock

__all__ = [
    "ArchiveArtifact",
    "ArchiveError",
    "ArchiveManager",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "CONFIG_FORMATS",
    "collect_config_files",
    "load_config_file",
    "merge_mappings",
    "normalize_string_list",
    "normalize_string_mapping",
    "resolve_config_paths",
    "KeyedLocks",
    "StoreLocks",
    "file_lock",
]
