"""Locate, decode and layer configuration mappings from TOML, JSON or YAML files."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterable, List, Mapping, Sequence, TextIO

import json
import tomllib

import yaml


@dataclass(frozen=True, slots=True)
class ConfigFormat:
    """How one file suffix is opened and decoded."""

    binary: bool
    decode: Callable[[BinaryIO | TextIO], Any]


CONFIG_FORMATS: Dict[str, ConfigFormat] = {
    ".toml": ConfigFormat(binary=True, decode=tomllib.load),
    ".json": ConfigFormat(binary=False, decode=json.load),
    ".yaml": ConfigFormat(binary=False, decode=yaml.safe_load),
    ".yml": ConfigFormat(binary=False, decode=yaml.safe_load),
}


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Decode ``path`` according to its suffix and return the root mapping.

    Raises ``ValueError`` for unknown suffixes or malformed TOML/JSON,
    ``yaml.YAMLError`` for malformed YAML and ``TypeError`` when the
    document root is not a mapping.
    """

    config_format = CONFIG_FORMATS.get(path.suffix.lower())
    if config_format is None:
        raise ValueError(
            f"Unsupported configuration file extension '{path.suffix}'. "
            f"Supported: {', '.join(sorted(CONFIG_FORMATS))}"
        )

    if config_format.binary:
        with path.open("rb") as handle:
            data = config_format.decode(handle)
    else:
        with path.open("r", encoding="utf-8") as handle:
            data = config_format.decode(handle)

    # An empty YAML document decodes to None.
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(f"'{path}' must contain a table/mapping at the top level")
    return data


def collect_config_files(directory: Path, *, names: Iterable[str] | None = None) -> Dict[str, Path]:
    """Map file stems to paths for every configuration file in ``directory``.

    ``names`` restricts the result to the given stems. Two files sharing a
    stem (``project.toml`` and ``project.yaml``) are ambiguous and rejected.
    """

    wanted = set(names) if names is not None else None
    found: Dict[str, Path] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in CONFIG_FORMATS:
            continue
        if wanted is not None and path.stem not in wanted:
            continue
        previous = found.setdefault(path.stem, path)
        if previous != path:
            raise ValueError(
                f"'{previous.name}' and '{path.name}' in {directory} both define '{path.stem}'; keep only one"
            )
    return found


def merge_mappings(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overlay`` onto ``base``; tables merge, other values are replaced."""

    merged: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            value = merge_mappings(current, value)
        merged[key] = value
    return merged


def _label(field_name: str | None) -> str:
    return f"{field_name} " if field_name else ""


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Accept a string or a sequence of strings; return stripped, non-empty entries."""

    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        value = [value]
    elif not isinstance(value, Sequence):
        raise TypeError(f"{_label(field_name)}must be a string or sequence of strings")

    result: List[str] = []
    for item in value:
        if not isinstance(item, (str, bytes)):
            raise TypeError(f"{_label(field_name)}entries must be strings")
        text = (item.decode("utf-8") if isinstance(item, bytes) else item).strip()
        if text:
            result.append(text)
    return result


def normalize_string_mapping(value: Any, *, field_name: str) -> Dict[str, str]:
    """Coerce a table of scalars into ``str -> str``."""

    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a table of key/value pairs")
    return {str(key): str(item) for key, item in value.items()}


def resolve_config_paths(root: Path, directories: Iterable[Path]) -> tuple[tuple[Path, ...], tuple[Path, ...]]:
    """Split ``directories`` (relative ones taken from ``root``) into existing and missing.

    Order is preserved for layering; a directory listed twice keeps its last
    position so it still overrides the ones before it.
    """

    ordered: List[Path] = []
    for raw in directories:
        path = raw if raw.is_absolute() else (root / raw).resolve()
        if path in ordered:
            ordered.remove(path)
        ordered.append(path)

    existing = tuple(path for path in ordered if path.is_dir())
    missing = tuple(path for path in ordered if not path.is_dir())
    return existing, missing


__all__ = [
    "CONFIG_FORMATS",
    "ConfigFormat",
    "collect_config_files",
    "load_config_file",
    "merge_mappings",
    "normalize_string_list",
    "normalize_string_mapping",
    "resolve_config_paths",
]
