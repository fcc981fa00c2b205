"""Rewrite filesystem paths from a submission host to the execution host."""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Any

import yaml

from jobtemplate.util.errors import PathMappingError

PATH_MAPPING_VERSION = "pathmapping-1.0"
_ALLOWED_DOCUMENT_KEYS = {"version", "path_mapping_rules"}
_ALLOWED_RULE_KEYS = {"source_path_format", "source_path", "destination_path"}


class PathFormat(str, Enum):
    POSIX = "POSIX"
    WINDOWS = "WINDOWS"

    @classmethod
    def host(cls) -> PathFormat:
        return cls.WINDOWS if os.name == "nt" else cls.POSIX

    @property
    def pure_path(self) -> type[PurePath]:
        return PureWindowsPath if self is PathFormat.WINDOWS else PurePosixPath

    @property
    def separator(self) -> str:
        return "\\" if self is PathFormat.WINDOWS else "/"


def _has_trailing_separator(path: str, fmt: PathFormat) -> bool:
    if fmt is PathFormat.WINDOWS:
        return path.endswith(("\\", "/"))
    return path.endswith("/")


@dataclass(frozen=True, slots=True)
class PathMappingRule:
    source_path_format: PathFormat
    source_path: str
    destination_path: str

    def __post_init__(self) -> None:
        if not isinstance(self.source_path_format, PathFormat):
            raise PathMappingError(f"unknown source_path_format: {self.source_path_format!r}")
        if not isinstance(self.source_path, str) or not self.source_path.strip():
            raise PathMappingError("source_path must be a non-empty string")
        if not isinstance(self.destination_path, str) or not self.destination_path.strip():
            raise PathMappingError("destination_path must be a non-empty string")

    def match_length(self, path: str) -> int | None:
        """Length of the normalized source path when it prefixes ``path``.

        Normalizing drops a trailing separator, so ``/mnt/shared`` and
        ``/mnt/shared/`` are equally long.

        PurePosixPath compares case-sensitively and PureWindowsPath
        case-insensitively, which gives each format its matching rules.
        """
        pure = self.source_path_format.pure_path(path)
        source = self.source_path_format.pure_path(self.source_path)
        if pure == source or source in pure.parents:
            return len(str(source))
        return None

    def apply(self, path: str, destination_format: PathFormat) -> str:
        pure = self.source_path_format.pure_path(path)
        source = self.source_path_format.pure_path(self.source_path)
        remainder = pure.relative_to(source).parts
        destination = destination_format.pure_path(self.destination_path)
        result = str(destination.joinpath(*remainder))
        if _has_trailing_separator(path, self.source_path_format) and not result.endswith(
            destination_format.separator
        ):
            result += destination_format.separator
        return result

    def to_dict(self) -> dict[str, str]:
        return {
            "source_path_format": self.source_path_format.value,
            "source_path": self.source_path,
            "destination_path": self.destination_path,
        }


def translate(
    path: str,
    rules: Sequence[PathMappingRule],
    *,
    source_format: PathFormat | None = None,
    destination_format: PathFormat | None = None,
) -> str:
    """Apply the longest matching rule to ``path``.

    Ties between equally long source paths go to the rule listed first. A path
    that no rule matches is returned unchanged.
    """
    if not path:
        return path
    destination_format = destination_format or PathFormat.host()
    best: PathMappingRule | None = None
    best_length = -1
    for rule in rules:
        if source_format is not None and rule.source_path_format is not source_format:
            continue
        length = rule.match_length(path)
        if length is not None and length > best_length:
            best, best_length = rule, length
    if best is None:
        return path
    return best.apply(path, destination_format)


def _parse_rule(raw: Any, index: int) -> PathMappingRule:
    where = f"path_mapping_rules[{index}]"
    if not isinstance(raw, dict):
        raise PathMappingError(f"{where} must be a mapping")
    unknown = set(raw) - _ALLOWED_RULE_KEYS
    if unknown:
        raise PathMappingError(f"{where} has unknown fields: {sorted(unknown)}")
    missing = sorted(_ALLOWED_RULE_KEYS - set(raw))
    if missing:
        raise PathMappingError(f"{where} is missing fields: {missing}")
    try:
        fmt = PathFormat(raw["source_path_format"])
    except ValueError as exc:
        raise PathMappingError(
            f"{where}.source_path_format must be POSIX or WINDOWS, "
            f"got {raw['source_path_format']!r}"
        ) from exc
    try:
        return PathMappingRule(fmt, raw["source_path"], raw["destination_path"])
    except PathMappingError as exc:
        raise PathMappingError(f"{where}: {exc}") from exc


def parse_path_mapping(document: Any) -> list[PathMappingRule]:
    if not isinstance(document, dict):
        raise PathMappingError("path mapping document must be a mapping")
    unknown = set(document) - _ALLOWED_DOCUMENT_KEYS
    if unknown:
        raise PathMappingError(f"path mapping document has unknown fields: {sorted(unknown)}")
    version = document.get("version")
    if version != PATH_MAPPING_VERSION:
        raise PathMappingError(
            f"path mapping version must be '{PATH_MAPPING_VERSION}', got {version!r}"
        )
    raw_rules = document.get("path_mapping_rules")
    if not isinstance(raw_rules, list):
        raise PathMappingError("path_mapping_rules must be a list")
    return [_parse_rule(raw, index) for index, raw in enumerate(raw_rules)]


def load_path_mapping(path: Path) -> list[PathMappingRule]:
    """Load rules from a JSON or YAML file."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PathMappingError(f"path mapping file not found: {path}") from exc
    except (OSError, UnicodeError) as exc:
        raise PathMappingError(f"failed to read path mapping file: {path}") from exc
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise PathMappingError(f"failed to parse path mapping file: {exc}") from exc
    return parse_path_mapping(document)


def dump_path_mapping(rules: Sequence[PathMappingRule]) -> str:
    return json.dumps(
        {"version": PATH_MAPPING_VERSION, "path_mapping_rules": [r.to_dict() for r in rules]},
        indent=2,
    )
