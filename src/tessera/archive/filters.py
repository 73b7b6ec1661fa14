"""
File filters for filesystem backups.

A filter decides per file whether it goes into the archive. Filters share a
single capability, should_include(path) -> bool, and a FilterChain ANDs any
number of them. The direct writer and the chunk producer both walk trees
with iter_files() so they see the same file set in the same order.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Protocol

from tessera.config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100 MiB


class FileFilter(Protocol):
    """Decides whether a file at an absolute path should be backed up."""

    def should_include(self, path: str) -> bool: ...


def _normalize_extension(ext: str) -> str:
    return ext.strip().lower().lstrip(".")


class ExtensionFilter:
    """Include or exclude by file extension. An include list wins when set."""

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> None:
        self.include = {_normalize_extension(e) for e in include}
        self.exclude = {_normalize_extension(e) for e in exclude}

    def should_include(self, path: str) -> bool:
        ext = _normalize_extension(os.path.splitext(path)[1])
        if self.include:
            return ext in self.include
        if self.exclude:
            return ext not in self.exclude
        return True


class PatternFilter:
    """
    Include or exclude by glob pattern.

    A pattern matches if it matches the absolute path or the basename. An
    include list wins when set.
    """

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> None:
        self.include = list(include)
        self.exclude = list(exclude)

    @staticmethod
    def _matches(pattern: str, path: str) -> bool:
        return fnmatch.fnmatchcase(path, pattern) or fnmatch.fnmatchcase(
            os.path.basename(path), pattern
        )

    def should_include(self, path: str) -> bool:
        if self.include:
            return any(self._matches(p, path) for p in self.include)
        if self.exclude:
            return not any(self._matches(p, path) for p in self.exclude)
        return True


class MaxFileSizeFilter:
    """Exclude files larger than max_bytes. Files whose size can't be read pass."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_FILE_SIZE) -> None:
        self.max_bytes = max_bytes

    def should_include(self, path: str) -> bool:
        try:
            size = os.path.getsize(path)
        except OSError:
            return True
        return size <= self.max_bytes


class FilterChain:
    """All filters must accept a file for it to be included."""

    def __init__(self, filters: Sequence[FileFilter] = ()) -> None:
        self.filters = list(filters)

    def should_include(self, path: str) -> bool:
        return all(f.should_include(path) for f in self.filters)

    @classmethod
    def from_settings(cls, settings: Settings) -> FilterChain:
        config = settings.filters
        filters: list[FileFilter] = []
        if config.include_extensions or config.exclude_extensions:
            filters.append(ExtensionFilter(config.include_extensions, config.exclude_extensions))
        if config.include_patterns or config.exclude_patterns:
            filters.append(PatternFilter(config.include_patterns, config.exclude_patterns))
        if config.max_file_size_bytes is not None:
            filters.append(MaxFileSizeFilter(config.max_file_size_bytes))
        return cls(filters)


def should_exclude_path(path: str, exclude_paths: Iterable[str]) -> bool:
    """
    Check a path against configured exclusions.

    A path is excluded when it equals an excluded path, lies below one, or
    has the same name as an excluded bare name such as ".DS_Store". Paths
    and excluded paths are compared after expanding "~" and making them
    absolute, the same way configured backup paths are.
    """
    normalized = _normalize_path(path)
    name = os.path.basename(normalized)

    for exclude in exclude_paths:
        stripped = exclude.rstrip("/")
        if not stripped:
            continue
        # Bare names match anywhere in the tree
        if "/" not in stripped and not stripped.startswith("~"):
            if name == stripped:
                return True
            continue
        normalized_exclude = _normalize_path(stripped)
        if normalized == normalized_exclude:
            return True
        if normalized.startswith(normalized_exclude.rstrip("/") + "/"):
            return True

    return False


def _normalize_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def iter_files(
    root: Path | str,
    exclude_paths: Iterable[str] = (),
    chain: FilterChain | None = None,
) -> Iterator[tuple[str, str]]:
    """
    Walk a directory tree in sorted order.

    Excluded directories are pruned. Broken symlinks and anything that is not
    a regular file are skipped.

    Yields:
        Tuples of (absolute_path, relative_posix_path).
    """
    root = os.path.abspath(os.fspath(root))
    exclude_paths = list(exclude_paths)

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not should_exclude_path(os.path.join(dirpath, d), exclude_paths)
        )
        for filename in sorted(filenames):
            absolute = os.path.join(dirpath, filename)
            if should_exclude_path(absolute, exclude_paths):
                continue
            if not os.path.isfile(absolute):
                logger.debug(f"Skipping non-regular file: {absolute}")
                continue
            if chain is not None and not chain.should_include(absolute):
                continue
            yield absolute, Path(os.path.relpath(absolute, root)).as_posix()
