"""Path normalisation and glob matching shared by the validators."""

from __future__ import annotations

import fnmatch
import re
from pathlib import PurePosixPath
from typing import Iterable

_TEST_SUFFIX_RE = re.compile(r"\.(spec|test)\.[A-Za-z0-9]+$", re.IGNORECASE)
_TEST_DIRECTORIES = ("__tests__", "tests", "test")


def to_posix(path: str) -> str:
    """Convert separators to ``/`` and strip a leading ``./``."""

    cleaned = path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def normalize_path(path: str) -> str:
    """Return the comparison key for ``path``: forward slashes, case-folded."""

    return to_posix(path).casefold()


def relative_to_project(path: str, project_path: str) -> str | None:
    """Return ``path`` relative to ``project_path``.

    Relative inputs are returned unchanged (normalised to posix separators).
    Absolute inputs outside the project yield ``None``.
    """

    candidate = to_posix(path)
    if not _is_absolute(candidate):
        return candidate
    root = to_posix(project_path).rstrip("/")
    if candidate.casefold().startswith(root.casefold() + "/"):
        return candidate[len(root) + 1:]
    return None


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or bool(re.match(r"^[A-Za-z]:/", path))


def matches_pattern(path: str, pattern: str) -> bool:
    """Glob-match ``path`` against ``pattern``.

    ``dir/**`` matches everything beneath ``dir``; a pattern without a slash
    also matches the file name alone.
    """

    candidate = normalize_path(path)
    glob = normalize_path(pattern)
    if glob.endswith("/**"):
        prefix = glob[:-3]
        if candidate == prefix or candidate.startswith(prefix + "/"):
            return True
    if glob.startswith("**/"):
        if fnmatch.fnmatchcase(candidate, glob[3:]) or fnmatch.fnmatchcase(PurePosixPath(candidate).name, glob[3:]):
            return True
    if fnmatch.fnmatchcase(candidate, glob):
        return True
    if "/" not in glob:
        return fnmatch.fnmatchcase(PurePosixPath(candidate).name, glob)
    return False


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(path, pattern) for pattern in patterns)


def is_test_file(path: str) -> bool:
    """Return ``True`` for files that follow a test naming or directory convention."""

    posix = normalize_path(path)
    name = PurePosixPath(posix).name
    if _TEST_SUFFIX_RE.search(name):
        return True
    if name.endswith(".py") and (name.startswith("test_") or name.endswith("_test.py")):
        return True
    parts = posix.split("/")[:-1]
    return any(part in _TEST_DIRECTORIES for part in parts)


def has_test_file_name(path: str) -> bool:
    """Return ``True`` when the file name itself marks a test (directory ignored)."""

    name = PurePosixPath(to_posix(path)).name
    if _TEST_SUFFIX_RE.search(name):
        return True
    return name.endswith(".py") and (name.startswith("test_") or name.endswith("_test.py"))


def subject_name(path: str) -> str:
    """Return the subject name of a test file: ``Button`` for ``Button.spec.tsx``."""

    name = PurePosixPath(to_posix(path)).name
    stripped = _TEST_SUFFIX_RE.sub("", name)
    if stripped != name:
        return stripped
    stem = PurePosixPath(name).stem
    if stem.startswith("test_"):
        return stem[5:]
    if stem.endswith("_test"):
        return stem[:-5]
    return stem


__all__ = [
    "has_test_file_name",
    "is_test_file",
    "matches_any",
    "matches_pattern",
    "normalize_path",
    "relative_to_project",
    "subject_name",
    "to_posix",
]
