"""Import extraction and resolution for TypeScript/JavaScript and Python sources."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, List

from ..utils.pathspec import to_posix

SCRIPT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
PYTHON_EXTENSIONS = (".py",)
SOURCE_EXTENSIONS = SCRIPT_EXTENSIONS + PYTHON_EXTENSIONS

_SCRIPT_IMPORT_RE = re.compile(
    r"""(?:import|export)\s[^'"`;]*?from\s*['"]([^'"]+)['"]"""
    r"""|import\s*\(\s*['"]([^'"]+)['"]\s*\)"""
    r"""|require\s*\(\s*['"]([^'"]+)['"]\s*\)"""
    r"""|^\s*import\s+['"]([^'"]+)['"]""",
    re.MULTILINE,
)
_PY_FROM_RE = re.compile(
    r"^[ \t]*from[ \t]+(\.*[\w.]*)[ \t]+import[ \t]+(?:\(([^)]*)\)|([\w \t,*]+))",
    re.MULTILINE,
)
_PY_IMPORT_RE = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class ImportRef:
    """One import statement target.

    ``candidates`` lists the project-relative file paths the import may refer to.
    ``local`` is False for package imports that live outside the project.
    """

    specifier: str
    candidates: tuple[str, ...]
    local: bool


def is_script(path: str) -> bool:
    return path.endswith(SCRIPT_EXTENSIONS)


def is_python(path: str) -> bool:
    return path.endswith(PYTHON_EXTENSIONS)


def _script_candidates(base: str) -> tuple[str, ...]:
    base = base.rstrip("/")
    stem, ext = posixpath.splitext(base)
    options: List[str] = []
    if ext in SCRIPT_EXTENSIONS:
        options.append(base)
        # ESM code imports "./x.js" for a source file "./x.ts".
        options.extend(stem + candidate for candidate in SCRIPT_EXTENSIONS)
    else:
        options.append(base)
        options.extend(base + candidate for candidate in SCRIPT_EXTENSIONS)
        options.extend(f"{base}/index{candidate}" for candidate in SCRIPT_EXTENSIONS)
    return tuple(dict.fromkeys(options))


def script_imports(source: str, importer: str) -> List[ImportRef]:
    importer_dir = posixpath.dirname(to_posix(importer))
    refs: List[ImportRef] = []
    for match in _SCRIPT_IMPORT_RE.finditer(source):
        specifier = next(group for group in match.groups() if group)
        if specifier.startswith("."):
            target = posixpath.normpath(posixpath.join(importer_dir, specifier))
            refs.append(ImportRef(specifier, _script_candidates(target), True))
        elif specifier.startswith("@/") or specifier.startswith("~/"):
            target = posixpath.normpath("src/" + specifier[2:])
            refs.append(ImportRef(specifier, _script_candidates(target), True))
        else:
            refs.append(ImportRef(specifier, (), False))
    return refs


def _python_candidates(module: str) -> tuple[str, ...]:
    parts = [part for part in module.split(".") if part]
    if not parts:
        return ()
    base = "/".join(parts)
    options = [f"{base}.py", f"{base}/__init__.py", f"src/{base}.py", f"src/{base}/__init__.py"]
    return tuple(options)


def _python_package(importer: str) -> List[str]:
    parts = list(PurePosixPath(to_posix(importer)).parent.parts)
    if parts and parts[0] == "src":
        parts = parts[1:]
    return parts


def python_imports(source: str, importer: str, local_roots: Iterable[str]) -> List[ImportRef]:
    """Return imports of ``source``; ``local_roots`` are top-level names that live in the project."""

    roots = set(local_roots)
    refs: List[ImportRef] = []

    def _add(module: str, names: Iterable[str] = ()) -> None:
        if not module:
            return
        top = module.split(".", 1)[0]
        local = top in roots
        candidates = list(_python_candidates(module)) if local else []
        if local:
            for name in names:
                if name and name != "*":
                    candidates.extend(_python_candidates(f"{module}.{name}"))
        refs.append(ImportRef(module, tuple(dict.fromkeys(candidates)), local))

    for match in _PY_FROM_RE.finditer(source):
        module = match.group(1)
        names_blob = match.group(2) or match.group(3) or ""
        names = [name.split()[0] for name in names_blob.split(",") if name.strip()]
        if module.startswith("."):
            dots = len(module) - len(module.lstrip("."))
            package = _python_package(importer)
            if dots - 1 > len(package):
                continue
            anchor = package[: len(package) - (dots - 1)] if dots > 1 else package
            remainder = module.lstrip(".")
            absolute = ".".join([*anchor, *([remainder] if remainder else [])])
            if anchor:
                roots.add(anchor[0])
            _add(absolute, names)
        else:
            _add(module, names)
    for match in _PY_IMPORT_RE.finditer(source):
        for module in match.group(1).split(","):
            _add(module.strip())
    return refs


def imports_for(source: str, importer: str, local_roots: Iterable[str] = ()) -> List[ImportRef]:
    if is_python(importer):
        return python_imports(source, importer, local_roots)
    if is_script(importer):
        return script_imports(source, importer)
    return []


def python_local_roots(paths: Iterable[str]) -> set[str]:
    """Top-level importable names defined by the given project paths."""

    roots: set[str] = set()
    for raw in paths:
        parts = PurePosixPath(to_posix(raw)).parts
        if not parts:
            continue
        if parts[0] == "src" and len(parts) > 1:
            parts = parts[1:]
        head = parts[0]
        if len(parts) == 1:
            if head.endswith(".py"):
                roots.add(head[:-3])
        else:
            roots.add(head)
    return roots


__all__ = [
    "ImportRef",
    "SOURCE_EXTENSIONS",
    "imports_for",
    "is_python",
    "is_script",
    "python_imports",
    "python_local_roots",
    "script_imports",
]
