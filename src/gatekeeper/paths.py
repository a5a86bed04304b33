"""Test placement: where a generated test file belongs inside the project.

Generated tests are first written to the artifact folder of their output id.
The resolver classifies the declared change (layout, component, hook, widget,
lib), looks up the project's directory convention for that type, and copies
the test to its canonical location unless a file is already there.  Later
runs call :meth:`recheck_and_copy` to restore a test file that was removed
from the project, again never overwriting one that is present.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, Mapping

from .manifest import Manifest
from .store.artifacts import ArtifactStore
from .utils.pathspec import has_test_file_name, normalize_path, subject_name, to_posix

LOGGER = logging.getLogger(__name__)

DEFAULT_TEST_TYPE = "component"

# Ordered by priority; the first type whose directory signal appears wins.
TEST_TYPE_SIGNALS: tuple[tuple[str, str], ...] = (
    ("layout", "/layout/"),
    ("component", "/components/"),
    ("hook", "/hooks/"),
    ("widget", "/widgets/"),
    ("lib", "/lib/"),
)


class ArtifactMissingError(FileNotFoundError):
    """Raised when neither the project copy nor the artifact copy of a test exists."""


def apply_pattern(pattern: str, test_file_name: str) -> str:
    """Expand a convention pattern for ``test_file_name``.

    ``{name}`` in the final path component is replaced by the file name, and
    ``{name}`` elsewhere by the test's subject name.  A pattern whose last
    component has no placeholder is treated as a directory.
    """

    cleaned = to_posix(pattern).rstrip("/")
    directory, _, last = cleaned.rpartition("/")
    subject = subject_name(test_file_name)
    directory = directory.replace("{name}", subject)
    if "{name}" in last:
        if last == "{name}":
            filename = test_file_name
        else:
            filename = last.replace("{name}", subject)
        return f"{directory}/{filename}" if directory else filename
    return f"{cleaned.replace('{name}', subject)}/{test_file_name}"


class PathResolverService:
    """Classify changes and place generated test files by convention."""

    def __init__(
        self,
        conventions: Mapping[str, str] | None = None,
        artifacts: ArtifactStore | None = None,
    ) -> None:
        self.conventions: Dict[str, str] = dict(conventions or {})
        self.artifacts = artifacts

    @classmethod
    def from_settings(cls, settings, artifacts: ArtifactStore | None = None) -> "PathResolverService":
        return cls(settings.conventions, artifacts or ArtifactStore.from_settings(settings))

    def detect_test_type(self, manifest: Manifest | None) -> str:
        """Return the test type for ``manifest``; never ``None``."""

        if manifest is None or not manifest.files:
            return DEFAULT_TEST_TYPE
        paths = ["/" + normalize_path(entry.path).lstrip("/") for entry in manifest.files]
        for test_type, signal in TEST_TYPE_SIGNALS:
            if any(signal in path for path in paths):
                return test_type
        return DEFAULT_TEST_TYPE

    def get_convention(self, test_type: str) -> str | None:
        pattern = self.conventions.get(test_type)
        if not pattern:
            LOGGER.warning("No path convention configured for test type %s", test_type)
            return None
        return pattern

    def canonical_path(self, test_file_name: str, manifest: Manifest | None) -> str:
        """Return the project-relative location a test file should live at."""

        name = PurePosixPath(to_posix(test_file_name)).name
        pattern = self.get_convention(self.detect_test_type(manifest))
        if pattern is None:
            return f"src/{name}"
        return apply_pattern(pattern, name)

    def ensure_correct_path(
        self,
        artifact_test_path: Path | str,
        manifest: Manifest | None,
        project_root: Path | str,
        output_id: str,
    ) -> Path:
        """Copy the artifact test file to its canonical location and return that path.

        A file already present at the canonical location is left untouched.
        """

        source = Path(artifact_test_path)
        if not source.is_file():
            raise ArtifactMissingError(
                f"Artifact test file not found for output {output_id}: {source}"
            )
        relative = self.canonical_path(source.name, manifest)
        target = Path(project_root) / relative
        if target.exists():
            LOGGER.info("Test for output %s already present at %s", output_id, relative)
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        LOGGER.info("Placed test for output %s at %s", output_id, relative)
        return target

    @staticmethod
    def recheck_and_copy(target_path: Path | str, artifact_path: Path | str) -> Path:
        """Restore ``target_path`` from ``artifact_path`` when it is missing.

        Returns the target path either way.  An existing target is never
        overwritten.
        """

        target = Path(target_path)
        if target.exists():
            LOGGER.debug("Test file %s present, nothing to restore", target)
            return target
        artifact = Path(artifact_path)
        if not artifact.is_file():
            raise ArtifactMissingError(
                f"Test file {target} is missing and no artifact exists at {artifact}"
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(artifact, target)
        LOGGER.info("Restored test file %s from artifact %s", target, artifact)
        return target

    def heal_test_file(self, project_path: Path | str, test_file_path: str, output_id: str) -> Path | None:
        """Restore a run's declared test file from its output folder when needed."""

        if self.artifacts is None:
            return None
        target = Path(test_file_path)
        if not target.is_absolute():
            target = Path(project_path) / to_posix(test_file_path)
        artifact = self.artifacts.path_for(output_id, target.name)
        return self.recheck_and_copy(target, artifact)

    def find_artifact_test(self, manifest: Manifest | None, output_id: str) -> Path | None:
        """Locate the generated test in the output folder.

        The manifest's ``testFile`` name is tried first, then the first file in
        the folder whose name marks it as a test.
        """

        if self.artifacts is None:
            return None
        if manifest is not None and manifest.test_file:
            declared = self.artifacts.path_for(output_id, PurePosixPath(to_posix(manifest.test_file)).name)
            if declared.is_file():
                return declared
        for name in self.artifacts.list(output_id):
            if has_test_file_name(name):
                return self.artifacts.path_for(output_id, name)
        return None

    def place_test_file(self, project_path: Path | str, manifest: Manifest | None, output_id: str) -> str | None:
        """Place the output's generated test by convention; return its project-relative path."""

        artifact = self.find_artifact_test(manifest, output_id)
        if artifact is None:
            LOGGER.warning("No generated test found in output %s", output_id)
            return None
        target = self.ensure_correct_path(artifact, manifest, project_path, output_id)
        return target.relative_to(Path(project_path)).as_posix()


__all__ = [
    "ArtifactMissingError",
    "DEFAULT_TEST_TYPE",
    "PathResolverService",
    "TEST_TYPE_SIGNALS",
    "apply_pattern",
]
