"""Folder-per-output storage for generated artifacts (plans, specs, test files)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

LOGGER = logging.getLogger(__name__)


class ArtifactStore:
    """Read and write artifacts under ``<root>/<output_id>/<filename>``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    @classmethod
    def from_settings(cls, settings) -> "ArtifactStore":
        return cls(settings.artifacts_root)

    def folder_for(self, output_id: str) -> Path:
        if not output_id or "/" in output_id or "\\" in output_id or output_id in {".", ".."}:
            raise ValueError(f"Invalid output id: {output_id!r}")
        return (self.root / output_id).resolve()

    def path_for(self, output_id: str, filename: str) -> Path:
        """Return the artifact path, refusing names that escape the output folder."""

        folder = self.folder_for(output_id)
        candidate = (folder / filename.replace("\\", "/")).resolve()
        if folder not in candidate.parents:
            raise ValueError(f"Artifact name escapes output folder: {filename!r}")
        return candidate

    def write(self, output_id: str, filename: str, content: str) -> Path:
        target = self.path_for(output_id, filename)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        LOGGER.debug("Wrote artifact %s", target)
        return target

    def read(self, output_id: str, filename: str) -> str | None:
        target = self.path_for(output_id, filename)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def exists(self, output_id: str, filename: str) -> bool:
        return self.path_for(output_id, filename).is_file()

    def list(self, output_id: str) -> List[str]:
        folder = self.folder_for(output_id)
        if not folder.is_dir():
            return []
        return sorted(
            path.relative_to(folder).as_posix()
            for path in folder.rglob("*")
            if path.is_file()
        )


__all__ = ["ArtifactStore"]
