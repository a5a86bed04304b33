"""The declared change: which files a task touches and which test proves it."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .utils.pathspec import normalize_path


class ManifestAction(str, Enum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"


VALID_ACTIONS = frozenset(action.value for action in ManifestAction)


class ManifestError(ValueError):
    """Raised when a manifest payload is not a JSON object with a file list."""


class ManifestFile(BaseModel):
    """One declared file.

    ``action`` stays a plain string so malformed entries survive parsing and can
    be reported by the manifest lock instead of aborting the run.
    """

    model_config = ConfigDict(extra="ignore")

    path: str
    action: str = ""
    reason: str = ""

    @property
    def normalized_action(self) -> str:
        return self.action.strip().upper()

    @property
    def is_valid_action(self) -> bool:
        return self.normalized_action in VALID_ACTIONS


class Manifest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    files: List[ManifestFile] = Field(default_factory=list)
    test_file: Optional[str] = Field(default=None, alias="testFile")

    @classmethod
    def parse(cls, payload: str | dict[str, Any] | None) -> Optional["Manifest"]:
        if payload is None:
            return None
        if isinstance(payload, str):
            if not payload.strip():
                return None
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as error:
                raise ManifestError(f"Manifest is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ManifestError("Manifest must be a JSON object.")
        files = payload.get("files")
        if files is not None and not isinstance(files, list):
            raise ManifestError("Manifest.files must be a list.")
        try:
            return cls.model_validate(payload)
        except ValidationError as error:
            raise ManifestError(f"Manifest is malformed: {error}") from error

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.files]

    def declared(self) -> set[str]:
        """Normalised paths of every declared file plus the test file."""

        keys = {normalize_path(entry.path) for entry in self.files}
        if self.test_file:
            keys.add(normalize_path(self.test_file))
        return keys

    def entries_for(self, action: ManifestAction) -> List[ManifestFile]:
        return [entry for entry in self.files if entry.normalized_action == action.value]


__all__ = ["Manifest", "ManifestAction", "ManifestError", "ManifestFile", "VALID_ACTIONS"]
