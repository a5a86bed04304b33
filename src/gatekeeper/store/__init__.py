"""Persistence for runs and generated artifacts."""

from .artifacts import ArtifactStore
from .schema import GateResult, Run, RunResults, RunStatus, RunType, ValidatorResult, ValidatorStatus
from .store import RunNotFoundError, RunStore

__all__ = [
    "ArtifactStore",
    "GateResult",
    "Run",
    "RunNotFoundError",
    "RunResults",
    "RunStatus",
    "RunStore",
    "RunType",
    "ValidatorResult",
    "ValidatorStatus",
]
