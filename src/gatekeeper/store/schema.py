"""Typed records tracked by the gatekeeper run store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class RunStatus(str, Enum):
    """Lifecycle states for a validation run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def terminal(self) -> bool:
        return self in {RunStatus.PASSED, RunStatus.FAILED, RunStatus.ABORTED}


class RunType(str, Enum):
    """Kind of run: contract checks before implementation or execution checks after."""

    CONTRACT = "CONTRACT"
    EXECUTION = "EXECUTION"


class ValidatorStatus(str, Enum):
    """Outcome of a single validator or gate."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    WARNING = "WARNING"
    SKIPPED = "SKIPPED"


_STATUS_SEVERITY = {
    ValidatorStatus.FAILED: 3,
    ValidatorStatus.RUNNING: 2,
    ValidatorStatus.PENDING: 2,
    ValidatorStatus.WARNING: 1,
    ValidatorStatus.PASSED: 0,
    ValidatorStatus.SKIPPED: 0,
}


def escalate_status(statuses: List[ValidatorStatus]) -> ValidatorStatus:
    """Fold validator statuses into a gate status: FAILED > RUNNING > WARNING > PASSED."""

    worst = ValidatorStatus.PASSED
    for status in statuses:
        if _STATUS_SEVERITY[status] > _STATUS_SEVERITY[worst]:
            worst = ValidatorStatus.RUNNING if status is ValidatorStatus.PENDING else status
    return worst


class Run(RecordModel):
    """One execution of the gate pipeline against a declared change."""

    id: str
    output_id: Optional[str] = None
    run_type: RunType = RunType.CONTRACT
    contract_run_id: Optional[str] = None
    parent_run_id: Optional[str] = None
    project_path: str
    base_ref: str
    target_ref: str
    task_prompt: str = ""
    manifest_json: Optional[str] = None
    test_file_path: Optional[str] = None
    danger_mode: bool = False
    bypassed_validators: List[str] = Field(default_factory=list)
    gate_numbers: List[int] = Field(default_factory=lambda: [0, 1, 2, 3])
    status: RunStatus = RunStatus.PENDING
    current_gate: Optional[int] = None
    passed: Optional[bool] = None
    failed_at: Optional[int] = None
    failed_validator_code: Optional[str] = None
    failure_message: Optional[str] = None
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    committed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class GateResult(RecordModel):
    """Aggregate outcome of one gate within a run."""

    run_id: str
    gate_number: int
    gate_name: str
    status: ValidatorStatus = ValidatorStatus.PENDING
    passed: bool = False
    passed_count: int = 0
    failed_count: int = 0
    warning_count: int = 0
    skipped_count: int = 0
    total_validators: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0


class ValidatorResult(RecordModel):
    """Persisted outcome of one validator within a gate."""

    run_id: str
    gate_number: int
    code: str
    name: str
    order: int
    status: ValidatorStatus
    passed: bool
    is_hard_block: bool
    bypassed: bool = False
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    evidence: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    findings: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class RunResults(RecordModel):
    """A run together with its gate and validator outcomes."""

    run: Run
    gates: List[GateResult] = Field(default_factory=list)
    validators: List[ValidatorResult] = Field(default_factory=list)

    def validators_for_gate(self, gate_number: int) -> List[ValidatorResult]:
        return [item for item in self.validators if item.gate_number == gate_number]

    def validator(self, code: str) -> Optional[ValidatorResult]:
        for item in self.validators:
            if item.code == code:
                return item
        return None


__all__ = [
    "GateResult",
    "RecordModel",
    "Run",
    "RunResults",
    "RunStatus",
    "RunType",
    "ValidatorResult",
    "ValidatorStatus",
    "escalate_status",
    "utc_now",
]
