from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List

import pytest
from conftest import CALCULATOR_TEST, TinyRepo, division_manifest, fake_runners

from gatekeeper.orchestrator import (
    BYPASSED_MESSAGE,
    DISABLED_MESSAGE,
    GateOrchestrator,
    InvalidRunStateError,
    summarize_gate,
)
from gatekeeper.paths import PathResolverService
from gatekeeper.store.artifacts import ArtifactStore
from gatekeeper.store.schema import Run, RunStatus, ValidatorResult, ValidatorStatus, utc_now
from gatekeeper.store.store import RunStore
from gatekeeper.validators.base import (
    ValidationServices,
    ValidatorDefinition,
    fail,
    ok,
    warn,
)
from gatekeeper.validators.registry import GateDefinition


class Recorder:
    """Builds validator definitions that log each evaluation."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.contexts: List = []

    def validator(
        self,
        code: str,
        gate: int,
        order: int,
        outcome: Callable = lambda: ok("fine"),
        *,
        hard: bool = True,
    ) -> ValidatorDefinition:
        def evaluate(context):
            self.calls.append(code)
            self.contexts.append(context)
            return outcome()

        return ValidatorDefinition(
            code=code,
            name=code.replace("_", " ").title(),
            description=f"{code} for tests",
            gate=gate,
            order=order,
            is_hard_block=hard,
            evaluate=evaluate,
        )


def _gates(*definitions: ValidatorDefinition) -> Dict[int, GateDefinition]:
    grouped: Dict[int, list] = {}
    for definition in definitions:
        grouped.setdefault(definition.gate, []).append(definition)
    return {
        number: GateDefinition(number, f"GATE_{number}", "test gate", tuple(items))
        for number, items in grouped.items()
    }


@pytest.fixture()
def store(tmp_path) -> RunStore:
    with RunStore(tmp_path / "runs.sqlite") as run_store:
        yield run_store


def _orchestrator(repo: TinyRepo, store: RunStore, gates, **settings_data) -> GateOrchestrator:
    settings = repo.settings(**settings_data)

    def services(project_path):
        return ValidationServices(
            git=repo.repository(),
            runners=fake_runners(),
            resolver=PathResolverService(settings.conventions),
        )

    return GateOrchestrator(store, settings, services_factory=services, gates=gates)


def _pending(store: RunStore, repo: TinyRepo, run_id: str = "run-1", **fields) -> Run:
    fields.setdefault("gate_numbers", [0, 1])
    fields.setdefault("test_file_path", "tests/test_division.py")
    run = Run(
        id=run_id,
        project_path=str(repo.root),
        base_ref=repo.base,
        target_ref="HEAD",
        task_prompt="Add a divide function to the calculator",
        **fields,
    )
    return store.create_run(run)


def test_hard_failure_stops_gate_and_run(tiny_repo, store) -> None:
    recorder = Recorder()
    gates = _gates(
        recorder.validator("FIRST_CHECK", 0, 1),
        recorder.validator("BLOCKING_CHECK", 0, 2, lambda: fail("blocked here")),
        recorder.validator("NEVER_REACHED", 0, 3),
        recorder.validator("LATER_GATE", 1, 1),
    )
    _pending(store, tiny_repo)
    run = _orchestrator(tiny_repo, store, gates).execute("run-1")

    assert run.status is RunStatus.FAILED
    assert run.passed is False
    assert run.failed_at == 0
    assert run.failed_validator_code == "BLOCKING_CHECK"
    assert run.failure_message == "blocked here"
    assert recorder.calls == ["FIRST_CHECK", "BLOCKING_CHECK"]

    results = store.get_run_results("run-1")
    assert [item.code for item in results.validators] == ["FIRST_CHECK", "BLOCKING_CHECK"]
    assert [gate.gate_number for gate in results.gates] == [0]
    gate = results.gates[0]
    assert gate.status is ValidatorStatus.FAILED
    assert gate.passed is False
    assert (gate.passed_count, gate.failed_count, gate.total_validators) == (1, 1, 3)


def test_soft_failure_only_warns(tiny_repo, store) -> None:
    recorder = Recorder()
    gates = _gates(
        recorder.validator("SOFT_CHECK", 0, 1, lambda: fail("too long"), hard=False),
        recorder.validator("AFTER_SOFT", 0, 2),
        recorder.validator("LATER_GATE", 1, 1, lambda: warn("heads up")),
    )
    _pending(store, tiny_repo)
    run = _orchestrator(tiny_repo, store, gates).execute("run-1")

    assert run.status is RunStatus.PASSED
    assert run.passed is True
    assert recorder.calls == ["SOFT_CHECK", "AFTER_SOFT", "LATER_GATE"]
    results = store.get_run_results("run-1")
    soft = results.validator("SOFT_CHECK")
    assert soft.status is ValidatorStatus.FAILED
    assert soft.passed is False
    assert [gate.status for gate in results.gates] == [ValidatorStatus.WARNING, ValidatorStatus.WARNING]
    assert all(gate.passed for gate in results.gates)


def test_fail_mode_override_downgrades_hard_block(tiny_repo, store) -> None:
    recorder = Recorder()
    gates = _gates(recorder.validator("BLOCKING_CHECK", 0, 1, lambda: fail("blocked")))
    _pending(store, tiny_repo, gate_numbers=[0])
    orchestrator = _orchestrator(
        tiny_repo, store, gates, validators={"fail_modes": {"BLOCKING_CHECK": "warning"}}
    )
    run = orchestrator.execute("run-1")
    assert run.status is RunStatus.PASSED
    assert store.get_run_results("run-1").validator("BLOCKING_CHECK").is_hard_block is False


def test_in_flight_row_uses_effective_severity(tiny_repo, store) -> None:
    seen: List[ValidatorResult] = []

    def observe():
        seen.extend(store.list_validator_results("run-1"))
        return fail("blocked")

    recorder = Recorder()
    gates = _gates(recorder.validator("BLOCKING_CHECK", 0, 1, observe))
    _pending(store, tiny_repo, gate_numbers=[0])
    orchestrator = _orchestrator(
        tiny_repo, store, gates, validators={"fail_modes": {"BLOCKING_CHECK": "warning"}}
    )
    orchestrator.execute("run-1")

    assert [(item.status, item.is_hard_block) for item in seen] == [(ValidatorStatus.RUNNING, False)]


def test_bypassed_and_disabled_validators_are_skipped(tiny_repo, store) -> None:
    recorder = Recorder()
    gates = _gates(
        recorder.validator("BYPASSED_CHECK", 0, 1, lambda: fail("would block")),
        recorder.validator("DISABLED_CHECK", 0, 2, lambda: fail("would block")),
        recorder.validator("ACTIVE_CHECK", 0, 3),
    )
    _pending(store, tiny_repo, gate_numbers=[0], bypassed_validators=["BYPASSED_CHECK"])
    orchestrator = _orchestrator(tiny_repo, store, gates, validators={"disabled": ["DISABLED_CHECK"]})
    run = orchestrator.execute("run-1")

    assert run.status is RunStatus.PASSED
    assert recorder.calls == ["ACTIVE_CHECK"]
    results = store.get_run_results("run-1")
    bypassed = results.validator("BYPASSED_CHECK")
    assert (bypassed.status, bypassed.passed, bypassed.bypassed, bypassed.message) == (
        ValidatorStatus.SKIPPED,
        True,
        True,
        BYPASSED_MESSAGE,
    )
    disabled = results.validator("DISABLED_CHECK")
    assert (disabled.status, disabled.bypassed, disabled.message) == (
        ValidatorStatus.SKIPPED,
        False,
        DISABLED_MESSAGE,
    )
    assert results.gates[0].skipped_count == 2


def test_validator_exception_becomes_hard_failure(tiny_repo, store, caplog) -> None:
    def explode():
        raise RuntimeError("tool exploded")

    recorder = Recorder()
    gates = _gates(recorder.validator("FLAKY_TOOL", 0, 1, explode, hard=False), recorder.validator("NEXT", 0, 2))
    _pending(store, tiny_repo, gate_numbers=[0])
    with caplog.at_level(logging.WARNING, logger="gatekeeper.orchestrator"):
        run = _orchestrator(tiny_repo, store, gates).execute("run-1")

    assert run.status is RunStatus.FAILED
    assert run.failed_validator_code == "FLAKY_TOOL"
    result = store.get_run_results("run-1").validator("FLAKY_TOOL")
    assert result.is_hard_block is True
    assert result.message == "Validator execution error: tool exploded"
    assert result.details == {"error": "tool exploded", "errorType": "RuntimeError"}
    assert recorder.calls == ["FLAKY_TOOL"]
    assert "FLAKY_TOOL raised" in caplog.text


def test_unexpected_error_aborts_run(tiny_repo, store) -> None:
    recorder = Recorder()
    gates = _gates(recorder.validator("ONLY_CHECK", 0, 1))
    _pending(store, tiny_repo, gate_numbers=[0, 7])
    run = _orchestrator(tiny_repo, store, gates).execute("run-1")

    assert run.status is RunStatus.ABORTED
    assert run.passed is False
    assert run.failure_message.startswith("Run aborted:")
    assert run.completed_at is not None
    assert store.require_run("run-1").status is RunStatus.ABORTED


def test_execute_requires_pending_run(tiny_repo, store) -> None:
    recorder = Recorder()
    orchestrator = _orchestrator(tiny_repo, store, _gates(recorder.validator("ONLY_CHECK", 0, 1)))
    _pending(store, tiny_repo, gate_numbers=[0])
    orchestrator.execute("run-1")
    with pytest.raises(InvalidRunStateError):
        orchestrator.execute("run-1")


def test_context_carries_manifest_error_and_heals_test_file(tiny_repo, store) -> None:
    settings = tiny_repo.settings()
    ArtifactStore(settings.artifacts_root).write("output-1", "test_division.py", CALCULATOR_TEST)
    recorder = Recorder()
    orchestrator = _orchestrator(tiny_repo, store, _gates(recorder.validator("ONLY_CHECK", 0, 1)))
    run = _pending(store, tiny_repo, gate_numbers=[0], manifest_json="{not json", output_id="output-1")

    context = orchestrator.build_context(run)
    assert context.manifest is None
    assert context.manifest_error.startswith("Manifest is not valid JSON")
    assert (tiny_repo.root / "tests" / "test_division.py").read_text(encoding="utf-8") == CALCULATOR_TEST


def test_context_places_generated_test_and_records_path(tiny_repo, store) -> None:
    settings = tiny_repo.settings()
    ArtifactStore(settings.artifacts_root).write("output-2", "test_division.py", CALCULATOR_TEST)
    recorder = Recorder()
    orchestrator = _orchestrator(tiny_repo, store, _gates(recorder.validator("ONLY_CHECK", 0, 1)))
    run = _pending(
        store,
        tiny_repo,
        gate_numbers=[0],
        test_file_path=None,
        manifest_json=json.dumps(division_manifest()),
        output_id="output-2",
    )

    context = orchestrator.build_context(run)

    assert context.test_file_path == "tests/test_division.py"
    assert store.require_run("run-1").test_file_path == "tests/test_division.py"
    assert (tiny_repo.root / "tests" / "test_division.py").read_text(encoding="utf-8") == CALCULATOR_TEST


def test_invalid_output_id_does_not_abort_run(tiny_repo, store, caplog: pytest.LogCaptureFixture) -> None:
    recorder = Recorder()
    orchestrator = _orchestrator(tiny_repo, store, _gates(recorder.validator("ONLY_CHECK", 0, 1)))
    _pending(store, tiny_repo, gate_numbers=[0], output_id="../elsewhere")

    with caplog.at_level(logging.WARNING, logger="gatekeeper.orchestrator"):
        run = orchestrator.execute("run-1")

    assert run.status is RunStatus.PASSED
    assert recorder.calls == ["ONLY_CHECK"]
    assert "Could not place test file for run run-1" in caplog.text


def test_submit_runs_in_background(tiny_repo, store) -> None:
    recorder = Recorder()
    orchestrator = _orchestrator(tiny_repo, store, _gates(recorder.validator("ONLY_CHECK", 0, 1)))
    _pending(store, tiny_repo, gate_numbers=[0])
    try:
        future = orchestrator.submit("run-1")
        assert future.result(timeout=30).status is RunStatus.PASSED
    finally:
        orchestrator.shutdown()
    assert store.require_run("run-1").status is RunStatus.PASSED


def test_summarize_gate_folds_soft_failures_into_warning() -> None:
    gate = GateDefinition(0, "SANITIZATION", "test gate", ())

    def result(code: str, status: ValidatorStatus, hard: bool) -> ValidatorResult:
        return ValidatorResult(
            run_id="run-1",
            gate_number=0,
            code=code,
            name=code,
            order=1,
            status=status,
            passed=status is not ValidatorStatus.FAILED,
            is_hard_block=hard,
        )

    soft = summarize_gate(
        "run-1",
        gate,
        [result("A", ValidatorStatus.PASSED, True), result("B", ValidatorStatus.FAILED, False)],
        started_at=utc_now(),
        duration_ms=5,
    )
    assert (soft.status, soft.passed, soft.failed_count) == (ValidatorStatus.WARNING, True, 1)

    hard = summarize_gate(
        "run-1",
        gate,
        [result("A", ValidatorStatus.SKIPPED, True), result("B", ValidatorStatus.FAILED, True)],
        started_at=utc_now(),
        duration_ms=5,
    )
    assert (hard.status, hard.passed, hard.skipped_count) == (ValidatorStatus.FAILED, False, 1)
