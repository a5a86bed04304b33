"""Gate orchestration: execute a run's gates in order and persist every outcome.

A run moves PENDING -> RUNNING -> PASSED | FAILED | ABORTED.  Gates execute
strictly in sequence and validators within a gate in their declared order.  The
first hard-block failure stops its gate, and a gate that did not pass stops the
run.  Exceptions raised by a validator are recorded as hard-block failures so a
broken tool never takes the orchestrator down with it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .manifest import Manifest, ManifestError
from .paths import ArtifactMissingError, PathResolverService
from .settings import GatekeeperSettings
from .store.schema import (
    GateResult,
    Run,
    RunStatus,
    ValidatorResult,
    ValidatorStatus,
    escalate_status,
    utc_now,
)
from .store.store import RunStore
from .tools.runners import Runners
from .tools.vcs import GitRepository
from .validators.base import (
    ValidationContext,
    ValidationServices,
    ValidatorDefinition,
)
from .validators.registry import GATES, GateDefinition, get_gate

LOGGER = logging.getLogger(__name__)

BYPASSED_MESSAGE = "Bypassed by user"
DISABLED_MESSAGE = "Validator disabled"
EXECUTION_ERROR_PREFIX = "Validator execution error"

ServicesFactory = Callable[[Path], ValidationServices]


class InvalidRunStateError(ValueError):
    """Raised when an operation is not allowed in the run's current state."""


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def summarize_gate(
    run_id: str,
    gate: GateDefinition,
    results: Sequence[ValidatorResult],
    *,
    started_at,
    duration_ms: int,
) -> GateResult:
    """Fold validator results into a gate result.

    ``passed`` is false only when a hard-block validator FAILED.  A soft failure
    contributes WARNING to the gate status.
    """

    counts = {status: 0 for status in ValidatorStatus}
    folded: List[ValidatorStatus] = []
    hard_failure = False
    for result in results:
        counts[result.status] += 1
        if result.status is ValidatorStatus.FAILED and not result.is_hard_block:
            folded.append(ValidatorStatus.WARNING)
            continue
        if result.status is ValidatorStatus.FAILED:
            hard_failure = True
        folded.append(result.status)
    return GateResult(
        run_id=run_id,
        gate_number=gate.number,
        gate_name=gate.name,
        status=escalate_status(folded),
        passed=not hard_failure,
        passed_count=counts[ValidatorStatus.PASSED],
        failed_count=counts[ValidatorStatus.FAILED],
        warning_count=counts[ValidatorStatus.WARNING],
        skipped_count=counts[ValidatorStatus.SKIPPED],
        total_validators=len(gate.validators),
        started_at=started_at,
        completed_at=utc_now(),
        duration_ms=duration_ms,
    )


class GateOrchestrator:
    """Execute runs against the static gate table."""

    def __init__(
        self,
        store: RunStore,
        settings: GatekeeperSettings,
        *,
        resolver: PathResolverService | None = None,
        services_factory: ServicesFactory | None = None,
        gates: Mapping[int, GateDefinition] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.resolver = resolver or PathResolverService.from_settings(settings)
        self._services_factory = services_factory or self._default_services
        self._gates: Dict[int, GateDefinition] = dict(gates or GATES)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_guard = threading.Lock()

    # ------------------------------------------------------------------ wiring
    def _default_services(self, project_path: Path) -> ValidationServices:
        git = GitRepository(
            project_path,
            timeout=self.settings.runners.timeout("git"),
            worktrees_root=self.settings.worktrees_root,
        )
        runners = Runners.from_settings(self.settings.runners, project_path)
        return ValidationServices(git=git, runners=runners, resolver=self.resolver)

    def _gate(self, number: int) -> GateDefinition:
        if number in self._gates:
            return self._gates[number]
        return get_gate(number)

    def _place_test_file(self, run: Run, manifest: Manifest | None) -> Run:
        """Put the run's test file in the project before any validator reads it.

        A declared test file is restored from the output folder when missing.
        Without one, the generated test is placed by convention and the
        resolved path is recorded on the run.
        """

        if not run.output_id:
            return run
        try:
            if run.test_file_path:
                self.resolver.heal_test_file(run.project_path, run.test_file_path, run.output_id)
                return run
            placed = self.resolver.place_test_file(run.project_path, manifest, run.output_id)
        except (ArtifactMissingError, ValueError) as error:
            LOGGER.warning("Could not place test file for run %s: %s", run.id, error)
            return run
        if placed is None:
            return run
        LOGGER.info("Run %s: test file placed at %s", run.id, placed)
        return self.store.update_run(run.id, test_file_path=placed)

    def build_context(self, run: Run) -> ValidationContext:
        """Place the test file and assemble the immutable context for ``run``."""

        manifest: Manifest | None = None
        manifest_error: str | None = None
        try:
            manifest = Manifest.parse(run.manifest_json)
        except ManifestError as error:
            manifest_error = str(error)
        run = self._place_test_file(run, manifest)
        project_path = Path(run.project_path).resolve()
        return ValidationContext(
            run_id=run.id,
            project_path=project_path,
            base_ref=run.base_ref,
            target_ref=run.target_ref,
            task_prompt=run.task_prompt,
            test_file_path=run.test_file_path,
            manifest=manifest,
            services=self._services_factory(project_path),
            settings=self.settings.validators,
            bypassed_validators=frozenset(run.bypassed_validators),
            danger_mode=run.danger_mode,
            output_id=run.output_id,
            manifest_error=manifest_error,
        )

    # --------------------------------------------------------------- validators
    def run_validator(
        self,
        run_id: str,
        definition: ValidatorDefinition,
        context: ValidationContext,
    ) -> ValidatorResult:
        """Evaluate one validator and return its result without persisting it."""

        code = definition.code
        hard_block = context.settings.effective_hard_block(code, definition.is_hard_block)
        identity = {
            "run_id": run_id,
            "gate_number": definition.gate,
            "code": code,
            "name": definition.name,
            "order": definition.order,
        }
        if code in context.bypassed_validators:
            return ValidatorResult(
                **identity,
                status=ValidatorStatus.SKIPPED,
                passed=True,
                is_hard_block=hard_block,
                bypassed=True,
                message=BYPASSED_MESSAGE,
            )
        if code in context.settings.disabled:
            return ValidatorResult(
                **identity,
                status=ValidatorStatus.SKIPPED,
                passed=True,
                is_hard_block=hard_block,
                message=DISABLED_MESSAGE,
            )

        started = time.monotonic()
        try:
            output = definition.evaluate(context)
        except Exception as error:  # noqa: BLE001 - infrastructure faults become results
            LOGGER.warning("Validator %s raised during run %s: %s", code, run_id, error, exc_info=True)
            return ValidatorResult(
                **identity,
                status=ValidatorStatus.FAILED,
                passed=False,
                is_hard_block=True,
                message=f"{EXECUTION_ERROR_PREFIX}: {error}",
                details={"error": str(error), "errorType": type(error).__name__},
                duration_ms=_elapsed_ms(started),
            )
        return ValidatorResult(
            **identity,
            status=output.status,
            passed=output.passed and output.status is not ValidatorStatus.FAILED,
            is_hard_block=hard_block,
            message=output.message,
            details=output.details,
            evidence=output.evidence,
            metrics=output.metrics,
            findings=output.findings,
            duration_ms=_elapsed_ms(started),
        )

    # -------------------------------------------------------------------- gates
    def run_gate(self, run_id: str, gate: GateDefinition, context: ValidationContext) -> GateResult:
        """Execute ``gate`` for ``run_id``, persisting each validator result as it lands."""

        LOGGER.info("Run %s: gate %s (%s) started", run_id, gate.number, gate.name)
        started_at = utc_now()
        started = time.monotonic()
        self.store.record_gate_result(
            GateResult(
                run_id=run_id,
                gate_number=gate.number,
                gate_name=gate.name,
                status=ValidatorStatus.RUNNING,
                total_validators=len(gate.validators),
                started_at=started_at,
            )
        )
        results: List[ValidatorResult] = []
        for definition in gate.validators:
            hard_block = context.settings.effective_hard_block(definition.code, definition.is_hard_block)
            self.store.record_validator_result(
                ValidatorResult(
                    run_id=run_id,
                    gate_number=gate.number,
                    code=definition.code,
                    name=definition.name,
                    order=definition.order,
                    status=ValidatorStatus.RUNNING,
                    passed=False,
                    is_hard_block=hard_block,
                )
            )
            result = self.run_validator(run_id, definition, context)
            self.store.record_validator_result(result)
            results.append(result)
            LOGGER.debug("Run %s: %s -> %s", run_id, result.code, result.status.value)
            if result.status is ValidatorStatus.FAILED and result.is_hard_block:
                break

        gate_result = summarize_gate(
            run_id,
            gate,
            results,
            started_at=started_at,
            duration_ms=_elapsed_ms(started),
        )
        self.store.record_gate_result(gate_result)
        LOGGER.info(
            "Run %s: gate %s finished %s (%s passed, %s failed, %s warnings, %s skipped)",
            run_id,
            gate.number,
            gate_result.status.value,
            gate_result.passed_count,
            gate_result.failed_count,
            gate_result.warning_count,
            gate_result.skipped_count,
        )
        return gate_result

    # ---------------------------------------------------------------------- runs
    def execute(self, run_id: str) -> Run:
        """Execute a pending run to completion and return its terminal record."""

        run = self.store.require_run(run_id)
        if run.status is not RunStatus.PENDING:
            raise InvalidRunStateError(f"Run {run_id} is {run.status.value}; only PENDING runs can execute")
        run = self.store.update_run(run_id, status=RunStatus.RUNNING, started_at=utc_now())
        LOGGER.info("Run %s started (%s, gates %s)", run_id, run.run_type.value, run.gate_numbers)
        try:
            final = self._execute_gates(run)
        except Exception as error:  # noqa: BLE001 - the run must reach a terminal state
            LOGGER.exception("Run %s aborted", run_id)
            return self.store.update_run(
                run_id,
                status=RunStatus.ABORTED,
                passed=False,
                failure_message=f"Run aborted: {error}",
                completed_at=utc_now(),
            )
        LOGGER.info("Run %s finished %s", run_id, final.status.value)
        return final

    def _execute_gates(self, run: Run) -> Run:
        context = self.build_context(run)
        for number in sorted(run.gate_numbers):
            gate = self._gate(number)
            self.store.update_run(run.id, current_gate=number)
            gate_result = self.run_gate(run.id, gate, context)
            if gate_result.passed:
                continue
            blocking = self._blocking_result(run.id, number)
            return self.store.update_run(
                run.id,
                status=RunStatus.FAILED,
                passed=False,
                failed_at=number,
                failed_validator_code=blocking.code if blocking else None,
                failure_message=blocking.message if blocking else f"Gate {number} failed",
                completed_at=utc_now(),
            )
        return self.store.update_run(run.id, status=RunStatus.PASSED, passed=True, completed_at=utc_now())

    def _blocking_result(self, run_id: str, gate_number: int) -> ValidatorResult | None:
        for result in self.store.list_validator_results(run_id):
            if (
                result.gate_number == gate_number
                and result.status is ValidatorStatus.FAILED
                and result.is_hard_block
            ):
                return result
        return None

    # ---------------------------------------------------------------- background
    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.max_concurrent_runs,
                    thread_name_prefix="gatekeeper-run",
                )
            return self._executor

    def submit(self, run_id: str) -> Future:
        """Queue ``run_id`` for execution on the bounded worker pool."""

        LOGGER.debug("Queued run %s", run_id)
        return self._pool().submit(self.execute, run_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


__all__ = [
    "BYPASSED_MESSAGE",
    "DISABLED_MESSAGE",
    "EXECUTION_ERROR_PREFIX",
    "GateOrchestrator",
    "InvalidRunStateError",
    "ServicesFactory",
    "summarize_gate",
]
