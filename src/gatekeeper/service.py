"""Caller-facing operations: create runs, inspect results, rerun, bypass, commit."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping

from .manifest import Manifest
from .orchestrator import GateOrchestrator, InvalidRunStateError, ServicesFactory
from .paths import PathResolverService
from .settings import GatekeeperSettings
from .store.artifacts import ArtifactStore
from .store.schema import Run, RunResults, RunStatus, RunType, utc_now
from .store.store import RunStore
from .tools.vcs import GitRepository, ensure_ignored_directory
from .validators.registry import gate_for_code, get_gate, get_validator

LOGGER = logging.getLogger(__name__)

ManifestInput = str | Mapping[str, Any] | Manifest | None


def _new_run_id() -> str:
    return uuid.uuid4().hex


def _manifest_json(manifest: ManifestInput) -> str | None:
    if manifest is None:
        return None
    if isinstance(manifest, Manifest):
        return manifest.to_json()
    if isinstance(manifest, str):
        return manifest
    return json.dumps(dict(manifest))


def _bypass_set(codes: Iterable[str]) -> list[str]:
    normalized = {str(code).strip().upper() for code in codes if str(code).strip()}
    for code in normalized:
        get_validator(code)
    return sorted(normalized)


class GatekeeperService:
    """Facade wiring settings, persistence, artifacts and the orchestrator."""

    def __init__(
        self,
        settings: GatekeeperSettings,
        store: RunStore,
        orchestrator: GateOrchestrator,
        artifacts: ArtifactStore,
    ) -> None:
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.artifacts = artifacts

    @classmethod
    def from_settings(
        cls,
        settings: GatekeeperSettings,
        *,
        services_factory: ServicesFactory | None = None,
    ) -> "GatekeeperService":
        ensure_ignored_directory(settings.data_root)
        store = RunStore.from_settings(settings)
        artifacts = ArtifactStore.from_settings(settings)
        resolver = PathResolverService.from_settings(settings, artifacts)
        orchestrator = GateOrchestrator(
            store,
            settings,
            resolver=resolver,
            services_factory=services_factory,
        )
        return cls(settings, store, orchestrator, artifacts)

    @classmethod
    def from_config(cls, config_path: Path | str | None = None, **kwargs: Any) -> "GatekeeperService":
        return cls.from_settings(GatekeeperSettings.load(config_path), **kwargs)

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.store.close()

    def __enter__(self) -> "GatekeeperService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------ runs
    def _start(self, run: Run, *, background: bool) -> Run:
        self.store.create_run(run)
        if background:
            self.orchestrator.submit(run.id)
            return run
        return self.orchestrator.execute(run.id)

    def create_run(
        self,
        *,
        project_path: Path | str | None = None,
        base_ref: str = "HEAD",
        target_ref: str = "HEAD",
        task_prompt: str = "",
        manifest: ManifestInput = None,
        test_file_path: str | None = None,
        output_id: str | None = None,
        danger_mode: bool = False,
        bypassed_validators: Iterable[str] = (),
        run_type: RunType = RunType.CONTRACT,
        contract_run_id: str | None = None,
        background: bool = False,
    ) -> Run:
        """Create a run and execute its gates.

        With ``background`` the run is queued and returned while still PENDING;
        otherwise the terminal record is returned.
        """

        run_type = RunType(run_type)
        if run_type is RunType.EXECUTION and not contract_run_id:
            raise InvalidRunStateError("Execution runs must reference a contract run")
        run = Run(
            id=_new_run_id(),
            output_id=output_id,
            run_type=run_type,
            contract_run_id=contract_run_id,
            project_path=str(Path(project_path or self.settings.repo_root).resolve()),
            base_ref=base_ref,
            target_ref=target_ref,
            task_prompt=task_prompt,
            manifest_json=_manifest_json(manifest),
            test_file_path=test_file_path,
            danger_mode=danger_mode,
            bypassed_validators=_bypass_set(bypassed_validators),
            gate_numbers=list(self.settings.gates_for(run_type.value)),
        )
        LOGGER.info("Created %s run %s for %s", run_type.value, run.id, run.project_path)
        return self._start(run, background=background)

    def create_execution_run(
        self,
        contract_run_id: str,
        *,
        target_ref: str | None = None,
        background: bool = False,
    ) -> Run:
        """Start an EXECUTION run for the change declared by a passed CONTRACT run."""

        contract = self.store.require_run(contract_run_id)
        if contract.run_type is not RunType.CONTRACT:
            raise InvalidRunStateError(f"Run {contract_run_id} is not a contract run")
        if contract.status is not RunStatus.PASSED:
            raise InvalidRunStateError(
                f"Contract run {contract_run_id} is {contract.status.value}; it must pass first"
            )
        return self.create_run(
            project_path=contract.project_path,
            base_ref=contract.base_ref,
            target_ref=target_ref or contract.target_ref,
            task_prompt=contract.task_prompt,
            manifest=contract.manifest_json,
            test_file_path=contract.test_file_path,
            output_id=contract.output_id,
            danger_mode=contract.danger_mode,
            bypassed_validators=contract.bypassed_validators,
            run_type=RunType.EXECUTION,
            contract_run_id=contract.id,
            background=background,
        )

    def get_run(self, run_id: str) -> Run:
        return self.store.require_run(run_id)

    def get_run_results(self, run_id: str) -> RunResults:
        return self.store.get_run_results(run_id)

    def list_runs(self, *, limit: int | None = 20) -> list[Run]:
        return self.store.list_runs(limit=limit)

    # ------------------------------------------------------------ corrections
    def _rerun(
        self,
        source: Run,
        gate_number: int,
        bypassed: Iterable[str],
        *,
        background: bool,
    ) -> Run:
        if not source.status.terminal:
            raise InvalidRunStateError(
                f"Run {source.id} is {source.status.value}; wait for it to finish before rerunning"
            )
        get_gate(gate_number)
        rerun = Run(
            id=_new_run_id(),
            output_id=source.output_id,
            run_type=source.run_type,
            contract_run_id=source.contract_run_id,
            parent_run_id=source.id,
            project_path=source.project_path,
            base_ref=source.base_ref,
            target_ref=source.target_ref,
            task_prompt=source.task_prompt,
            manifest_json=source.manifest_json,
            test_file_path=source.test_file_path,
            danger_mode=source.danger_mode,
            bypassed_validators=_bypass_set(bypassed),
            gate_numbers=[gate_number],
        )
        LOGGER.info("Rerunning gate %s of run %s as %s", gate_number, source.id, rerun.id)
        return self._start(rerun, background=background)

    def rerun_gate(self, run_id: str, gate_number: int, *, background: bool = False) -> Run:
        """Re-execute one gate as a new run that inherits inputs and bypasses."""

        source = self.store.require_run(run_id)
        return self._rerun(source, gate_number, source.bypassed_validators, background=background)

    def bypass_validator(self, run_id: str, code: str, *, background: bool = False) -> Run:
        """Add ``code`` to the run's bypass set and rerun the gate that owns it."""

        source = self.store.require_run(run_id)
        code = code.strip().upper()
        gate_number = gate_for_code(code)
        LOGGER.info("Bypassing %s for run %s", code, run_id)
        return self._rerun(
            source,
            gate_number,
            [*source.bypassed_validators, code],
            background=background,
        )

    # -------------------------------------------------------------------- git
    def _repository(self, run: Run) -> GitRepository:
        return GitRepository(
            run.project_path,
            timeout=self.settings.runners.timeout("git"),
            worktrees_root=self.settings.worktrees_root,
        )

    def commit_run(self, run_id: str, message: str) -> Run:
        """Commit the working tree of a passed EXECUTION run and record the commit on it."""

        run = self.store.require_run(run_id)
        if run.run_type is not RunType.EXECUTION:
            raise InvalidRunStateError("Only execution runs can be committed")
        if run.status is not RunStatus.PASSED:
            raise InvalidRunStateError(f"Run {run_id} is {run.status.value}; only PASSED runs can be committed")
        if run.commit_hash:
            raise InvalidRunStateError(f"Run {run_id} is already committed as {run.commit_hash}")
        sha = self._repository(run).commit_all(message)
        LOGGER.info("Committed run %s as %s", run_id, sha)
        return self.store.update_run(
            run_id,
            commit_hash=sha,
            commit_message=message.strip(),
            committed_at=utc_now(),
        )

    def push_run(self, run_id: str, remote: str = "origin", branch: str | None = None) -> Run:
        """Push the commit recorded on ``run_id``; raises :class:`PushError` with a failure kind."""

        run = self.store.require_run(run_id)
        if not run.commit_hash:
            raise InvalidRunStateError(f"Run {run_id} has no commit to push")
        self._repository(run).push(remote, branch)
        LOGGER.info("Pushed run %s (%s) to %s", run_id, run.commit_hash, remote)
        return run


__all__ = ["GatekeeperService", "InvalidRunStateError", "ManifestInput"]
