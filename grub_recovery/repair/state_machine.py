"""Repair state machine.

One ``run()`` call is one RepairAttempt. The machine is strictly
sequential; every collaborator (diagnostics, checkpoints, sandbox, repair
profile selection, metrics) is injected so each phase can be exercised in
isolation.

States:
    Idle -> Diagnosing -> Healthy | NeedsRepair
    NeedsRepair -> CheckpointPending -> SandboxPreparing -> Repairing
    Repairing -> Verifying -> Completed | CompletedWithWarnings
    SandboxPreparing | Repairing -> RollingBack -> RolledBack | RollbackFailed
    CheckpointPending | SandboxPreparing | Repairing -> Failed
    Idle -> NeedsRepair (forced repair skips diagnosis)

The sandbox is always torn down before verification or rollback.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from grub_recovery.checkpoint.manager import CheckpointManager
from grub_recovery.config.settings import RecoveryConfig
from grub_recovery.diagnostics.engine import run_diagnostics
from grub_recovery.domain.models import (
    HealthReport,
    RepairAttempt,
    RepairOutcome,
    SystemProfile,
)
from grub_recovery.exceptions import (
    CheckpointError,
    MountLeakError,
    RepairCommandError,
    RollbackError,
    SandboxError,
)
from grub_recovery.logging import EventLogger, LoggerFactory, new_job_id
from grub_recovery.sandbox.session import SandboxSession, setup_sandbox
from grub_recovery.services.metrics import MetricsStore
from grub_recovery.system.session_lock import repair_guard

from .profiles import RepairProfile, execute_steps, select_repair_profile


class RepairState(Enum):
    IDLE = "idle"
    DIAGNOSING = "diagnosing"
    HEALTHY = "healthy"
    NEEDS_REPAIR = "needs-repair"
    CHECKPOINT_PENDING = "checkpoint-pending"
    SANDBOX_PREPARING = "sandbox-preparing"
    REPAIRING = "repairing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed-with-warnings"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"
    FAILED = "failed"


TRANSITIONS: dict[RepairState, frozenset[RepairState]] = {
    RepairState.IDLE: frozenset({RepairState.DIAGNOSING, RepairState.NEEDS_REPAIR}),
    RepairState.DIAGNOSING: frozenset({RepairState.HEALTHY, RepairState.NEEDS_REPAIR}),
    RepairState.NEEDS_REPAIR: frozenset({RepairState.CHECKPOINT_PENDING}),
    RepairState.CHECKPOINT_PENDING: frozenset(
        {RepairState.SANDBOX_PREPARING, RepairState.FAILED}
    ),
    RepairState.SANDBOX_PREPARING: frozenset(
        {RepairState.REPAIRING, RepairState.ROLLING_BACK, RepairState.FAILED}
    ),
    RepairState.REPAIRING: frozenset(
        {RepairState.VERIFYING, RepairState.ROLLING_BACK, RepairState.FAILED}
    ),
    RepairState.VERIFYING: frozenset(
        {RepairState.COMPLETED, RepairState.COMPLETED_WITH_WARNINGS}
    ),
    RepairState.ROLLING_BACK: frozenset(
        {RepairState.ROLLED_BACK, RepairState.ROLLBACK_FAILED}
    ),
}

TERMINAL_OUTCOMES = {
    RepairState.COMPLETED: RepairOutcome.COMPLETED,
    RepairState.COMPLETED_WITH_WARNINGS: RepairOutcome.COMPLETED_WITH_WARNINGS,
    RepairState.ROLLED_BACK: RepairOutcome.ROLLED_BACK,
    RepairState.ROLLBACK_FAILED: RepairOutcome.ROLLBACK_FAILED,
    RepairState.FAILED: RepairOutcome.FAILED,
}


class RepairStateMachine:
    """Drives a single repair attempt from diagnosis to a terminal state."""

    def __init__(
        self,
        profile: SystemProfile,
        config: RecoveryConfig,
        *,
        diagnose: Optional[Callable[[SystemProfile], HealthReport]] = None,
        checkpoints: Optional[CheckpointManager] = None,
        sandbox_factory: Optional[Callable[[SystemProfile, Path], SandboxSession]] = None,
        profile_selector: Callable[[SystemProfile], RepairProfile] = select_repair_profile,
        metrics: Optional[MetricsStore] = None,
        lock_factory=repair_guard,
        job_id: Optional[str] = None,
    ):
        self.profile = profile
        self.config = config
        self.job_id = job_id or new_job_id("repair")
        self.log = LoggerFactory.for_repair(self.job_id)
        self.metrics = metrics if metrics is not None else MetricsStore(config.metrics_path)
        self.checkpoints = checkpoints or CheckpointManager(
            config, metrics=self.metrics, job_id=self.job_id
        )
        self._diagnose = diagnose or self._default_diagnose
        self._sandbox_factory = sandbox_factory or setup_sandbox
        self._select_profile = profile_selector
        self._lock_factory = lock_factory
        self.state = RepairState.IDLE
        self.attempt: Optional[RepairAttempt] = None

    def _default_diagnose(self, profile: SystemProfile) -> HealthReport:
        return run_diagnostics(
            profile,
            max_workers=self.config.parallel_jobs,
            probe_timeout=self.config.probe_timeout,
            job_id=self.job_id,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, target: RepairState) -> None:
        """Move to ``target``; raises RuntimeError on an illegal transition."""
        allowed = TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise RuntimeError(f"Illegal repair transition {self.state.value} -> {target.value}")
        EventLogger.log_state_transition(self.log, self.state.value, target.value)
        self.state = target
        if self.attempt is not None:
            self.attempt.final_state = target.value
            if target in TERMINAL_OUTCOMES:
                self.attempt.outcome = TERMINAL_OUTCOMES[target]

    def _finish(self, attempt: RepairAttempt) -> RepairAttempt:
        attempt.finished_at = datetime.now()
        outcome = attempt.outcome.value if attempt.outcome else self.state.value
        EventLogger.log_attempt_finished(
            self.log,
            outcome,
            attempt_id=attempt.attempt_id,
            duration_seconds=round(attempt.duration_seconds or 0.0, 2),
        )
        for line in attempt.summary():
            if attempt.exit_code:
                self.log.error(line)
            else:
                self.log.info(line)
        return attempt

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def run(self, *, force: bool = False) -> RepairAttempt:
        """Execute one attempt.

        Raises:
            RepairInProgressError: If another attempt holds the repair lock
            RuntimeError: If the machine has already been run
        """
        if self.attempt is not None:
            raise RuntimeError("A state machine runs exactly one attempt")
        attempt = RepairAttempt(
            attempt_id=self.job_id,
            started_at=datetime.now(),
            target_disk=self.profile.target_disk,
            forced=force,
        )
        self.attempt = attempt
        with self._lock_factory(self.config.lock_path):
            if force:
                self.log.warning("Forced repair requested, skipping diagnosis")
                self.transition(RepairState.NEEDS_REPAIR)
            else:
                self.transition(RepairState.DIAGNOSING)
                report = self._diagnose(self.profile)
                attempt.pre_report = report
                self.metrics.record_health(report)
                if not report.needs_repair:
                    self.log.success("System is healthy, no repair needed")
                    self.transition(RepairState.HEALTHY)
                    return self._finish(attempt)
                self.transition(RepairState.NEEDS_REPAIR)
            return self._repair(attempt)

    def _repair(self, attempt: RepairAttempt) -> RepairAttempt:
        self.transition(RepairState.CHECKPOINT_PENDING)
        try:
            attempt.checkpoint = self.checkpoints.create(self.profile)
        except CheckpointError as error:
            attempt.checkpoint_error = str(error)
            self.log.error(f"Checkpoint failed: {error}")
            if not self.config.allow_repair_without_checkpoint:
                attempt.error = f"no checkpoint could be created: {error}"
                attempt.rollback_note = "no checkpoint"
                self.transition(RepairState.FAILED)
                return self._finish(attempt)
            self.log.warning("Proceeding without a checkpoint; rollback disabled")
        attempt.rollback_applicable = self.checkpoints.supports_rollback(attempt.checkpoint)

        self.transition(RepairState.SANDBOX_PREPARING)
        try:
            session = self._sandbox_factory(self.profile, self.config.mount_point)
        except SandboxError as error:
            if isinstance(error, MountLeakError):
                attempt.leaked_mounts.extend(error.mountpoints)
            return self._fail(attempt, error)

        self.transition(RepairState.REPAIRING)
        failure: Optional[Exception] = None
        try:
            repair_profile = self._select_profile(self.profile)
            self.log.info(f"Running {repair_profile.name} repair procedure")
            steps = repair_profile.steps(
                self.profile, session.root, bootloader_id=self.config.bootloader_id
            )
            attempt.warnings.extend(
                execute_steps(
                    session, steps, timeout=self.config.operation_timeout, job_log=self.log
                )
            )
        except (RepairCommandError, SandboxError) as error:
            failure = error
        finally:
            self._teardown(attempt, session)

        if failure is not None:
            return self._fail(attempt, failure)
        return self._verify(attempt)

    def _teardown(self, attempt: RepairAttempt, session: SandboxSession) -> None:
        try:
            session.teardown()
        except MountLeakError as error:
            self.log.critical(str(error))
            attempt.leaked_mounts.extend(error.mountpoints)

    def _verify(self, attempt: RepairAttempt) -> RepairAttempt:
        self.transition(RepairState.VERIFYING)
        report = self._diagnose(self.profile)
        attempt.post_report = report
        self.metrics.record_health(report)
        self.metrics.record_repair()
        if report.needs_repair:
            attempt.warnings.append(
                f"post-repair diagnostics still report {report.total_issues} issue(s)"
            )
            self.transition(RepairState.COMPLETED_WITH_WARNINGS)
        else:
            self.log.success("Post-repair health check passed")
            self.transition(RepairState.COMPLETED)
        return self._finish(attempt)

    def _fail(self, attempt: RepairAttempt, error: Exception) -> RepairAttempt:
        attempt.error = str(error)
        self.log.error(f"Repair failed: {error}")
        checkpoint = attempt.checkpoint
        if not attempt.rollback_applicable:
            if checkpoint is None:
                attempt.rollback_note = attempt.rollback_note or "no checkpoint"
            else:
                attempt.rollback_note = (
                    f"archive checkpoints are not rolled back automatically; "
                    f"restore from {checkpoint.location}"
                )
            self.transition(RepairState.FAILED)
            return self._finish(attempt)
        if not self.config.auto_rollback:
            attempt.rollback_note = "automatic rollback disabled"
            self.transition(RepairState.FAILED)
            return self._finish(attempt)

        self.transition(RepairState.ROLLING_BACK)
        attempt.rollback_attempted = True
        try:
            self.checkpoints.rollback(checkpoint)
        except RollbackError as rollback_error:
            attempt.rollback_note = str(rollback_error)
            self.log.critical(f"Rollback failed: {rollback_error}")
            self.transition(RepairState.ROLLBACK_FAILED)
        else:
            self.transition(RepairState.ROLLED_BACK)
        return self._finish(attempt)
