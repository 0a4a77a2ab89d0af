"""
BLE Validation — Analysis Engine Contract

Every phase engine implements ValidationEngine:

  initialize()   acquire prerequisites; raises EngineInitError when missing
  validate()     run the phase, return one ValidationPhaseResult
  cleanup()      idempotent release, safe on every exit path
  get_progress() non-blocking snapshot, callable at any time

The controller only ever sees these protocols. Concrete engines derive from
BaseAnalysisEngine, which supplies the lifecycle bookkeeping, progress
tracking and phase-result construction.
"""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from blevalidation.primitives.common import elapsed_ms, utc_now
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationPhaseResult,
    ValidationProgress,
    ValidationResult,
    ValidationStatus,
)

logger = structlog.get_logger()


# ── Contracts ────────────────────────────────────────────────────────────────


@runtime_checkable
class ValidationEngine(Protocol):
    engine_name: str
    version: str

    async def initialize(self) -> None: ...

    async def validate(self) -> ValidationPhaseResult: ...

    async def cleanup(self) -> None: ...

    def get_progress(self) -> ValidationProgress: ...


@runtime_checkable
class StaticAnalysisContract(ValidationEngine, Protocol):
    async def analyze_native_modules(self) -> list[ValidationResult]: ...

    async def analyze_bridge_layer(self) -> list[ValidationResult]: ...

    async def analyze_code_quality(self) -> list[ValidationResult]: ...

    async def validate_interfaces(self) -> list[ValidationResult]: ...


@runtime_checkable
class DatabaseSimulationContract(ValidationEngine, Protocol):
    async def validate_database_functions(self) -> list[ValidationResult]: ...

    async def simulate_end_to_end_flows(self) -> list[ValidationResult]: ...

    async def run_concurrent_operations(self, user_count: int) -> list[ValidationResult]: ...

    async def validate_data_integrity(self) -> list[ValidationResult]: ...


@runtime_checkable
class SecurityAuditContract(ValidationEngine, Protocol):
    async def audit_token_security(self) -> list[ValidationResult]: ...

    async def audit_database_security(self) -> list[ValidationResult]: ...

    async def audit_ble_payload_security(self) -> list[ValidationResult]: ...

    async def audit_organization_isolation(self) -> list[ValidationResult]: ...


@runtime_checkable
class PerformanceAnalysisContract(ValidationEngine, Protocol):
    async def analyze_scalability(self, max_users: int) -> list[ValidationResult]: ...

    async def estimate_resource_usage(self) -> list[ValidationResult]: ...

    async def identify_bottlenecks(self) -> list[ValidationResult]: ...

    async def validate_performance_requirements(self) -> list[ValidationResult]: ...


@runtime_checkable
class ConfigurationAuditContract(ValidationEngine, Protocol):
    async def audit_app_configuration(self) -> list[ValidationResult]: ...

    async def audit_build_configuration(self) -> list[ValidationResult]: ...

    async def audit_permissions(self) -> list[ValidationResult]: ...

    async def validate_deployment_readiness(self) -> list[ValidationResult]: ...


# ── Progress ─────────────────────────────────────────────────────────────────


class ProgressTracker:
    """
    Single-writer progress state. Every update builds a fresh
    ValidationProgress and rebinds it, so a reader never observes a
    half-written value; ``snapshot()`` hands out a deep copy.
    """

    def __init__(self, phase: str, total_steps: int = 0) -> None:
        self._phase = phase
        self._total = total_steps
        self._state = ValidationProgress(current_phase=phase, total_steps=total_steps)

    def reset(self, total_steps: int | None = None) -> None:
        if total_steps is not None:
            self._total = total_steps
        self._state = ValidationProgress(current_phase=self._phase, total_steps=self._total)

    def update(self, step: str, completed: bool = False) -> None:
        current = self._state
        done = current.completed_steps + (1 if completed else 0)
        done = min(done, self._total) if self._total else done
        self._state = current.model_copy(update={
            "current_step": step,
            "completed_steps": done,
            "percent_complete": round(done / self._total * 100) if self._total else 0.0,
        }, deep=True)

    def warn(self, message: str) -> None:
        current = self._state
        self._state = current.model_copy(
            update={"warnings": [*current.warnings, message]}, deep=True,
        )

    def error(self, message: str) -> None:
        current = self._state
        self._state = current.model_copy(
            update={"errors": [*current.errors, message]}, deep=True,
        )

    def complete(self) -> None:
        current = self._state
        self._state = current.model_copy(update={
            "current_step": "complete",
            "completed_steps": self._total,
            "percent_complete": 100.0,
        }, deep=True)

    def snapshot(self) -> ValidationProgress:
        return self._state.snapshot()


# ── Phase result construction ────────────────────────────────────────────────


def build_phase_result(
    phase_name: str,
    results: list[ValidationResult],
    started: datetime,
    recommendations: list[str] | None = None,
    summary: str | None = None,
) -> ValidationPhaseResult:
    """Derive status, critical subset, summary and recommendations."""
    finished = utc_now()
    status = ValidationPhaseResult.derive_status(results)
    critical = [r for r in results if r.severity == Severity.CRITICAL]

    if recommendations is None:
        seen: dict[str, None] = {}
        for r in results:
            if r.is_issue:
                for rec in r.recommendations:
                    seen.setdefault(rec, None)
        recommendations = list(seen)

    if summary is None:
        failed = sum(1 for r in results if r.status == ValidationStatus.FAIL)
        conditional = sum(1 for r in results if r.status == ValidationStatus.CONDITIONAL)
        passed = sum(1 for r in results if r.status == ValidationStatus.PASS)
        summary = (
            f"{phase_name}: {len(results)} checks, {passed} passed, "
            f"{failed} failed, {conditional} conditional, "
            f"{len(critical)} critical"
        )

    return ValidationPhaseResult(
        phase_name=phase_name,
        status=status,
        start_time=started,
        end_time=finished,
        duration_ms=elapsed_ms(started, finished),
        results=results,
        summary=summary,
        critical_issues=critical,
        recommendations=recommendations,
    )


def error_phase_result(
    phase_id: str,
    phase_name: str,
    category: ValidationCategory,
    error: BaseException | str,
    started: datetime | None = None,
) -> ValidationPhaseResult:
    """A FAIL phase carrying exactly one synthetic CRITICAL finding."""
    started = started or utc_now()
    reason = str(error)
    finding = ValidationResult(
        id=f"{phase_id}_error",
        name=f"{phase_name} Phase Error",
        status=ValidationStatus.FAIL,
        severity=Severity.CRITICAL,
        category=category,
        message=f"Phase execution failed: {reason}",
        details={"error_type": type(error).__name__ if not isinstance(error, str) else "Error"},
        evidence=[Evidence(
            type=EvidenceType.LOG_ENTRY,
            location=phase_id,
            details=reason,
            severity=Severity.CRITICAL,
        )],
        recommendations=[f"Fix {phase_name} phase execution error before proceeding"],
    )
    return build_phase_result(
        phase_name,
        [finding],
        started,
        summary=f"{phase_name} phase did not complete: {reason}",
    )


# ── Base engine ──────────────────────────────────────────────────────────────


class BaseAnalysisEngine(abc.ABC):
    """
    Lifecycle bookkeeping shared by the concrete engines.

    Subclasses implement ``_setup`` (raise EngineInitError for missing
    prerequisites), ``_run`` (returns findings) and optionally ``_teardown``.
    Each initialize() starts from a clean slate, so cycles never leak into
    one another.
    """

    engine_name: str = "AnalysisEngine"
    version: str = "1.0.0"
    phase_id: str = ""
    phase_name: str = ""
    category: ValidationCategory = ValidationCategory.NATIVE
    total_steps: int = 1

    def __init__(self) -> None:
        self._initialized = False
        self._progress = ProgressTracker(self.phase_name, self.total_steps)
        self._log = logger.bind(system="validation.engine", engine=self.engine_name)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        self._progress.reset(self.total_steps)
        self._reset_state()
        await self._setup()
        self._initialized = True
        self._log.debug("engine_initialized")

    async def validate(self) -> ValidationPhaseResult:
        started = utc_now()
        if not self._initialized:
            return error_phase_result(
                self.phase_id, self.phase_name, self.category,
                f"{self.engine_name} validate() called before initialize()", started,
            )
        try:
            results = await self._run()
        except Exception as exc:
            self._log.error("engine_validate_failed", error=str(exc))
            self._progress.error(str(exc))
            return error_phase_result(
                self.phase_id, self.phase_name, self.category, exc, started,
            )
        self._progress.complete()
        phase = build_phase_result(self.phase_name, results, started)
        self._log.info(
            "engine_validate_complete",
            status=phase.status.value,
            results=len(results),
            critical=len(phase.critical_issues),
            duration_ms=phase.duration_ms,
        )
        return phase

    async def cleanup(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        await self._teardown()
        self._log.debug("engine_cleaned_up")

    def get_progress(self) -> ValidationProgress:
        return self._progress.snapshot()

    # ── Hooks ────────────────────────────────────────────────────────────────

    def _reset_state(self) -> None:
        """Drop anything left over from a previous cycle."""

    @abc.abstractmethod
    async def _setup(self) -> None: ...

    @abc.abstractmethod
    async def _run(self) -> list[ValidationResult]: ...

    async def _teardown(self) -> None:
        self._reset_state()

    # ── Finding helpers ──────────────────────────────────────────────────────

    def _finding(
        self,
        id: str,
        name: str,
        passed: bool,
        message: str,
        severity: Severity = Severity.MEDIUM,
        category: ValidationCategory | None = None,
        *,
        conditional: bool = False,
        details: dict[str, Any] | None = None,
        evidence: list[Evidence] | None = None,
        recommendations: list[str] | None = None,
    ) -> ValidationResult:
        """
        PASS findings are downgraded to INFO so a passing check never
        carries a CRITICAL label.
        """
        if passed:
            status = ValidationStatus.PASS
            severity = Severity.INFO
        elif conditional:
            status = ValidationStatus.CONDITIONAL
        else:
            status = ValidationStatus.FAIL
        return ValidationResult(
            id=id,
            name=name,
            status=status,
            severity=severity,
            category=category or self.category,
            message=message,
            details=details,
            evidence=evidence or [],
            recommendations=[] if passed else (recommendations or []),
        )
