"""
BLE Validation — Validation Controller

Runs the enabled phases strictly in order against whatever engines were
registered, and folds each ValidationPhaseResult into one
BLESystemValidationResult.

Failure handling per phase:
  initialize() raises  -> FAIL phase with one synthetic CRITICAL finding
  validate() times out -> same, built from EngineTimeoutError; the call is
                          abandoned (left running, never awaited again)
  cleanup()            -> always awaited for an engine that was initialized

Only MissingEngineError escapes execute_validation(), and it is raised
before any phase runs. The aggregate is touched only by the controller's
own sequential loop; engines never see it.
"""

from __future__ import annotations

import asyncio
import random
import string
import time
from typing import Any

import structlog

from blevalidation.config import LoggingConfig, ValidationConfig
from blevalidation.primitives.common import elapsed_ms, utc_now
from blevalidation.systems.validation.categorization import IssueCategorizationEngine
from blevalidation.systems.validation.engine import (
    ConfigurationAuditContract,
    DatabaseSimulationContract,
    PerformanceAnalysisContract,
    SecurityAuditContract,
    StaticAnalysisContract,
    ValidationEngine,
    error_phase_result,
)
from blevalidation.systems.validation.errors import (
    EngineInitError,
    EngineTimeoutError,
    ExportError,
    MissingEngineError,
)
from blevalidation.systems.validation.serializer import ValidationResultSerializer
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    ConfidenceLevel,
    OutputFormat,
    ProductionReadiness,
    Severity,
    ValidationCategory,
    ValidationPhaseResult,
    ValidationProgress,
    ValidationStatus,
    worst_status,
)
from blevalidation.telemetry.logging import (
    ValidationLogCapture,
    ValidationLogEntry,
    attach_capture,
    detach_capture,
    setup_logging,
)

logger = structlog.get_logger()

VALIDATION_VERSION = "1.0.0"

PHASE_NAMES: dict[str, str] = {
    "static_analysis": "Static Analysis",
    "database_simulation": "Database Simulation",
    "security_audit": "Security Audit",
    "performance_analysis": "Performance Analysis",
    "configuration_audit": "Configuration Audit",
}

PHASE_CATEGORIES: dict[str, ValidationCategory] = {
    "static_analysis": ValidationCategory.NATIVE,
    "database_simulation": ValidationCategory.DATABASE,
    "security_audit": ValidationCategory.SECURITY,
    "performance_analysis": ValidationCategory.PERFORMANCE,
    "configuration_audit": ValidationCategory.CONFIG,
}

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_execution_id() -> str:
    """``ble-validation-<base36 epoch ms>-<6 random base36 chars>``."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"ble-validation-{stamp}-{suffix}"


class ValidationController:
    """
    Orchestrates one validation run at a time.

    Engines are injected through the register_* methods and are only ever
    used through the ValidationEngine protocol, so tests can register fakes.
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        log_capture: ValidationLogCapture | None = None,
        categorizer: IssueCategorizationEngine | None = None,
    ) -> None:
        self._config = config or ValidationConfig()
        self._capture = log_capture or ValidationLogCapture()
        self._categorizer = categorizer or IssueCategorizationEngine(
            target_users=self._config.max_concurrent_users,
        )
        self._serializer = ValidationResultSerializer()
        self._engines: dict[str, ValidationEngine] = {}
        self._initialized: dict[str, ValidationEngine] = {}

        self._result: BLESystemValidationResult | None = None
        self._last_completed: BLESystemValidationResult | None = None
        self._running = False
        self._started_at: float | None = None
        self._current_phase: str | None = None
        self._completed_phases = 0
        self._errors: list[str] = []
        self._warnings: list[str] = []
        # validate() calls that lost the timeout race and are still running
        self._abandoned: dict[asyncio.Task[ValidationPhaseResult], str] = {}
        if not structlog.is_configured():
            # The capture only sees events routed through stdlib logging
            setup_logging(LoggingConfig(level=self._config.log_level))
        self._log = logger.bind(system="validation.controller")

    # ── Registration ─────────────────────────────────────────────────────────

    def register_static_analysis_engine(self, engine: StaticAnalysisContract) -> None:
        self._register("static_analysis", engine, StaticAnalysisContract)

    def register_database_simulation_engine(self, engine: DatabaseSimulationContract) -> None:
        self._register("database_simulation", engine, DatabaseSimulationContract)

    def register_security_audit_engine(self, engine: SecurityAuditContract) -> None:
        self._register("security_audit", engine, SecurityAuditContract)

    def register_performance_analysis_engine(self, engine: PerformanceAnalysisContract) -> None:
        self._register("performance_analysis", engine, PerformanceAnalysisContract)

    def register_configuration_audit_engine(self, engine: ConfigurationAuditContract) -> None:
        self._register("configuration_audit", engine, ConfigurationAuditContract)

    def _register(self, phase: str, engine: ValidationEngine, contract: type) -> None:
        if self._running:
            raise RuntimeError("Cannot register engines while a validation run is in progress")
        if not isinstance(engine, contract):
            raise TypeError(
                f"{type(engine).__name__} does not implement {contract.__name__}"
            )
        self._engines[phase] = engine
        self._log.info(
            "engine_registered",
            phase=phase,
            engine=getattr(engine, "engine_name", type(engine).__name__),
            version=getattr(engine, "version", ""),
        )

    @property
    def registered_phases(self) -> list[str]:
        return list(self._engines)

    @property
    def categorizer(self) -> IssueCategorizationEngine:
        return self._categorizer

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute_validation(self) -> BLESystemValidationResult:
        if self._running:
            raise RuntimeError("A validation run is already in progress")

        enabled = list(self._config.enabled_phases)
        missing = [p for p in enabled if p not in self._engines]
        if missing:
            raise MissingEngineError(missing)

        execution_id = generate_execution_id()
        self._running = True
        self._started_at = time.monotonic()
        self._current_phase = None
        self._completed_phases = 0
        self._errors = []
        self._warnings = []
        self._capture.clear()
        attach_capture(self._capture)

        result = BLESystemValidationResult(
            execution_id=execution_id,
            validation_version=VALIDATION_VERSION,
            enabled_phases=enabled,
        )
        self._result = result
        started = utc_now()

        try:
            with structlog.contextvars.bound_contextvars(execution_id=execution_id):
                self._log.info(
                    "validation_started",
                    phases=enabled,
                    timeout_ms=self._config.timeout_ms,
                    max_concurrent_users=self._config.max_concurrent_users,
                )
                if not enabled:
                    self._log.info("validation_no_phases_enabled")

                for phase in enabled:
                    self._current_phase = phase
                    with structlog.contextvars.bound_contextvars(phase=phase):
                        phase_result = await self._run_phase(phase)
                    self._merge(result, phase, phase_result)
                    self._completed_phases += 1

                self._current_phase = None
                result.total_execution_time_ms = elapsed_ms(started)
                self._finalize(result)
                self._log.info(
                    "validation_complete",
                    duration_ms=result.total_execution_time_ms,
                    overall_status=result.overall_status.value,
                    production_readiness=result.production_readiness.value,
                    confidence=result.confidence_level.value,
                    total_issues=result.total_issues_found,
                )
        except BaseException:
            # Cancelled from outside: keep the partial aggregate readable
            result.aborted = True
            result.total_execution_time_ms = elapsed_ms(started)
            self._log.error("validation_aborted", completed_phases=self._completed_phases)
            raise
        finally:
            self._running = False
            self._current_phase = None
            detach_capture(self._capture)

        self._last_completed = result
        return result

    def _remaining_ms(self) -> int:
        if self._started_at is None:
            return self._config.timeout_ms
        spent = (time.monotonic() - self._started_at) * 1000
        return max(0, int(self._config.timeout_ms - spent))

    async def _run_phase(self, phase: str) -> ValidationPhaseResult:
        engine = self._engines[phase]
        name = PHASE_NAMES[phase]
        category = PHASE_CATEGORIES[phase]
        started = utc_now()
        self._log.info("phase_started", engine=getattr(engine, "engine_name", ""))

        remaining = self._remaining_ms()
        if remaining <= 0:
            error = EngineTimeoutError(phase, self._config.timeout_ms)
            self._errors.append(str(error))
            self._log.error("phase_timeout", reason="run budget exhausted before phase start")
            return error_phase_result(phase, name, category, error, started)

        try:
            await engine.initialize()
        except EngineInitError as exc:
            self._errors.append(str(exc))
            self._log.error("phase_init_failed", error=str(exc))
            await self._safe_cleanup(phase, engine)
            return error_phase_result(phase, name, category, exc, started)
        except Exception as exc:
            self._errors.append(f"{phase}: {exc}")
            self._log.error("phase_init_failed", error=str(exc), error_type=type(exc).__name__)
            await self._safe_cleanup(phase, engine)
            return error_phase_result(phase, name, category, exc, started)

        self._initialized[phase] = engine
        task = asyncio.create_task(engine.validate(), name=f"validate:{phase}")
        try:
            done, _ = await asyncio.wait({task}, timeout=remaining / 1000)
            if task in done:
                phase_result = task.result()
            else:
                self._abandon(phase, task)
                error = EngineTimeoutError(phase, self._config.timeout_ms)
                self._errors.append(str(error))
                self._log.error("phase_timeout", timeout_ms=self._config.timeout_ms)
                phase_result = error_phase_result(phase, name, category, error, started)
        except asyncio.CancelledError:
            task.cancel()
            raise
        except Exception as exc:
            self._errors.append(f"{phase}: {exc}")
            self._log.error("phase_validate_failed", error=str(exc), error_type=type(exc).__name__)
            phase_result = error_phase_result(phase, name, category, exc, started)
        finally:
            await self._safe_cleanup(phase, engine)

        progress = engine.get_progress()
        self._warnings.extend(f"{phase}: {w}" for w in progress.warnings)
        self._log.info(
            "phase_complete",
            status=phase_result.status.value,
            results=len(phase_result.results),
            critical=len(phase_result.critical_issues),
            duration_ms=phase_result.duration_ms,
        )
        return phase_result

    def _abandon(self, phase: str, task: asyncio.Task[ValidationPhaseResult]) -> None:
        """Leave a timed-out validate() running; its outcome is only logged."""
        self._abandoned[task] = phase
        task.add_done_callback(self._reap_abandoned)

    def _reap_abandoned(self, task: asyncio.Task[ValidationPhaseResult]) -> None:
        phase = self._abandoned.pop(task, "")
        if task.cancelled():
            self._log.info("abandoned_phase_cancelled", phase=phase)
            return
        exc = task.exception()
        if exc is not None:
            self._log.warning("abandoned_phase_failed", phase=phase, error=str(exc))
        else:
            self._log.info("abandoned_phase_finished", phase=phase)

    @property
    def abandoned_phases(self) -> list[str]:
        return sorted(self._abandoned.values())

    async def _safe_cleanup(self, phase: str, engine: ValidationEngine) -> None:
        self._initialized.pop(phase, None)
        try:
            await engine.cleanup()
        except Exception as exc:
            self._warnings.append(f"{phase}: cleanup failed: {exc}")
            self._log.warning("phase_cleanup_failed", error=str(exc))

    # ── Aggregation ──────────────────────────────────────────────────────────

    @staticmethod
    def _merge(
        result: BLESystemValidationResult,
        phase: str,
        phase_result: ValidationPhaseResult,
    ) -> None:
        result.phases[phase] = phase_result
        result.critical_issues.extend(phase_result.critical_issues)
        for rec in phase_result.recommendations:
            if rec not in result.recommendations:
                result.recommendations.append(rec)
        for r in phase_result.results:
            if not r.is_issue:
                continue
            result.total_issues_found += 1
            result.issues_by_category[r.category.value] += 1
            result.issues_by_severity[r.severity.value] += 1
        result.overall_status = worst_status(result.overall_status, phase_result.status)

    def _finalize(self, result: BLESystemValidationResult) -> None:
        result.overall_status = worst_status(
            ValidationStatus.PASS, *(p.status for p in result.phases.values()),
        )
        categorization = self._categorizer.categorize_issues(result)
        result.production_readiness = self.assess_readiness(
            result, blockers=len(categorization.deployment_blockers),
        )
        result.confidence_level = self.assess_confidence(result)
        result.finalized = True

    @staticmethod
    def assess_readiness(result: BLESystemValidationResult, blockers: int = 0) -> ProductionReadiness:
        critical = result.issues_by_severity.get(Severity.CRITICAL.value, 0)
        high = result.issues_by_severity.get(Severity.HIGH.value, 0)
        if critical > 1 or blockers > 0:
            return ProductionReadiness.NOT_READY
        if critical == 1:
            return ProductionReadiness.NEEDS_FIXES
        if high > 3:
            return ProductionReadiness.MAJOR_ISSUES
        if high > 0:
            return ProductionReadiness.NEEDS_FIXES
        return ProductionReadiness.PRODUCTION_READY

    @staticmethod
    def assess_confidence(result: BLESystemValidationResult) -> ConfidenceLevel:
        enabled = len(result.enabled_phases)
        completion = len(result.phases) / enabled if enabled else 1.0
        critical = result.issues_by_severity.get(Severity.CRITICAL.value, 0)
        high = result.issues_by_severity.get(Severity.HIGH.value, 0)
        if completion < 0.6 or critical > 0:
            return ConfidenceLevel.LOW
        if completion < 0.8 or high > 2:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.HIGH

    # ── Observation ──────────────────────────────────────────────────────────

    def get_progress(self) -> ValidationProgress:
        total = len(self._config.enabled_phases)
        done = self._completed_phases
        step = ""
        errors = list(self._errors)
        warnings = list(self._warnings)
        fraction = 0.0

        phase = self._current_phase
        if phase is not None and phase in self._engines:
            engine_progress = self._engines[phase].get_progress()
            step = engine_progress.current_step
            fraction = min(1.0, engine_progress.percent_complete / 100)
            errors.extend(f"{phase}: {e}" for e in engine_progress.errors)
            warnings.extend(f"{phase}: {w}" for w in engine_progress.warnings)

        if total:
            percent = round((done + fraction) / total * 100, 1)
        else:
            percent = 100.0 if self._last_completed is not None else 0.0

        return ValidationProgress(
            current_phase=phase or ("complete" if done and done == total else ""),
            current_step=step,
            completed_steps=done,
            total_steps=total,
            percent_complete=percent,
            errors=errors,
            warnings=warnings,
        )

    def get_current_result(self) -> BLESystemValidationResult | None:
        """Deep copy of the in-flight or last aggregate, partial if the run was aborted."""
        if self._result is None:
            return None
        return self._result.model_copy(deep=True)

    def get_execution_summary(self) -> dict[str, Any]:
        result = self._result
        return {
            "execution_id": result.execution_id if result else None,
            "running": self._running,
            "progress": self.get_progress().model_dump(),
            "phase_statuses": {
                phase: p.status.value for phase, p in (result.phases.items() if result else [])
            },
            "overall_status": result.overall_status.value if result else None,
            "production_readiness": result.production_readiness.value if result else None,
            "total_issues": result.total_issues_found if result else 0,
            "critical_issues": len(result.critical_issues) if result else 0,
            "execution_time_ms": result.total_execution_time_ms if result else 0,
        }

    # ── Export ───────────────────────────────────────────────────────────────

    def export_results(self, format: OutputFormat | str | None = None) -> str:
        if self._last_completed is None:
            raise ExportError("No completed validation run to export")
        chosen = (format or self._config.output_format)
        try:
            fmt = OutputFormat(str(chosen).upper())
        except ValueError as exc:
            raise ExportError(f"Unsupported export format: {chosen}") from exc
        if fmt == OutputFormat.JSON:
            return self._serializer.to_json(self._last_completed)
        return self._serializer.to_markdown(self._last_completed)

    def export_logs(self) -> list[ValidationLogEntry]:
        return self._capture.entries

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def cleanup(self) -> None:
        """Release every still-initialized engine. Safe to call repeatedly."""
        pending = list(self._initialized.items())
        for phase, engine in pending:
            await self._safe_cleanup(phase, engine)
        detach_capture(self._capture)
        if pending:
            self._log.info("controller_cleaned_up", engines=[p for p, _ in pending])
