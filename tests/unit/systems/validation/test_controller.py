"""
Tests for the Validation Controller.

Covers:
  - Phase ordering and aggregation of issue tallies
  - Partial failure when an engine's initialize() raises
  - Timeouts against the run budget
  - MissingEngineError before any phase runs
  - Vacuous success with no enabled phases
  - Readiness and confidence assessment
  - Progress, export and cleanup lifecycle
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

import pytest
import structlog

from blevalidation.config import LoggingConfig, ValidationConfig
from blevalidation.primitives.common import utc_now
from blevalidation.systems.validation.controller import (
    PHASE_CATEGORIES,
    PHASE_NAMES,
    ValidationController,
    generate_execution_id,
)
from blevalidation.systems.validation.engine import BaseAnalysisEngine, build_phase_result
from blevalidation.systems.validation.errors import (
    EngineInitError,
    ExportError,
    MissingEngineError,
)
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    ConfidenceLevel,
    ProductionReadiness,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)
from blevalidation.telemetry.logging import setup_logging

ALL_PHASES = list(PHASE_NAMES)


class FakeEngine(BaseAnalysisEngine):
    """Satisfies every phase contract; behaviour is scripted per test."""

    engine_name = "FakeEngine"

    def __init__(
        self,
        phase_id: str,
        results: list[ValidationResult] | None = None,
        *,
        init_error: Exception | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.phase_id = phase_id
        self.phase_name = PHASE_NAMES[phase_id]
        self.category = PHASE_CATEGORIES[phase_id]
        super().__init__()
        self._results = results or []
        self._init_error = init_error
        self._delay_s = delay_s
        self.init_calls = 0
        self.cleanup_calls = 0
        self.teardowns = 0

    async def _setup(self) -> None:
        self.init_calls += 1
        if self._init_error is not None:
            raise self._init_error

    async def _run(self) -> list[ValidationResult]:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        self._progress.warn("fake warning")
        return list(self._results)

    async def cleanup(self) -> None:
        self.cleanup_calls += 1
        await super().cleanup()

    async def _teardown(self) -> None:
        self.teardowns += 1

    async def analyze_native_modules(self) -> list[ValidationResult]:
        return []

    async def analyze_bridge_layer(self) -> list[ValidationResult]:
        return []

    async def analyze_code_quality(self) -> list[ValidationResult]:
        return []

    async def validate_interfaces(self) -> list[ValidationResult]:
        return []

    async def validate_database_functions(self) -> list[ValidationResult]:
        return []

    async def simulate_end_to_end_flows(self) -> list[ValidationResult]:
        return []

    async def run_concurrent_operations(self, user_count: int) -> list[ValidationResult]:
        return []

    async def validate_data_integrity(self) -> list[ValidationResult]:
        return []

    async def audit_token_security(self) -> list[ValidationResult]:
        return []

    async def audit_database_security(self) -> list[ValidationResult]:
        return []

    async def audit_ble_payload_security(self) -> list[ValidationResult]:
        return []

    async def audit_organization_isolation(self) -> list[ValidationResult]:
        return []

    async def analyze_scalability(self, max_users: int) -> list[ValidationResult]:
        return []

    async def estimate_resource_usage(self) -> list[ValidationResult]:
        return []

    async def identify_bottlenecks(self) -> list[ValidationResult]:
        return []

    async def validate_performance_requirements(self) -> list[ValidationResult]:
        return []

    async def audit_app_configuration(self) -> list[ValidationResult]:
        return []

    async def audit_build_configuration(self) -> list[ValidationResult]:
        return []

    async def audit_permissions(self) -> list[ValidationResult]:
        return []

    async def validate_deployment_readiness(self) -> list[ValidationResult]:
        return []


class SlowToStopEngine(FakeEngine):
    """Outlives the run timeout and ignores cancellation."""

    def __init__(self, phase_id: str, results: list[ValidationResult] | None = None) -> None:
        super().__init__(phase_id, results)
        self.finished = False

    async def _run(self) -> list[ValidationResult]:
        try:
            await asyncio.sleep(0.5)
        except asyncio.CancelledError:
            await asyncio.sleep(0.5)
        self.finished = True
        return list(self._results)


def _make_result(
    id: str = "check",
    status: ValidationStatus = ValidationStatus.PASS,
    severity: Severity = Severity.INFO,
    category: ValidationCategory = ValidationCategory.NATIVE,
    message: str = "ok",
) -> ValidationResult:
    return ValidationResult(
        id=id,
        name=id.replace("_", " ").title(),
        status=status,
        severity=severity,
        category=category,
        message=message,
        recommendations=[] if status == ValidationStatus.PASS else [f"Fix {id}"],
    )


def _make_passing(phase: str) -> FakeEngine:
    return FakeEngine(phase, [_make_result(f"{phase}_ok", category=PHASE_CATEGORIES[phase])])


def _register(controller: ValidationController, engines: dict[str, FakeEngine]) -> None:
    registrars = {
        "static_analysis": controller.register_static_analysis_engine,
        "database_simulation": controller.register_database_simulation_engine,
        "security_audit": controller.register_security_audit_engine,
        "performance_analysis": controller.register_performance_analysis_engine,
        "configuration_audit": controller.register_configuration_audit_engine,
    }
    for phase, engine in engines.items():
        registrars[phase](engine)


def _make_controller(
    engines: dict[str, FakeEngine] | None = None,
    **config: object,
) -> ValidationController:
    controller = ValidationController(ValidationConfig(**config))
    _register(controller, engines if engines is not None else {p: _make_passing(p) for p in ALL_PHASES})
    return controller


def _assert_tallies_consistent(result: BLESystemValidationResult) -> None:
    assert result.total_issues_found == sum(result.issues_by_category.values())
    assert result.total_issues_found == sum(result.issues_by_severity.values())
    assert result.total_issues_found == len(result.issues())


# ─── Execution IDs ───────────────────────────────────────────────


class TestExecutionId:
    def test_format(self):
        execution_id = generate_execution_id()
        prefix, stamp, suffix = execution_id.rsplit("-", 2)
        assert prefix == "ble-validation"
        assert stamp.isalnum()
        assert len(suffix) == 6

    def test_unique(self):
        ids = {generate_execution_id() for _ in range(50)}
        assert len(ids) == 50


# ─── Registration ────────────────────────────────────────────────


class TestRegistration:
    def test_registered_phases(self):
        controller = _make_controller()
        assert controller.registered_phases == ALL_PHASES

    def test_rejects_object_without_contract(self):
        controller = ValidationController()

        class NotAnEngine:
            engine_name = "nope"
            version = "0"

        with pytest.raises(TypeError):
            controller.register_static_analysis_engine(NotAnEngine())  # type: ignore[arg-type]


# ─── Execution ───────────────────────────────────────────────────


class TestExecuteValidation:
    @pytest.mark.asyncio
    async def test_all_passing(self):
        controller = _make_controller()
        result = await controller.execute_validation()

        assert list(result.phases) == ALL_PHASES
        assert result.overall_status == ValidationStatus.PASS
        assert result.production_readiness == ProductionReadiness.PRODUCTION_READY
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert result.total_issues_found == 0
        assert result.finalized
        assert not result.aborted
        assert result.execution_id.startswith("ble-validation-")

    @pytest.mark.asyncio
    async def test_tallies_count_issues_only(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        engines["security_audit"] = FakeEngine("security_audit", [
            _make_result("token_ok", category=ValidationCategory.SECURITY),
            _make_result(
                "weak_token", ValidationStatus.FAIL, Severity.HIGH,
                ValidationCategory.SECURITY, "Token entropy below threshold",
            ),
            _make_result(
                "rls_gap", ValidationStatus.CONDITIONAL, Severity.MEDIUM,
                ValidationCategory.SECURITY, "Policy missing on one table",
            ),
        ])
        controller = _make_controller(engines)
        result = await controller.execute_validation()

        assert result.total_issues_found == 2
        assert result.issues_by_category["SECURITY"] == 2
        assert result.issues_by_severity["HIGH"] == 1
        assert result.issues_by_severity["MEDIUM"] == 1
        _assert_tallies_consistent(result)
        assert result.overall_status == ValidationStatus.FAIL
        assert result.production_readiness == ProductionReadiness.NEEDS_FIXES
        assert "Fix weak_token" in result.recommendations

    @pytest.mark.asyncio
    async def test_phases_run_in_fixed_order(self):
        order: list[str] = []

        class Recording(FakeEngine):
            async def _run(self) -> list[ValidationResult]:
                order.append(self.phase_id)
                return []

        controller = _make_controller({p: Recording(p) for p in reversed(ALL_PHASES)})
        await controller.execute_validation()
        assert order == ALL_PHASES

    @pytest.mark.asyncio
    async def test_partial_failure_on_init_error(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        engines["static_analysis"] = FakeEngine(
            "static_analysis",
            init_error=EngineInitError("FakeEngine", "source path missing"),
        )
        controller = _make_controller(engines)
        result = await controller.execute_validation()

        failed = result.phases["static_analysis"]
        assert failed.status == ValidationStatus.FAIL
        assert len(failed.results) == 1
        finding = failed.results[0]
        assert finding.severity == Severity.CRITICAL
        assert "source path missing" in finding.message
        assert finding.details == {"error_type": "EngineInitError"}

        for phase in ALL_PHASES[1:]:
            assert result.phases[phase].status == ValidationStatus.PASS
        assert len(result.phases) == len(ALL_PHASES)
        assert result.production_readiness == ProductionReadiness.NOT_READY
        _assert_tallies_consistent(result)

    @pytest.mark.asyncio
    async def test_unexpected_init_exception_is_recovered(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        engines["database_simulation"] = FakeEngine(
            "database_simulation", init_error=ValueError("boom"),
        )
        controller = _make_controller(engines)
        result = await controller.execute_validation()

        phase = result.phases["database_simulation"]
        assert phase.status == ValidationStatus.FAIL
        assert phase.results[0].category == ValidationCategory.DATABASE
        assert engines["database_simulation"].cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_missing_engine_raises_before_any_phase(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES if p != "security_audit"}
        controller = _make_controller(engines)

        with pytest.raises(MissingEngineError) as excinfo:
            await controller.execute_validation()

        assert excinfo.value.phases == ["security_audit"]
        assert all(e.init_calls == 0 for e in engines.values())
        assert controller.get_current_result() is None

    @pytest.mark.asyncio
    async def test_missing_engine_for_disabled_phase_is_fine(self):
        controller = _make_controller(
            {"static_analysis": _make_passing("static_analysis")},
            enabled_phases=["static_analysis"],
        )
        result = await controller.execute_validation()
        assert list(result.phases) == ["static_analysis"]

    @pytest.mark.asyncio
    async def test_no_enabled_phases_is_vacuous_success(self):
        controller = _make_controller({}, enabled_phases=[])
        result = await controller.execute_validation()

        assert result.phases == {}
        assert result.overall_status == ValidationStatus.PASS
        assert result.production_readiness == ProductionReadiness.PRODUCTION_READY
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert result.finalized
        assert controller.get_progress().percent_complete == 100.0

    @pytest.mark.asyncio
    async def test_timeout_becomes_critical_finding(self):
        engines = {
            "static_analysis": FakeEngine("static_analysis", delay_s=0.3),
            "database_simulation": _make_passing("database_simulation"),
        }
        controller = _make_controller(
            engines,
            enabled_phases=["static_analysis", "database_simulation"],
            timeout_ms=50,
        )
        result = await controller.execute_validation()

        timed_out = result.phases["static_analysis"]
        assert timed_out.status == ValidationStatus.FAIL
        assert timed_out.results[0].details == {"error_type": "EngineTimeoutError"}
        # The budget is spent, so the next phase never starts
        skipped = result.phases["database_simulation"]
        assert skipped.status == ValidationStatus.FAIL
        assert engines["database_simulation"].init_calls == 0
        assert engines["static_analysis"].teardowns == 1
        assert result.finalized

        await asyncio.sleep(0.5)
        assert controller.abandoned_phases == []

    @pytest.mark.asyncio
    async def test_timed_out_phase_is_not_awaited(self):
        engine = SlowToStopEngine("static_analysis", [
            _make_result("static_analysis_ok"),
        ])
        controller = _make_controller(
            {"static_analysis": engine},
            enabled_phases=["static_analysis"],
            timeout_ms=100,
        )

        started = time.monotonic()
        result = await controller.execute_validation()
        elapsed = time.monotonic() - started

        assert elapsed < 0.3
        phase = result.phases["static_analysis"]
        assert phase.status == ValidationStatus.FAIL
        assert phase.results[0].severity == Severity.CRITICAL
        assert phase.results[0].details == {"error_type": "EngineTimeoutError"}
        assert engine.cleanup_calls == 1
        assert controller.abandoned_phases == ["static_analysis"]

        # The late return value never replaces the timeout finding
        await asyncio.sleep(0.6)
        assert controller.abandoned_phases == []
        assert engine.finished
        assert result.phases["static_analysis"].status == ValidationStatus.FAIL

    @pytest.mark.asyncio
    async def test_critical_sql_injection_blocks_deployment(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        engines["static_analysis"] = FakeEngine("static_analysis", [
            _make_result(
                "native_sql_injection", ValidationStatus.FAIL, Severity.CRITICAL,
                ValidationCategory.NATIVE, "String-concatenated SQL query enables SQL injection",
            ),
        ])
        controller = _make_controller(engines)
        result = await controller.execute_validation()

        assert result.production_readiness in (
            ProductionReadiness.NEEDS_FIXES,
            ProductionReadiness.MAJOR_ISSUES,
            ProductionReadiness.NOT_READY,
        )
        categorization = controller.categorizer.categorize_issues(result)
        assert categorization.deployment_blockers
        assert len(result.critical_issues) == 1

    @pytest.mark.asyncio
    async def test_concurrent_execute_is_rejected(self):
        engines = {"static_analysis": FakeEngine("static_analysis", delay_s=0.05)}
        controller = _make_controller(engines, enabled_phases=["static_analysis"])

        first = asyncio.create_task(controller.execute_validation())
        await asyncio.sleep(0.01)
        with pytest.raises(RuntimeError):
            await controller.execute_validation()
        await first

    @pytest.mark.asyncio
    async def test_cancellation_marks_partial_result_aborted(self):
        engines = {"static_analysis": FakeEngine("static_analysis", delay_s=5.0)}
        controller = _make_controller(engines, enabled_phases=["static_analysis"])

        task = asyncio.create_task(controller.execute_validation())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        partial = controller.get_current_result()
        assert partial is not None
        assert partial.aborted
        assert not partial.finalized
        assert engines["static_analysis"].teardowns == 1


# ─── Assessment ──────────────────────────────────────────────────


class TestAssessment:
    def _aggregate(self, critical: int = 0, high: int = 0, phases: int = 5) -> BLESystemValidationResult:
        result = BLESystemValidationResult(execution_id="t", enabled_phases=ALL_PHASES)
        result.issues_by_severity["CRITICAL"] = critical
        result.issues_by_severity["HIGH"] = high
        for phase in ALL_PHASES[:phases]:
            result.phases[phase] = build_phase_result(PHASE_NAMES[phase], [], utc_now())
        return result

    def test_readiness_ladder(self):
        assess = ValidationController.assess_readiness
        assert assess(self._aggregate()) == ProductionReadiness.PRODUCTION_READY
        assert assess(self._aggregate(high=1)) == ProductionReadiness.NEEDS_FIXES
        assert assess(self._aggregate(high=4)) == ProductionReadiness.MAJOR_ISSUES
        assert assess(self._aggregate(critical=1)) == ProductionReadiness.NEEDS_FIXES
        assert assess(self._aggregate(critical=2)) == ProductionReadiness.NOT_READY
        assert assess(self._aggregate(), blockers=1) == ProductionReadiness.NOT_READY

    def test_confidence_from_completion(self):
        assess = ValidationController.assess_confidence
        assert assess(self._aggregate()) == ConfidenceLevel.HIGH
        assert assess(self._aggregate(phases=3)) == ConfidenceLevel.MEDIUM
        assert assess(self._aggregate(phases=2)) == ConfidenceLevel.LOW

    def test_confidence_from_severity(self):
        assess = ValidationController.assess_confidence
        assert assess(self._aggregate(critical=1)) == ConfidenceLevel.LOW
        assert assess(self._aggregate(high=3)) == ConfidenceLevel.MEDIUM


# ─── Progress, Export, Lifecycle ─────────────────────────────────


class TestObservation:
    def test_progress_before_run(self):
        controller = _make_controller()
        progress = controller.get_progress()
        assert progress.percent_complete == 0.0
        assert progress.total_steps == len(ALL_PHASES)

    @pytest.mark.asyncio
    async def test_progress_after_run(self):
        controller = _make_controller()
        await controller.execute_validation()
        progress = controller.get_progress()
        assert progress.percent_complete == 100.0
        assert progress.completed_steps == len(ALL_PHASES)
        assert progress.current_phase == "complete"
        assert any("fake warning" in w for w in progress.warnings)

    @pytest.mark.asyncio
    async def test_progress_mid_run(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        engines["security_audit"] = FakeEngine("security_audit", delay_s=0.2)
        controller = _make_controller(engines)

        task = asyncio.create_task(controller.execute_validation())
        await asyncio.sleep(0.05)
        progress = controller.get_progress()
        assert progress.current_phase == "security_audit"
        assert progress.completed_steps == 2
        assert 0 < progress.percent_complete < 100
        await task

    @pytest.mark.asyncio
    async def test_summary(self):
        controller = _make_controller()
        assert controller.get_execution_summary()["execution_id"] is None
        await controller.execute_validation()
        summary = controller.get_execution_summary()
        assert summary["overall_status"] == "PASS"
        assert summary["phase_statuses"]["static_analysis"] == "PASS"
        assert summary["running"] is False

    @pytest.mark.asyncio
    async def test_current_result_is_a_copy(self):
        controller = _make_controller()
        await controller.execute_validation()
        copy = controller.get_current_result()
        copy.recommendations.append("mutated")
        assert "mutated" not in controller.get_current_result().recommendations


class TestExport:
    def test_export_before_run_raises(self):
        controller = _make_controller()
        with pytest.raises(ExportError):
            controller.export_results()

    @pytest.mark.asyncio
    async def test_export_json(self):
        controller = _make_controller()
        result = await controller.execute_validation()
        payload = json.loads(controller.export_results("json"))
        assert payload["execution_id"] == result.execution_id
        assert payload["overall_status"] == "PASS"

    @pytest.mark.asyncio
    async def test_export_markdown(self):
        controller = _make_controller()
        result = await controller.execute_validation()
        text = controller.export_results("MARKDOWN")
        assert result.execution_id in text

    @pytest.mark.asyncio
    async def test_export_unknown_format(self):
        controller = _make_controller()
        await controller.execute_validation()
        with pytest.raises(ExportError):
            controller.export_results("xml")

    @pytest.mark.asyncio
    async def test_export_logs_captures_run(self):
        setup_logging(LoggingConfig(level="DEBUG"))
        controller = _make_controller()
        result = await controller.execute_validation()

        entries = controller.export_logs()
        messages = [e.message for e in entries]
        assert "validation_started" in messages
        assert "validation_complete" in messages
        phase_entries = [e for e in entries if e.message == "phase_started"]
        assert [e.phase for e in phase_entries] == ALL_PHASES
        started = next(e for e in entries if e.message == "validation_started")
        assert started.details["execution_id"] == result.execution_id


class TestLogCaptureWithoutGlobalSetup:
    def setup_method(self):
        structlog.reset_defaults()
        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(logging.WARNING)

    @pytest.mark.asyncio
    async def test_export_logs_without_setup_logging(self):
        assert not structlog.is_configured()
        controller = ValidationController(ValidationConfig(log_level="INFO"))
        _register(controller, {p: _make_passing(p) for p in ALL_PHASES})
        result = await controller.execute_validation()

        assert structlog.is_configured()
        assert logging.getLogger().level == logging.INFO
        entries = controller.export_logs()
        messages = [e.message for e in entries]
        assert "validation_started" in messages
        assert "validation_complete" in messages
        started = next(e for e in entries if e.message == "validation_started")
        assert started.details["execution_id"] == result.execution_id

    def test_log_level_drives_the_fallback_setup(self):
        ValidationController(ValidationConfig(log_level="DEBUG"))
        assert logging.getLogger().level == logging.DEBUG

    def test_existing_configuration_is_left_alone(self):
        setup_logging(LoggingConfig(level="WARNING"))
        ValidationController(ValidationConfig(log_level="DEBUG"))
        assert logging.getLogger().level == logging.WARNING


class TestCleanup:
    @pytest.mark.asyncio
    async def test_engines_cleaned_after_each_phase(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        controller = _make_controller(engines)
        await controller.execute_validation()
        assert all(e.teardowns == 1 for e in engines.values())
        assert all(not e.initialized for e in engines.values())

    @pytest.mark.asyncio
    async def test_double_cleanup_is_safe(self):
        engines = {p: _make_passing(p) for p in ALL_PHASES}
        controller = _make_controller(engines)
        await controller.execute_validation()

        await controller.cleanup()
        await controller.cleanup()
        assert all(e.teardowns == 1 for e in engines.values())

    @pytest.mark.asyncio
    async def test_engine_double_cleanup_is_safe(self):
        engine = _make_passing("static_analysis")
        await engine.initialize()
        await engine.cleanup()
        await engine.cleanup()
        assert engine.teardowns == 1

    @pytest.mark.asyncio
    async def test_reinitialize_after_cleanup(self):
        controller = _make_controller()
        first = await controller.execute_validation()
        second = await controller.execute_validation()
        assert first.execution_id != second.execution_id
        assert second.total_issues_found == first.total_issues_found
