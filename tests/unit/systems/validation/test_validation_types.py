"""
Tests for the validation result model.

Covers:
  - Critical findings can never pass
  - Phase status derivation and the phase-result builder
  - Status ordering
  - Progress tracker snapshots
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from blevalidation.primitives.common import utc_now
from blevalidation.systems.validation.engine import (
    ProgressTracker,
    build_phase_result,
    error_phase_result,
)
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    Evidence,
    EvidenceType,
    Recommendation,
    Severity,
    ValidationCategory,
    ValidationPhaseResult,
    ValidationResult,
    ValidationStatus,
    worst_status,
)


def _make_result(
    status: ValidationStatus = ValidationStatus.PASS,
    severity: Severity = Severity.INFO,
    id: str = "r",
) -> ValidationResult:
    return ValidationResult(
        id=id,
        name="Result",
        status=status,
        severity=severity,
        category=ValidationCategory.NATIVE,
        message="message",
        recommendations=[f"fix {id}"],
    )


# ─── ValidationResult ────────────────────────────────────────────


class TestValidationResult:
    @pytest.mark.parametrize("status", [
        ValidationStatus.PASS, ValidationStatus.PENDING, ValidationStatus.SKIPPED,
    ])
    def test_critical_cannot_pass(self, status):
        with pytest.raises(ValidationError):
            _make_result(status, Severity.CRITICAL)

    @pytest.mark.parametrize("status", [ValidationStatus.FAIL, ValidationStatus.CONDITIONAL])
    def test_critical_may_fail_or_be_conditional(self, status):
        assert _make_result(status, Severity.CRITICAL).is_issue

    def test_pass_is_not_an_issue(self):
        assert not _make_result().is_issue

    def test_evidence_is_immutable(self):
        evidence = Evidence(type=EvidenceType.LOG_ENTRY, location="x", details="y")
        with pytest.raises(ValidationError):
            evidence.details = "changed"

    def test_severity_rank(self):
        assert Severity.CRITICAL.rank > Severity.HIGH.rank > Severity.INFO.rank

    def test_recommendation_rank(self):
        assert Recommendation.NO_GO.rank < Recommendation.CONDITIONAL_GO.rank < Recommendation.GO.rank


# ─── Phase results ───────────────────────────────────────────────


class TestDeriveStatus:
    def test_empty_passes(self):
        assert ValidationPhaseResult.derive_status([]) == ValidationStatus.PASS

    def test_any_fail_fails(self):
        results = [_make_result(), _make_result(ValidationStatus.FAIL, Severity.LOW)]
        assert ValidationPhaseResult.derive_status(results) == ValidationStatus.FAIL

    def test_critical_conditional_fails_phase(self):
        results = [_make_result(ValidationStatus.CONDITIONAL, Severity.CRITICAL)]
        assert ValidationPhaseResult.derive_status(results) == ValidationStatus.FAIL

    def test_pending_is_conditional(self):
        results = [_make_result(), _make_result(ValidationStatus.PENDING, Severity.MEDIUM)]
        assert ValidationPhaseResult.derive_status(results) == ValidationStatus.CONDITIONAL


class TestBuildPhaseResult:
    def test_collects_critical_and_recommendations(self):
        results = [
            _make_result(id="ok"),
            _make_result(ValidationStatus.FAIL, Severity.CRITICAL, id="bad"),
            _make_result(ValidationStatus.CONDITIONAL, Severity.LOW, id="meh"),
        ]
        phase = build_phase_result("Static Analysis", results, utc_now())

        assert phase.status == ValidationStatus.FAIL
        assert [r.id for r in phase.critical_issues] == ["bad"]
        assert phase.recommendations == ["fix bad", "fix meh"]
        assert "3 checks, 1 passed, 1 failed, 1 conditional, 1 critical" in phase.summary
        assert phase.duration_ms >= 0

    def test_phase_result_is_frozen(self):
        phase = build_phase_result("Static Analysis", [], utc_now())
        with pytest.raises(ValidationError):
            phase.status = ValidationStatus.FAIL

    def test_error_phase_has_one_critical_finding(self):
        phase = error_phase_result(
            "security_audit", "Security Audit", ValidationCategory.SECURITY,
            RuntimeError("missing migrations"),
        )
        assert phase.status == ValidationStatus.FAIL
        assert len(phase.results) == 1
        finding = phase.results[0]
        assert finding.id == "security_audit_error"
        assert finding.severity == Severity.CRITICAL
        assert finding.details == {"error_type": "RuntimeError"}
        assert "missing migrations" in phase.summary


# ─── Aggregate ───────────────────────────────────────────────────


class TestAggregate:
    def test_tallies_start_at_zero(self):
        result = BLESystemValidationResult(execution_id="x")
        assert set(result.issues_by_category) == {c.value for c in ValidationCategory}
        assert set(result.issues_by_severity) == {s.value for s in Severity}
        assert sum(result.issues_by_category.values()) == 0

    def test_worst_status(self):
        assert worst_status() == ValidationStatus.PASS
        assert worst_status(ValidationStatus.PASS, ValidationStatus.SKIPPED) == ValidationStatus.PASS
        assert worst_status(ValidationStatus.PENDING) == ValidationStatus.CONDITIONAL
        assert worst_status(ValidationStatus.CONDITIONAL, ValidationStatus.FAIL) == ValidationStatus.FAIL


# ─── Progress ────────────────────────────────────────────────────


class TestProgressTracker:
    def test_updates_percent(self):
        tracker = ProgressTracker("security_audit", total_steps=4)
        tracker.update("audit_token_security", completed=True)
        snapshot = tracker.snapshot()
        assert snapshot.completed_steps == 1
        assert snapshot.percent_complete == 25
        assert snapshot.current_step == "audit_token_security"

    def test_snapshot_is_isolated(self):
        tracker = ProgressTracker("static_analysis", total_steps=2)
        before = tracker.snapshot()
        tracker.warn("one")
        tracker.error("two")
        assert before.warnings == []
        assert tracker.snapshot().warnings == ["one"]
        assert tracker.snapshot().errors == ["two"]

    def test_completed_steps_never_exceed_total(self):
        tracker = ProgressTracker("x", total_steps=1)
        tracker.update("a", completed=True)
        tracker.update("b", completed=True)
        assert tracker.snapshot().completed_steps == 1

    def test_complete_and_reset(self):
        tracker = ProgressTracker("x", total_steps=3)
        tracker.complete()
        assert tracker.snapshot().percent_complete == 100.0
        tracker.reset()
        assert tracker.snapshot().percent_complete == 0.0
        assert tracker.snapshot().total_steps == 3
