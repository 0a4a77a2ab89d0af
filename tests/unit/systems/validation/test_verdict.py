"""
Tests for the Production Readiness Verdict.

Covers:
  - GO for a clean run, NO_GO with blockers
  - Monotonicity as issues are added
  - Capacity estimation from concurrency steps and the modelled fallback
  - Risk dimensions and confidence
  - Conditions and timeline per decision
"""

from __future__ import annotations

import pytest

from blevalidation.config import PHASE_ORDER, VerdictConfig
from blevalidation.primitives.common import RiskLevel, utc_now
from blevalidation.systems.validation.categorization import IssueCategorizationEngine
from blevalidation.systems.validation.controller import ValidationController
from blevalidation.systems.validation.engine import build_phase_result
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    CapacityRating,
    ConfidenceLevel,
    HealthRating,
    Recommendation,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)
from blevalidation.systems.validation.verdict import (
    ProductionReadinessVerdictEngine,
    rate_capacity,
    rate_health,
    worst_risk,
)

_PHASE_CATEGORY = {
    "static_analysis": ValidationCategory.NATIVE,
    "database_simulation": ValidationCategory.DATABASE,
    "security_audit": ValidationCategory.SECURITY,
    "performance_analysis": ValidationCategory.PERFORMANCE,
    "configuration_audit": ValidationCategory.CONFIG,
}


def _make_finding(
    id: str,
    severity: Severity = Severity.INFO,
    category: ValidationCategory = ValidationCategory.NATIVE,
    status: ValidationStatus | None = None,
    message: str = "finding",
    details: dict | None = None,
) -> ValidationResult:
    if status is None:
        status = ValidationStatus.PASS if severity == Severity.INFO else ValidationStatus.FAIL
    return ValidationResult(
        id=id,
        name=id,
        status=status,
        severity=severity,
        category=category,
        message=message,
        details=details,
    )


def _make_step(users: int, passed: bool, success_rate: float = 1.0) -> ValidationResult:
    return _make_finding(
        f"concurrency_{users}_users",
        Severity.INFO if passed else Severity.HIGH,
        ValidationCategory.PERFORMANCE,
        message=f"{users} users",
        details={
            "user_count": users,
            "metrics": {"success_rate": success_rate, "p95_response_ms": 120.0},
            "offending_metric": None if passed else "success_rate",
        },
    )


def _make_aggregate(
    extra: dict[str, list[ValidationResult]] | None = None,
    phases: tuple[str, ...] = PHASE_ORDER,
) -> BLESystemValidationResult:
    result = BLESystemValidationResult(execution_id="verdict-test", enabled_phases=list(phases))
    for phase in phases:
        findings = [_make_finding(f"{phase}_ok", category=_PHASE_CATEGORY[phase])]
        findings.extend((extra or {}).get(phase, []))
        ValidationController._merge(result, phase, build_phase_result(phase, findings, utc_now()))
    result.confidence_level = ValidationController.assess_confidence(result)
    return result


def _verdict(result: BLESystemValidationResult, target: int = 150):
    categorization = IssueCategorizationEngine(target_users=target).categorize_issues(result)
    engine = ProductionReadinessVerdictEngine(VerdictConfig(target_concurrent_users=target))
    return engine.generate_verdict(result, categorization)


# ─── Helpers ─────────────────────────────────────────────────────


class TestRatings:
    def test_health_bands(self):
        assert rate_health(95) == HealthRating.EXCELLENT
        assert rate_health(80) == HealthRating.GOOD
        assert rate_health(65) == HealthRating.ACCEPTABLE
        assert rate_health(40) == HealthRating.POOR
        assert rate_health(10) == HealthRating.CRITICAL

    def test_capacity_bands(self):
        assert rate_capacity(300, 150) == CapacityRating.EXCEEDS
        assert rate_capacity(150, 150) == CapacityRating.MEETS
        assert rate_capacity(110, 150) == CapacityRating.LIMITED
        assert rate_capacity(50, 150) == CapacityRating.INSUFFICIENT

    def test_worst_risk(self):
        assert worst_risk(RiskLevel.LOW, RiskLevel.HIGH, RiskLevel.MEDIUM) == RiskLevel.HIGH
        assert worst_risk() == RiskLevel.LOW


# ─── Decisions ───────────────────────────────────────────────────


class TestRecommendation:
    def test_clean_run_is_go(self):
        verdict = _verdict(_make_aggregate())
        assert verdict.recommendation.recommendation == Recommendation.GO
        assert verdict.health.score == 100.0
        assert verdict.risk.overall == RiskLevel.LOW
        assert verdict.recommendation.conditions == []
        assert verdict.recommendation.timeline.recommended_deployment_date is not None
        assert verdict.recommendation.monitoring_requirements
        assert verdict.recommendation.rollback_plan

    def test_blocker_is_no_go(self):
        result = _make_aggregate({"static_analysis": [
            _make_finding("sql_concat", Severity.CRITICAL, message="SQL injection in query builder"),
        ]})
        verdict = _verdict(result)

        assert verdict.recommendation.recommendation == Recommendation.NO_GO
        assert verdict.blocker_count == 1
        assert verdict.risk.overall in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        assert any("sql_concat" in c for c in verdict.recommendation.conditions)
        assert verdict.recommendation.timeline.recommended_deployment_date is None

    def test_high_issue_is_conditional(self):
        result = _make_aggregate({"configuration_audit": [
            _make_finding("missing_usage_string", Severity.HIGH, ValidationCategory.CONFIG),
        ]})
        verdict = _verdict(result)

        assert verdict.recommendation.recommendation == Recommendation.CONDITIONAL_GO
        assert verdict.recommendation.conditions[0].startswith("Resolve missing_usage_string")
        timeline = verdict.recommendation.timeline
        assert timeline.estimated_fix_days == 1.0
        assert timeline.recommended_deployment_date > verdict.generated_at

    def test_low_issues_stay_go(self):
        result = _make_aggregate({"static_analysis": [
            _make_finding("naming", Severity.LOW, status=ValidationStatus.CONDITIONAL),
        ]})
        assert _verdict(result).recommendation.recommendation == Recommendation.GO

    @pytest.mark.parametrize("extra", [
        {"configuration_audit": [
            _make_finding("c1", Severity.MEDIUM, ValidationCategory.CONFIG),
        ]},
        {"security_audit": [
            _make_finding("s1", Severity.HIGH, ValidationCategory.SECURITY),
        ]},
        {"database_simulation": [
            _make_finding("d1", Severity.CRITICAL, ValidationCategory.DATABASE),
        ]},
    ])
    def test_monotonic_as_issues_are_added(self, extra):
        base = _make_aggregate({"static_analysis": [
            _make_finding("n1", Severity.LOW, status=ValidationStatus.CONDITIONAL),
        ]})
        worse_extra = {"static_analysis": [
            _make_finding("n1", Severity.LOW, status=ValidationStatus.CONDITIONAL),
        ], **extra}
        worse = _make_aggregate(worse_extra)

        a = _verdict(base).recommendation.recommendation
        b = _verdict(worse).recommendation.recommendation
        assert b.rank <= a.rank

    def test_monotonic_over_growing_issue_sets(self):
        additions = [
            ("configuration_audit", _make_finding("c1", Severity.LOW, ValidationCategory.CONFIG)),
            ("security_audit", _make_finding("s1", Severity.MEDIUM, ValidationCategory.SECURITY)),
            ("static_analysis", _make_finding("n1", Severity.HIGH)),
            ("database_simulation", _make_finding("d1", Severity.HIGH, ValidationCategory.DATABASE)),
            ("static_analysis", _make_finding("n2", Severity.CRITICAL)),
        ]
        extra: dict[str, list[ValidationResult]] = {}
        previous = Recommendation.GO
        for phase, finding in additions:
            extra.setdefault(phase, []).append(finding)
            current = _verdict(_make_aggregate(extra)).recommendation.recommendation
            assert current.rank <= previous.rank
            previous = current
        assert previous == Recommendation.NO_GO

    @pytest.mark.parametrize("evidence", [
        [_make_step(10, True)],
        [_make_step(10, True), _make_finding(
            "performance_db_capacity",
            category=ValidationCategory.PERFORMANCE,
            details={"supported_users": 60},
        )],
    ])
    def test_monotonic_when_a_higher_step_is_added(self, evidence):
        conditional_step = _make_finding(
            "concurrency_150_users",
            Severity.MEDIUM,
            ValidationCategory.PERFORMANCE,
            status=ValidationStatus.CONDITIONAL,
            details={
                "user_count": 150,
                "metrics": {"success_rate": 0.97, "p95_response_ms": 700.0},
                "offending_metric": None,
            },
        )
        base = _make_aggregate({"database_simulation": list(evidence)})
        worse = _make_aggregate({"database_simulation": [*evidence, conditional_step]})

        a = _verdict(base).recommendation.recommendation
        b = _verdict(worse).recommendation.recommendation
        assert b.rank <= a.rank


# ─── Capacity ────────────────────────────────────────────────────


class TestCapacity:
    def test_unknown_without_measurements(self):
        verdict = _verdict(_make_aggregate())
        assert verdict.capacity.rating == CapacityRating.UNKNOWN
        assert verdict.capacity.max_supported_users == 0

    def test_all_steps_pass(self):
        result = _make_aggregate({"database_simulation": [
            _make_step(10, True), _make_step(50, True), _make_step(100, True), _make_step(150, True),
        ]})
        capacity = _verdict(result).capacity
        assert capacity.max_supported_users == 150
        assert capacity.rating == CapacityRating.MEETS
        assert [s.user_count for s in capacity.steps] == [10, 50, 100, 150]

    def test_capacity_ends_below_first_failure(self):
        result = _make_aggregate({"database_simulation": [
            _make_step(10, True),
            _make_step(50, True),
            _make_step(100, False, success_rate=0.9),
            _make_step(150, True),
        ]})
        verdict = _verdict(result)
        assert verdict.capacity.max_supported_users == 50
        assert verdict.capacity.rating == CapacityRating.INSUFFICIENT
        assert verdict.capacity.limiting_factor == "success_rate"
        assert verdict.recommendation.recommendation == Recommendation.NO_GO

    def test_steps_below_target_are_inconclusive(self):
        result = _make_aggregate({"database_simulation": [
            _make_step(10, True), _make_step(50, True),
        ]})
        verdict = _verdict(result)
        assert verdict.capacity.rating == CapacityRating.UNKNOWN
        assert verdict.capacity.max_supported_users == 50
        assert verdict.capacity.limiting_factor == "untested above 50 users"
        assert verdict.recommendation.recommendation == Recommendation.GO

    def test_worse_of_measured_and_modelled(self):
        result = _make_aggregate({
            "database_simulation": [_make_step(150, True)],
            "performance_analysis": [_make_finding(
                "performance_db_capacity",
                category=ValidationCategory.PERFORMANCE,
                details={"supported_users": 60},
            )],
        })
        capacity = _verdict(result).capacity
        assert capacity.max_supported_users == 60
        assert capacity.rating == CapacityRating.INSUFFICIENT
        assert capacity.limiting_factor == "connection pool (modelled)"

    def test_modelled_fallback(self):
        result = _make_aggregate({"performance_analysis": [
            _make_finding(
                "performance_db_capacity",
                category=ValidationCategory.PERFORMANCE,
                details={"supported_users": 400},
            ),
        ]})
        capacity = _verdict(result).capacity
        assert capacity.max_supported_users == 400
        assert capacity.rating == CapacityRating.EXCEEDS


# ─── Risk and confidence ─────────────────────────────────────────


class TestRiskAndConfidence:
    def test_security_vulnerability_raises_security_risk(self):
        result = _make_aggregate({"security_audit": [
            _make_finding("s1", Severity.HIGH, ValidationCategory.SECURITY),
        ]})
        assert _verdict(result).risk.security == RiskLevel.MEDIUM

    def test_critical_native_issue_is_reliability_risk(self):
        result = _make_aggregate({"static_analysis": [
            _make_finding("crash", Severity.CRITICAL, message="Crash on stop"),
        ]})
        risk = _verdict(result).risk
        assert risk.reliability == RiskLevel.CRITICAL
        assert risk.factors[0].startswith("1 unresolved deployment blocker")

    def test_incomplete_run_lowers_confidence(self):
        result = _make_aggregate(phases=("static_analysis", "database_simulation"))
        verdict = _verdict(result)
        assert verdict.confidence == ConfidenceLevel.LOW
        assert verdict.recommendation.recommendation != Recommendation.GO
        assert "Re-run every validation phase to completion" in verdict.recommendation.conditions

    def test_confidence_never_exceeds_run_confidence(self):
        result = _make_aggregate()
        result.confidence_level = ConfidenceLevel.MEDIUM
        assert ProductionReadinessVerdictEngine.assess_confidence(result) == ConfidenceLevel.MEDIUM
