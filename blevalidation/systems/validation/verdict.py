"""
BLE Validation — Production Readiness Verdict

Combines a finished run and its categorization into one Go/No-Go call:

  health score      100 minus weighted penalties, plus a bonus per passing phase
  capacity          highest concurrency step that stayed within bounds
  risk              worst of four dimensions, HIGH at least while blockers remain
  recommendation    NO_GO / CONDITIONAL_GO / GO with conditions, timeline,
                    success criteria, monitoring and rollback plan

Blocker status is read from ``IssueCategorizationResult.deployment_blockers``
and never re-derived here. Every input that can only get worse as issues are
added moves the recommendation down, never up.
"""

from __future__ import annotations

import math
from datetime import timedelta

import structlog

from blevalidation.config import PHASE_ORDER, VerdictConfig
from blevalidation.primitives.common import RiskLevel, utc_now
from blevalidation.systems.validation.categorization import sort_by_priority
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    CapacityEstimate,
    CapacityRating,
    CapacityStep,
    CategorizedIssue,
    ConfidenceLevel,
    DeploymentTimeline,
    GoNoGoRecommendation,
    HealthRating,
    HealthScore,
    IssueCategorizationResult,
    PerformanceImpact,
    ProductionReadinessVerdictResult,
    Recommendation,
    RiskAssessment,
    SecurityRisk,
    Severity,
    ValidationCategory,
    ValidationStatus,
)

logger = structlog.get_logger()

# ── Weights ──────────────────────────────────────────────────────────────────

PENALTY_CRITICAL = 25.0
PENALTY_HIGH = 10.0
PENALTY_MEDIUM = 5.0
PENALTY_BLOCKER = 30.0
PENALTY_SECURITY = 20.0
PENALTY_PERFORMANCE = 15.0
BONUS_PASSING_PHASE = 5.0

FIX_DAYS_CRITICAL = 2.0
FIX_DAYS_HIGH = 1.0
FIX_DAYS_MEDIUM = 0.5

_RISK_ORDER: tuple[RiskLevel, ...] = (
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
)

# Worst first
_CAPACITY_ORDER: tuple[CapacityRating, ...] = (
    CapacityRating.INSUFFICIENT,
    CapacityRating.LIMITED,
    CapacityRating.MEETS,
    CapacityRating.EXCEEDS,
)

_CONFIDENCE_ORDER: tuple[ConfidenceLevel, ...] = (
    ConfidenceLevel.LOW,
    ConfidenceLevel.MEDIUM,
    ConfidenceLevel.HIGH,
)

_PHASE_COMPONENTS: dict[str, tuple[ValidationCategory, ...]] = {
    "static_analysis": (ValidationCategory.NATIVE, ValidationCategory.BRIDGE),
    "database_simulation": (ValidationCategory.DATABASE,),
    "security_audit": (ValidationCategory.SECURITY,),
    "performance_analysis": (ValidationCategory.PERFORMANCE,),
    "configuration_audit": (ValidationCategory.CONFIG,),
}

MONITORING_REQUIREMENTS: list[str] = [
    "BLE session creation success rate",
    "Attendance submission success rate and duplicate rejections",
    "Check-in p95 latency against the configured bound",
    "Database connection pool utilization",
    "Error rates by type on add_attendance_secure and resolve_session",
]

ROLLBACK_PLAN: list[str] = [
    "Keep the previous app build available in both stores for immediate rollback",
    "Gate BLE check-in behind a remote flag that falls back to manual attendance",
    "Define rollback triggers: check-in success below 95% or p95 above the bound for 10 minutes",
    "Keep database migrations reversible and tested against a staging copy",
]


def worst_risk(*levels: RiskLevel) -> RiskLevel:
    return max(levels, key=_RISK_ORDER.index, default=RiskLevel.LOW)


def rate_health(score: float) -> HealthRating:
    if score >= 90:
        return HealthRating.EXCELLENT
    if score >= 75:
        return HealthRating.GOOD
    if score >= 60:
        return HealthRating.ACCEPTABLE
    if score >= 30:
        return HealthRating.POOR
    return HealthRating.CRITICAL


def rate_capacity(supported: int, target: int) -> CapacityRating:
    if supported >= target * 1.5:
        return CapacityRating.EXCEEDS
    if supported >= target:
        return CapacityRating.MEETS
    if supported >= target * 0.7:
        return CapacityRating.LIMITED
    return CapacityRating.INSUFFICIENT


class ProductionReadinessVerdictEngine:
    def __init__(self, config: VerdictConfig | None = None) -> None:
        self._config = config or VerdictConfig()
        self._log = logger.bind(system="validation.verdict")

    def generate_verdict(
        self,
        result: BLESystemValidationResult,
        categorization: IssueCategorizationResult,
    ) -> ProductionReadinessVerdictResult:
        health = self.assess_health(result, categorization)
        capacity = self.estimate_capacity(result)
        risk = self.assess_risk(categorization, health)
        confidence = self.assess_confidence(result)
        recommendation = self.recommend(categorization, health, capacity, risk, confidence)

        verdict = ProductionReadinessVerdictResult(
            execution_id=result.execution_id,
            health=health,
            capacity=capacity,
            risk=risk,
            recommendation=recommendation,
            confidence=confidence,
            blocker_count=len(categorization.deployment_blockers),
        )
        self._log.info(
            "verdict_generated",
            recommendation=recommendation.recommendation.value,
            health_score=health.score,
            capacity=capacity.max_supported_users,
            risk=risk.overall.value,
            blockers=verdict.blocker_count,
        )
        return verdict

    # ── Health ───────────────────────────────────────────────────────────────

    def assess_health(
        self,
        result: BLESystemValidationResult,
        categorization: IssueCategorizationResult,
    ) -> HealthScore:
        penalties = {
            "critical": len(categorization.critical) * PENALTY_CRITICAL,
            "high": len(categorization.high) * PENALTY_HIGH,
            "medium": len(categorization.medium) * PENALTY_MEDIUM,
            "deployment_blockers": len(categorization.deployment_blockers) * PENALTY_BLOCKER,
            "security_vulnerabilities": len(categorization.security_vulnerabilities) * PENALTY_SECURITY,
            "performance_bottlenecks": len(categorization.performance_bottlenecks) * PENALTY_PERFORMANCE,
        }
        passing = sum(1 for p in result.phases.values() if p.status == ValidationStatus.PASS)
        raw = 100.0 - sum(penalties.values()) + passing * BONUS_PASSING_PHASE
        score = max(0.0, min(100.0, raw))
        return HealthScore(
            score=score,
            rating=rate_health(score),
            component_scores=self._component_scores(result),
            penalties=penalties,
        )

    @staticmethod
    def _component_scores(result: BLESystemValidationResult) -> dict[str, float]:
        scores: dict[str, float] = {}
        for phase_id, phase in result.phases.items():
            for category in _PHASE_COMPONENTS.get(phase_id, ()):
                own = [r for r in phase.results if r.category == category] or phase.results
                score = 100.0
                for r in own:
                    if not r.is_issue:
                        continue
                    score -= {
                        Severity.CRITICAL: PENALTY_CRITICAL,
                        Severity.HIGH: PENALTY_HIGH,
                        Severity.MEDIUM: PENALTY_MEDIUM,
                        Severity.LOW: 1.0,
                    }.get(r.severity, 0.0)
                scores[category.value] = max(0.0, score)
        return scores

    # ── Capacity ─────────────────────────────────────────────────────────────

    def estimate_capacity(self, result: BLESystemValidationResult) -> CapacityEstimate:
        """
        Combine the concurrency steps recorded by the database phase with
        the modelled pool capacity from the performance phase; the worse of
        the two wins.

        Steps are conclusive only when one failed or one reached the
        target. Steps that all passed below the target say nothing about
        the target load, so alone they leave the rating UNKNOWN.
        """
        target = self._config.target_concurrent_users
        steps: list[CapacityStep] = []
        limiting = ""
        modelled: int | None = None

        for r in result.all_results():
            details = r.details or {}
            if r.id.startswith("concurrency_") and isinstance(details.get("user_count"), int):
                metrics = details.get("metrics") or {}
                steps.append(CapacityStep(
                    user_count=details["user_count"],
                    success_rate=float(metrics.get("success_rate", 0.0)),
                    p95_latency_ms=float(metrics.get("p95_response_ms", 0.0)),
                    passed=r.status != ValidationStatus.FAIL,
                ))
                if r.status == ValidationStatus.FAIL and not limiting:
                    limiting = str(details.get("offending_metric", r.message))
            elif r.id == "performance_db_capacity" and isinstance(details.get("supported_users"), int):
                modelled = details["supported_users"]

        steps.sort(key=lambda s: s.user_count)
        # (supported, rating, limiting factor) from each source that is conclusive
        estimates: list[tuple[int, CapacityRating, str]] = []
        if steps:
            supported = max((s.user_count for s in steps if s.passed), default=0)
            first_failure = next((s for s in steps if not s.passed), None)
            if first_failure is not None:
                # Capacity ends below the first step that broke
                supported = min(supported, max(
                    (s.user_count for s in steps if s.user_count < first_failure.user_count),
                    default=0,
                ))
                estimates.append((supported, rate_capacity(supported, target), limiting))
            elif supported >= target:
                estimates.append((supported, rate_capacity(supported, target), ""))
            elif modelled is None:
                # Nothing broke, the load just never reached the target
                return CapacityEstimate(
                    target_users=target,
                    max_supported_users=supported,
                    steps=steps,
                    limiting_factor=f"untested above {supported} users",
                )
        if modelled is not None:
            estimates.append((
                modelled, rate_capacity(modelled, target), "connection pool (modelled)",
            ))
        if not estimates:
            return CapacityEstimate(target_users=target)

        supported, rating, limiting = min(
            estimates, key=lambda e: (_CAPACITY_ORDER.index(e[1]), e[0]),
        )
        return CapacityEstimate(
            target_users=target,
            max_supported_users=supported,
            rating=rating,
            steps=steps,
            limiting_factor=limiting,
        )

    # ── Risk ─────────────────────────────────────────────────────────────────

    def assess_risk(
        self,
        categorization: IssueCategorizationResult,
        health: HealthScore,
    ) -> RiskAssessment:
        security = self._security_risk(categorization)
        performance = self._performance_risk(categorization)
        reliability = self._reliability_risk(categorization)
        experience = self._experience_risk(categorization)

        if health.score >= 75:
            health_risk = RiskLevel.LOW
        elif health.score >= 60:
            health_risk = RiskLevel.MEDIUM
        elif health.score >= 30:
            health_risk = RiskLevel.HIGH
        else:
            health_risk = RiskLevel.CRITICAL

        overall = worst_risk(security, performance, reliability, experience, health_risk)
        factors = [
            f"{ci.issue.category.value}: {ci.issue.message}"
            for ci in categorization.deployment_blockers
        ]
        if categorization.deployment_blockers:
            overall = worst_risk(overall, RiskLevel.HIGH)
            factors.insert(0, f"{len(categorization.deployment_blockers)} unresolved deployment blocker(s)")

        return RiskAssessment(
            overall=overall,
            security=security,
            performance=performance,
            reliability=reliability,
            user_experience=experience,
            factors=factors,
        )

    @staticmethod
    def _security_risk(categorization: IssueCategorizationResult) -> RiskLevel:
        vulns = categorization.security_vulnerabilities
        critical = sum(1 for ci in vulns if ci.security_risk == SecurityRisk.CRITICAL)
        high = sum(1 for ci in vulns if ci.security_risk == SecurityRisk.HIGH)
        if critical:
            return RiskLevel.CRITICAL
        if high > 2:
            return RiskLevel.HIGH
        if high:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def _performance_risk(categorization: IssueCategorizationResult) -> RiskLevel:
        bottlenecks = categorization.performance_bottlenecks
        severe = sum(1 for ci in bottlenecks if ci.performance_impact == PerformanceImpact.SEVERE)
        moderate = sum(1 for ci in bottlenecks if ci.performance_impact == PerformanceImpact.MODERATE)
        if severe:
            return RiskLevel.HIGH
        if moderate > 2:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def _reliability_risk(categorization: IssueCategorizationResult) -> RiskLevel:
        database = categorization.issues_by_category.get(ValidationCategory.DATABASE.value, [])
        native = categorization.issues_by_category.get(ValidationCategory.NATIVE.value, [])
        affected = [*database, *native]
        if any(ci.issue.severity == Severity.CRITICAL for ci in affected):
            return RiskLevel.CRITICAL
        high = sum(1 for ci in affected if ci.issue.severity == Severity.HIGH)
        if high > 1:
            return RiskLevel.HIGH
        if high:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def _experience_risk(categorization: IssueCategorizationResult) -> RiskLevel:
        config = categorization.issues_by_category.get(ValidationCategory.CONFIG.value, [])
        bridge = categorization.issues_by_category.get(ValidationCategory.BRIDGE.value, [])
        affected = [*config, *bridge]
        if any(ci.issue.severity == Severity.CRITICAL for ci in affected):
            return RiskLevel.HIGH
        high = sum(1 for ci in affected if ci.issue.severity == Severity.HIGH)
        if high > 2:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ── Confidence ───────────────────────────────────────────────────────────

    @staticmethod
    def assess_confidence(result: BLESystemValidationResult) -> ConfidenceLevel:
        """Lower of the run's own confidence and phase completeness."""
        completed = sum(1 for p in PHASE_ORDER if p in result.phases)
        completeness = completed / len(PHASE_ORDER)
        if completeness >= 0.8:
            by_completeness = ConfidenceLevel.HIGH
        elif completeness >= 0.6:
            by_completeness = ConfidenceLevel.MEDIUM
        else:
            by_completeness = ConfidenceLevel.LOW
        return min(result.confidence_level, by_completeness, key=_CONFIDENCE_ORDER.index)

    # ── Recommendation ───────────────────────────────────────────────────────

    def recommend(
        self,
        categorization: IssueCategorizationResult,
        health: HealthScore,
        capacity: CapacityEstimate,
        risk: RiskAssessment,
        confidence: ConfidenceLevel,
    ) -> GoNoGoRecommendation:
        cfg = self._config
        blockers = categorization.deployment_blockers

        if (
            blockers
            or risk.overall == RiskLevel.CRITICAL
            or capacity.rating == CapacityRating.INSUFFICIENT
            or health.score < cfg.conditional_health_floor
        ):
            decision = Recommendation.NO_GO
        elif (
            health.score < cfg.minimum_health_score
            or risk.overall == RiskLevel.HIGH
            or capacity.rating == CapacityRating.LIMITED
            or confidence == ConfidenceLevel.LOW
            or categorization.critical
            or categorization.high
        ):
            decision = Recommendation.CONDITIONAL_GO
        else:
            decision = Recommendation.GO

        fix_days = (
            len(categorization.critical) * FIX_DAYS_CRITICAL
            + len(categorization.high) * FIX_DAYS_HIGH
            + len(categorization.medium) * FIX_DAYS_MEDIUM
        )
        return GoNoGoRecommendation(
            recommendation=decision,
            justification=self._justification(decision, categorization, health, capacity, risk),
            conditions=self._conditions(decision, categorization, health, capacity, confidence),
            timeline=self._timeline(decision, fix_days, blockers),
            success_criteria=[
                f"Support {capacity.target_users} concurrent check-ins in one session",
                "Check-in success rate at or above 95% at the target load",
                "No duplicate attendance rows for any (member, event) pair",
                "Check-in p95 latency within the configured bound",
                "No cross-organization session resolution",
            ],
            monitoring_requirements=list(MONITORING_REQUIREMENTS),
            rollback_plan=list(ROLLBACK_PLAN),
        )

    @staticmethod
    def _justification(
        decision: Recommendation,
        categorization: IssueCategorizationResult,
        health: HealthScore,
        capacity: CapacityEstimate,
        risk: RiskAssessment,
    ) -> str:
        blockers = len(categorization.deployment_blockers)
        capacity_text = (
            "capacity unknown"
            if capacity.rating == CapacityRating.UNKNOWN
            else f"capacity {capacity.max_supported_users}/{capacity.target_users} users"
        )
        match decision:
            case Recommendation.GO:
                return (
                    f"Health score {health.score:.0f} ({health.rating.value}), no deployment "
                    f"blockers, {risk.overall.value} risk and {capacity_text} support deployment."
                )
            case Recommendation.CONDITIONAL_GO:
                return (
                    f"Health score {health.score:.0f} ({health.rating.value}) with no deployment "
                    f"blockers, but {len(categorization.critical) + len(categorization.high)} "
                    f"critical/high issues and {risk.overall.value} risk ({capacity_text}) "
                    f"must be addressed first."
                )
            case _:
                return (
                    f"{blockers} deployment blocker(s), health score {health.score:.0f} "
                    f"({health.rating.value}), {risk.overall.value} risk and {capacity_text} "
                    f"prevent safe deployment."
                )

    def _conditions(
        self,
        decision: Recommendation,
        categorization: IssueCategorizationResult,
        health: HealthScore,
        capacity: CapacityEstimate,
        confidence: ConfidenceLevel,
    ) -> list[str]:
        """
        For NO_GO the blockers; for CONDITIONAL_GO every non-blocking issue
        that must close before a full GO. Empty for GO.
        """
        if decision == Recommendation.GO:
            return []

        def _line(ci: CategorizedIssue) -> str:
            return f"Resolve {ci.id} ({ci.priority.value}): {ci.issue.message}"

        if decision == Recommendation.NO_GO:
            conditions = [_line(ci) for ci in sort_by_priority(categorization.deployment_blockers)]
        else:
            required = [*categorization.critical, *categorization.high]
            if health.score < self._config.minimum_health_score:
                required.extend(categorization.medium)
            conditions = [_line(ci) for ci in sort_by_priority(required)]

        if capacity.rating in (CapacityRating.LIMITED, CapacityRating.INSUFFICIENT):
            conditions.append(
                f"Raise supported concurrency from {capacity.max_supported_users} "
                f"to {capacity.target_users} users"
            )
        if confidence == ConfidenceLevel.LOW:
            conditions.append("Re-run every validation phase to completion")
        return conditions

    @staticmethod
    def _timeline(
        decision: Recommendation,
        fix_days: float,
        blockers: list[CategorizedIssue],
    ) -> DeploymentTimeline:
        now = utc_now()
        match decision:
            case Recommendation.GO:
                return DeploymentTimeline(
                    estimated_fix_days=fix_days,
                    recommended_deployment_date=now,
                    milestones=["Deploy to production", "Monitor for 48 hours"],
                )
            case Recommendation.CONDITIONAL_GO:
                days = math.ceil(fix_days)
                return DeploymentTimeline(
                    estimated_fix_days=fix_days,
                    recommended_deployment_date=now + timedelta(days=days + 1),
                    milestones=[
                        f"Address conditions (about {days} day(s))",
                        "Re-run validation",
                        "Staged rollout to one organization",
                    ],
                )
            case _:
                return DeploymentTimeline(
                    estimated_fix_days=fix_days,
                    recommended_deployment_date=None,
                    milestones=[
                        f"Resolve {len(blockers)} deployment blocker(s)",
                        "Re-run the full validation",
                        "Re-assess the verdict",
                    ],
                )
