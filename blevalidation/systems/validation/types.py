"""
BLE Validation — Result Model

Pydantic models shared by every engine, the controller, issue
categorization, the verdict engine, and the reporting layer.

  - ValidationResult:          one finding
  - Evidence:                  immutable supporting observation
  - ValidationPhaseResult:     output of one engine run
  - ValidationProgress:        polled progress snapshot
  - BLESystemValidationResult: run-level aggregate
  - CategorizedIssue / IssueCategorizationResult
  - GoNoGoRecommendation / ProductionReadinessVerdictResult
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from blevalidation.primitives.common import (
    RiskLevel,
    Timestamped,
    ValidationBaseModel,
    utc_now,
)

# ── Enums ────────────────────────────────────────────────────────────────────


class ValidationStatus(enum.StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"
    CONDITIONAL = "CONDITIONAL"
    PENDING = "PENDING"
    SKIPPED = "SKIPPED"


class Severity(enum.StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ValidationCategory(enum.StrEnum):
    NATIVE = "NATIVE"
    BRIDGE = "BRIDGE"
    DATABASE = "DATABASE"
    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    CONFIG = "CONFIG"


class EvidenceType(enum.StrEnum):
    CODE_REFERENCE = "CODE_REFERENCE"
    SECURITY_FINDING = "SECURITY_FINDING"
    PERFORMANCE_METRIC = "PERFORMANCE_METRIC"
    CONFIG_ISSUE = "CONFIG_ISSUE"
    TEST_RESULT = "TEST_RESULT"
    LOG_ENTRY = "LOG_ENTRY"


class ProductionReadiness(enum.StrEnum):
    PRODUCTION_READY = "PRODUCTION_READY"
    NEEDS_FIXES = "NEEDS_FIXES"
    MAJOR_ISSUES = "MAJOR_ISSUES"
    NOT_READY = "NOT_READY"


class ConfidenceLevel(enum.StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class OutputFormat(enum.StrEnum):
    JSON = "JSON"
    MARKDOWN = "MARKDOWN"


_STATUS_RANK: dict[ValidationStatus, int] = {
    ValidationStatus.PASS: 0,
    ValidationStatus.SKIPPED: 0,
    ValidationStatus.PENDING: 1,
    ValidationStatus.CONDITIONAL: 1,
    ValidationStatus.FAIL: 2,
}


def worst_status(*statuses: ValidationStatus) -> ValidationStatus:
    """FAIL > CONDITIONAL > PASS. PENDING collapses to CONDITIONAL."""
    rank = max((_STATUS_RANK[s] for s in statuses), default=0)
    return (ValidationStatus.PASS, ValidationStatus.CONDITIONAL, ValidationStatus.FAIL)[rank]


# ── Findings ─────────────────────────────────────────────────────────────────


class Evidence(ValidationBaseModel):
    """A piece of supporting evidence. Immutable once created."""

    model_config = {"frozen": True}

    type: EvidenceType
    location: str
    details: str
    severity: Severity = Severity.INFO
    line_number: int | None = None
    code_snippet: str | None = None


class ValidationResult(Timestamped):
    """One atomic finding produced by an engine."""

    id: str
    name: str
    status: ValidationStatus
    severity: Severity
    category: ValidationCategory
    message: str
    details: dict[str, Any] | None = None
    evidence: list[Evidence] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    execution_time_ms: int | None = None

    @model_validator(mode="after")
    def _critical_never_passes(self) -> ValidationResult:
        if self.severity == Severity.CRITICAL and self.status not in (
            ValidationStatus.FAIL,
            ValidationStatus.CONDITIONAL,
        ):
            raise ValueError(
                f"Critical finding {self.id!r} must be FAIL or CONDITIONAL, got {self.status}"
            )
        return self

    @property
    def is_issue(self) -> bool:
        return self.status != ValidationStatus.PASS


class ValidationPhaseResult(ValidationBaseModel):
    """Output of one engine run. Immutable after creation."""

    model_config = {"frozen": True}

    phase_name: str
    status: ValidationStatus
    start_time: datetime
    end_time: datetime
    duration_ms: int
    results: list[ValidationResult] = Field(default_factory=list)
    summary: str = ""
    critical_issues: list[ValidationResult] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @staticmethod
    def derive_status(results: list[ValidationResult]) -> ValidationStatus:
        if any(
            r.severity == Severity.CRITICAL or r.status == ValidationStatus.FAIL
            for r in results
        ):
            return ValidationStatus.FAIL
        if any(r.status != ValidationStatus.PASS for r in results):
            return ValidationStatus.CONDITIONAL
        return ValidationStatus.PASS


class ValidationProgress(ValidationBaseModel):
    """Mutable progress state. Readers always receive a ``snapshot()``."""

    current_phase: str = ""
    current_step: str = ""
    completed_steps: int = 0
    total_steps: int = 0
    percent_complete: float = 0.0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def snapshot(self) -> ValidationProgress:
        return self.model_copy(deep=True)


class BLESystemValidationResult(ValidationBaseModel):
    """
    Run-level aggregate built incrementally by the ValidationController.

    ``total_issues_found``, ``issues_by_category`` and
    ``issues_by_severity`` count every non-PASS result across all phases.
    """

    execution_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    validation_version: str = "1.0.0"
    phases: dict[str, ValidationPhaseResult] = Field(default_factory=dict)
    overall_status: ValidationStatus = ValidationStatus.PASS
    production_readiness: ProductionReadiness = ProductionReadiness.PRODUCTION_READY
    confidence_level: ConfidenceLevel = ConfidenceLevel.HIGH
    critical_issues: list[ValidationResult] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    total_execution_time_ms: int = 0
    total_issues_found: int = 0
    issues_by_category: dict[str, int] = Field(
        default_factory=lambda: {c.value: 0 for c in ValidationCategory},
    )
    issues_by_severity: dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in Severity},
    )
    enabled_phases: list[str] = Field(default_factory=list)
    finalized: bool = False
    aborted: bool = False

    def all_results(self) -> list[ValidationResult]:
        return [r for phase in self.phases.values() for r in phase.results]

    def issues(self) -> list[ValidationResult]:
        return [r for r in self.all_results() if r.is_issue]


# ── Issue Categorization ─────────────────────────────────────────────────────


class IssuePriority(enum.StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class IssueImpact(enum.StrEnum):
    DEPLOYMENT_BLOCKER = "DEPLOYMENT_BLOCKER"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    USER_EXPERIENCE = "USER_EXPERIENCE"
    CODE_QUALITY = "CODE_QUALITY"


class FixEffort(enum.StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTENSIVE = "EXTENSIVE"


class SecurityRisk(enum.StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    NONE = "NONE"


class PerformanceImpact(enum.StrEnum):
    SEVERE = "SEVERE"
    MODERATE = "MODERATE"
    MINOR = "MINOR"
    NONE = "NONE"


class CategorizedIssue(ValidationBaseModel):
    """A ValidationResult plus derived triage metadata. Never mutates ``issue``."""

    model_config = {"frozen": True}

    issue: ValidationResult
    priority: IssuePriority
    impact: IssueImpact
    effort: FixEffort
    component: str
    impact_description: str
    security_risk: SecurityRisk = SecurityRisk.NONE
    performance_impact: PerformanceImpact = PerformanceImpact.NONE
    estimated_fix_time: str
    risk_if_unfixed: str
    remediation_steps: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    deployment_blocker: bool = False

    @property
    def id(self) -> str:
        return self.issue.id


class IssueCategorizationResult(ValidationBaseModel):
    """Non-exclusive buckets over the same set of categorized issues."""

    execution_id: str = ""
    total_issues: int = 0
    all_issues: list[CategorizedIssue] = Field(default_factory=list)
    critical: list[CategorizedIssue] = Field(default_factory=list)
    high: list[CategorizedIssue] = Field(default_factory=list)
    medium: list[CategorizedIssue] = Field(default_factory=list)
    low: list[CategorizedIssue] = Field(default_factory=list)
    deployment_blockers: list[CategorizedIssue] = Field(default_factory=list)
    security_vulnerabilities: list[CategorizedIssue] = Field(default_factory=list)
    performance_bottlenecks: list[CategorizedIssue] = Field(default_factory=list)
    code_quality_issues: list[CategorizedIssue] = Field(default_factory=list)
    issues_by_category: dict[str, list[CategorizedIssue]] = Field(default_factory=dict)
    priority_distribution: dict[str, int] = Field(default_factory=dict)
    impact_distribution: dict[str, int] = Field(default_factory=dict)
    effort_distribution: dict[str, int] = Field(default_factory=dict)


# ── Production Readiness Verdict ─────────────────────────────────────────────


class Recommendation(enum.StrEnum):
    NO_GO = "NO_GO"
    CONDITIONAL_GO = "CONDITIONAL_GO"
    GO = "GO"

    @property
    def rank(self) -> int:
        """NO_GO < CONDITIONAL_GO < GO."""
        return (Recommendation.NO_GO, Recommendation.CONDITIONAL_GO, Recommendation.GO).index(self)


class HealthRating(enum.StrEnum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    ACCEPTABLE = "ACCEPTABLE"
    POOR = "POOR"
    CRITICAL = "CRITICAL"


class CapacityRating(enum.StrEnum):
    EXCEEDS = "EXCEEDS"
    MEETS = "MEETS"
    LIMITED = "LIMITED"
    INSUFFICIENT = "INSUFFICIENT"
    UNKNOWN = "UNKNOWN"


class HealthScore(ValidationBaseModel):
    score: float
    rating: HealthRating
    component_scores: dict[str, float] = Field(default_factory=dict)
    penalties: dict[str, float] = Field(default_factory=dict)


class CapacityStep(ValidationBaseModel):
    user_count: int
    success_rate: float
    p95_latency_ms: float
    passed: bool


class CapacityEstimate(ValidationBaseModel):
    target_users: int
    max_supported_users: int = 0
    rating: CapacityRating = CapacityRating.UNKNOWN
    steps: list[CapacityStep] = Field(default_factory=list)
    limiting_factor: str = ""


class RiskAssessment(ValidationBaseModel):
    overall: RiskLevel
    security: RiskLevel = RiskLevel.LOW
    performance: RiskLevel = RiskLevel.LOW
    reliability: RiskLevel = RiskLevel.LOW
    user_experience: RiskLevel = RiskLevel.LOW
    factors: list[str] = Field(default_factory=list)


class DeploymentTimeline(ValidationBaseModel):
    estimated_fix_days: float = 0.0
    recommended_deployment_date: datetime | None = None
    milestones: list[str] = Field(default_factory=list)


class GoNoGoRecommendation(ValidationBaseModel):
    """Terminal deployment recommendation. A value, never updated in place."""

    model_config = {"frozen": True}

    recommendation: Recommendation
    justification: str
    conditions: list[str] = Field(default_factory=list)
    timeline: DeploymentTimeline = Field(default_factory=DeploymentTimeline)
    success_criteria: list[str] = Field(default_factory=list)
    monitoring_requirements: list[str] = Field(default_factory=list)
    rollback_plan: list[str] = Field(default_factory=list)


class ProductionReadinessVerdictResult(ValidationBaseModel):
    execution_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    health: HealthScore
    capacity: CapacityEstimate
    risk: RiskAssessment
    recommendation: GoNoGoRecommendation
    confidence: ConfidenceLevel
    blocker_count: int = 0
