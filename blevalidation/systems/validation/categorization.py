"""
BLE Validation — Issue Categorization

Turns every non-PASS finding of a run into a CategorizedIssue with triage
metadata, then exposes the same issue set through several overlapping
buckets. ``deployment_blockers`` is the gating list the verdict engine
reads; nothing downstream re-derives blocker status.

Pure: categorize_issues() never mutates the aggregate or its findings.
"""

from __future__ import annotations

from collections import Counter

import structlog

from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    CategorizedIssue,
    FixEffort,
    IssueCategorizationResult,
    IssueImpact,
    IssuePriority,
    PerformanceImpact,
    SecurityRisk,
    Severity,
    ValidationCategory,
    ValidationResult,
)

logger = structlog.get_logger()


# ── Keyword tables ───────────────────────────────────────────────────────────

CRITICAL_KEYWORDS: tuple[str, ...] = (
    "security vulnerability", "sql injection", "rls bypass",
    "authentication bypass", "memory leak", "crash", "deadlock",
    "data corruption", "privilege escalation", "information disclosure",
    "token collision", "session hijacking",
)

HIGH_KEYWORDS: tuple[str, ...] = (
    "performance bottleneck", "scalability limit", "frequent failure",
    "race condition", "threading issue", "connection pool exhaustion",
    "timeout", "timed out", "resource exhaustion", "concurrent user limit",
)

MEDIUM_KEYWORDS: tuple[str, ...] = (
    "suboptimal implementation", "occasional failure", "error handling gap",
    "missing validation", "inefficient query", "code duplication",
    "configuration issue", "permission handling",
)

BLOCKER_PHRASES: tuple[str, ...] = ("deployment blocker", "production blocker")

FIX_TIME: dict[FixEffort, str] = {
    FixEffort.LOW: "1-4 hours",
    FixEffort.MEDIUM: "1-2 days",
    FixEffort.HIGH: "3-5 days",
    FixEffort.EXTENSIVE: "1-2 weeks",
}

# Mid-point hours per effort, used for remediation task estimates
FIX_HOURS: dict[FixEffort, int] = {
    FixEffort.LOW: 3,
    FixEffort.MEDIUM: 12,
    FixEffort.HIGH: 32,
    FixEffort.EXTENSIVE: 60,
}

COMPONENTS: dict[ValidationCategory, str] = {
    ValidationCategory.NATIVE: "native_modules",
    ValidationCategory.BRIDGE: "bridge_layer",
    ValidationCategory.DATABASE: "database",
    ValidationCategory.SECURITY: "security",
    ValidationCategory.PERFORMANCE: "performance",
    ValidationCategory.CONFIG: "configuration",
}

_PRIORITY_ORDER: tuple[IssuePriority, ...] = (
    IssuePriority.CRITICAL,
    IssuePriority.HIGH,
    IssuePriority.MEDIUM,
    IssuePriority.LOW,
)

_IMPACT_TEXT: dict[ValidationCategory, str] = {
    ValidationCategory.NATIVE: "BLE broadcasting or detection on devices",
    ValidationCategory.BRIDGE: "the JavaScript to native bridge and session tokens",
    ValidationCategory.DATABASE: "attendance records and session resolution",
    ValidationCategory.SECURITY: "data confidentiality and organization isolation",
    ValidationCategory.PERFORMANCE: "check-in latency and concurrent capacity",
    ValidationCategory.CONFIG: "builds, permissions and store submission",
}

_SEVERITY_TEXT: dict[Severity, str] = {
    Severity.CRITICAL: "Breaks",
    Severity.HIGH: "Seriously degrades",
    Severity.MEDIUM: "Degrades",
    Severity.LOW: "Slightly affects",
    Severity.INFO: "Has no measurable effect on",
}


def _content(result: ValidationResult) -> str:
    """Lower-cased text the keyword rules match against."""
    parts = [result.name, result.message]
    if result.details:
        parts.extend(v for v in result.details.values() if isinstance(v, str))
    return " ".join(parts).lower()


def _matches(content: str, keywords: tuple[str, ...]) -> bool:
    return any(k in content for k in keywords)


class IssueCategorizationEngine:
    """
    Rule-based triage of the issues in a BLESystemValidationResult.

    ``target_users`` is the concurrent-user count the deployment must
    support: a CRITICAL performance failure blocks deployment only when it
    happens at or below that count.
    """

    def __init__(self, target_users: int = 150) -> None:
        self._target = target_users
        self._log = logger.bind(system="validation.categorization")

    def categorize_issues(self, result: BLESystemValidationResult) -> IssueCategorizationResult:
        issues = self._extract_issues(result)
        categorized = [self.categorize_issue(issue) for issue in issues]
        categorized = self._link_dependencies(categorized)

        by_category: dict[str, list[CategorizedIssue]] = {c.value: [] for c in ValidationCategory}
        for ci in categorized:
            by_category[ci.issue.category.value].append(ci)

        priorities = Counter(ci.priority for ci in categorized)
        impacts = Counter(ci.impact for ci in categorized)
        efforts = Counter(ci.effort for ci in categorized)

        categorization = IssueCategorizationResult(
            execution_id=result.execution_id,
            total_issues=len(categorized),
            all_issues=categorized,
            critical=[ci for ci in categorized if ci.priority == IssuePriority.CRITICAL],
            high=[ci for ci in categorized if ci.priority == IssuePriority.HIGH],
            medium=[ci for ci in categorized if ci.priority == IssuePriority.MEDIUM],
            low=[ci for ci in categorized if ci.priority == IssuePriority.LOW],
            deployment_blockers=[ci for ci in categorized if ci.deployment_blocker],
            security_vulnerabilities=[
                ci for ci in categorized
                if ci.security_risk in (SecurityRisk.CRITICAL, SecurityRisk.HIGH)
            ],
            performance_bottlenecks=[
                ci for ci in categorized
                if ci.performance_impact in (PerformanceImpact.SEVERE, PerformanceImpact.MODERATE)
            ],
            code_quality_issues=[ci for ci in categorized if ci.impact == IssueImpact.CODE_QUALITY],
            issues_by_category=by_category,
            priority_distribution={p.value: priorities.get(p, 0) for p in IssuePriority},
            impact_distribution={i.value: impacts.get(i, 0) for i in IssueImpact},
            effort_distribution={e.value: efforts.get(e, 0) for e in FixEffort},
        )

        self._log.info(
            "issues_categorized",
            total=categorization.total_issues,
            critical=len(categorization.critical),
            blockers=len(categorization.deployment_blockers),
            security=len(categorization.security_vulnerabilities),
            performance=len(categorization.performance_bottlenecks),
        )
        return categorization

    def categorize_issue(self, result: ValidationResult) -> CategorizedIssue:
        content = _content(result)
        effort = self.estimate_effort(result, content)
        return CategorizedIssue(
            issue=result,
            priority=self.determine_priority(result, content),
            impact=self.determine_impact(result, content),
            effort=effort,
            component=COMPONENTS[result.category],
            impact_description=(
                f"{_SEVERITY_TEXT[result.severity]} {_IMPACT_TEXT[result.category]}"
            ),
            security_risk=self.assess_security_risk(result, content),
            performance_impact=self.assess_performance_impact(result, content),
            estimated_fix_time=FIX_TIME[effort],
            risk_if_unfixed=self._risk_if_unfixed(result, content),
            remediation_steps=self._remediation_steps(result, content),
            dependencies=self._text_dependencies(content),
            deployment_blocker=self.is_deployment_blocker(result, content),
        )

    # ── Rules ────────────────────────────────────────────────────────────────

    def determine_priority(self, result: ValidationResult, content: str) -> IssuePriority:
        if result.severity == Severity.CRITICAL or _matches(content, CRITICAL_KEYWORDS):
            return IssuePriority.CRITICAL
        if result.severity == Severity.HIGH or _matches(content, HIGH_KEYWORDS):
            return IssuePriority.HIGH
        if result.severity == Severity.MEDIUM or _matches(content, MEDIUM_KEYWORDS):
            return IssuePriority.MEDIUM
        return IssuePriority.LOW

    def determine_impact(self, result: ValidationResult, content: str) -> IssueImpact:
        if self.is_deployment_blocker(result, content):
            return IssueImpact.DEPLOYMENT_BLOCKER
        if result.category == ValidationCategory.PERFORMANCE or _matches(
            content, ("performance", "scalability", "bottleneck", "timeout", "latency"),
        ):
            return IssueImpact.PERFORMANCE_DEGRADATION
        if _matches(content, ("user", "experience", "workflow", "usability", "permission")):
            return IssueImpact.USER_EXPERIENCE
        return IssueImpact.CODE_QUALITY

    def estimate_effort(self, result: ValidationResult, content: str) -> FixEffort:
        if _matches(content, ("redesign", "refactor", "architecture", "major change")):
            return FixEffort.EXTENSIVE
        if (
            (result.category == ValidationCategory.SECURITY and result.severity == Severity.CRITICAL)
            or (result.category == ValidationCategory.DATABASE and "schema" in content)
            or _matches(content, ("native module", "rls", "row level security"))
        ):
            return FixEffort.HIGH
        if result.category in (ValidationCategory.CONFIG, ValidationCategory.BRIDGE) or _matches(
            content, ("configuration", "integration"),
        ):
            return FixEffort.MEDIUM
        return FixEffort.LOW

    def is_deployment_blocker(self, result: ValidationResult, content: str | None = None) -> bool:
        """
        CRITICAL findings block deployment, except a CRITICAL performance
        failure observed only above the target user count. Findings that
        call themselves a deployment blocker block regardless of severity.
        """
        content = content if content is not None else _content(result)
        if _matches(content, BLOCKER_PHRASES):
            return True
        if result.severity != Severity.CRITICAL:
            return False
        if result.category == ValidationCategory.PERFORMANCE:
            user_count = (result.details or {}).get("user_count")
            if isinstance(user_count, int) and user_count > self._target:
                return False
        return True

    def assess_security_risk(self, result: ValidationResult, content: str) -> SecurityRisk:
        if _matches(content, (
            "sql injection", "rls bypass", "privilege escalation", "authentication bypass",
        )):
            return SecurityRisk.CRITICAL
        if result.category == ValidationCategory.SECURITY:
            return {
                Severity.CRITICAL: SecurityRisk.CRITICAL,
                Severity.HIGH: SecurityRisk.HIGH,
                Severity.MEDIUM: SecurityRisk.MEDIUM,
            }.get(result.severity, SecurityRisk.LOW)
        if _matches(content, (
            "information disclosure", "token collision", "session hijacking", "access control",
        )):
            return SecurityRisk.HIGH
        if _matches(content, ("sanitization", "authorization", "secret")):
            return SecurityRisk.MEDIUM
        return SecurityRisk.NONE

    def assess_performance_impact(self, result: ValidationResult, content: str) -> PerformanceImpact:
        if result.category == ValidationCategory.PERFORMANCE:
            if result.severity in (Severity.CRITICAL, Severity.HIGH):
                return PerformanceImpact.SEVERE
            if result.severity == Severity.MEDIUM:
                return PerformanceImpact.MODERATE
            return PerformanceImpact.MINOR
        if _matches(content, (
            "bottleneck", "scalability limit", "timeout", "timed out", "resource exhaustion",
        )):
            return PerformanceImpact.SEVERE
        if _matches(content, ("slow query", "inefficient", "concurrent users", "pool saturation")):
            return PerformanceImpact.MODERATE
        if _matches(content, ("caching", "minor performance")):
            return PerformanceImpact.MINOR
        return PerformanceImpact.NONE

    # ── Narrative ────────────────────────────────────────────────────────────

    def _risk_if_unfixed(self, result: ValidationResult, content: str) -> str:
        if result.severity == Severity.CRITICAL:
            if result.category == ValidationCategory.SECURITY or "security" in content:
                return "Critical security vulnerability could lead to data breach or cross-organization access"
            if _matches(content, ("crash", "deadlock")):
                return "System instability could cause a complete attendance outage"
            return "Critical system failure preventing production deployment"
        if result.severity == Severity.HIGH:
            if result.category == ValidationCategory.PERFORMANCE or "performance" in content:
                return "Significant performance degradation during busy check-in windows"
            return "High impact on system reliability and member experience"
        if result.severity == Severity.MEDIUM:
            return "Moderate impact on system quality and maintainability"
        return "Minor impact on code quality and long-term maintainability"

    def _remediation_steps(self, result: ValidationResult, content: str) -> list[str]:
        steps: list[str] = []
        match result.category:
            case ValidationCategory.SECURITY:
                steps.append("Review the security implications with a second engineer")
                steps.append("Validate and sanitize every externally supplied input")
                if "sql" in content:
                    steps.append("Replace string concatenation with parameterized queries")
                if "rls" in content or "row level security" in content:
                    steps.append("Review and test RLS policies for every attendance table")
            case ValidationCategory.PERFORMANCE:
                steps.append("Profile the affected code path")
                if "query" in content:
                    steps.append("Optimize database queries and add appropriate indexes")
                if "concurren" in content:
                    steps.append("Tune connection pooling and add client-side retry with jitter")
            case ValidationCategory.NATIVE:
                steps.append("Review the native module implementation")
                steps.append("Test on several device models and OS versions")
                if "memory" in content or "weak" in content:
                    steps.append("Break retain cycles and release native resources on teardown")
            case ValidationCategory.DATABASE:
                steps.append("Update the database function in a new migration")
                steps.append("Exercise the function against valid, boundary and malformed input")
            case ValidationCategory.CONFIG:
                steps.append("Review app and build configuration files")
                steps.append("Validate all required permissions and capabilities")
            case _:
                steps.append("Trace the issue to its root cause in the bridge layer")
                steps.append("Implement the fix behind the existing BLE context API")
        steps.extend(result.recommendations)
        steps.append("Write or update tests that cover the fix")
        steps.append("Re-run validation to verify the fix without regressions")
        return list(dict.fromkeys(steps))

    def _text_dependencies(self, content: str) -> list[str]:
        deps: list[str] = []
        if "schema" in content or "migration" in content:
            deps.append("Database schema migration")
        if "native module" in content:
            deps.append("Native module rebuild and testing")
        if "configuration" in content:
            deps.append("Environment configuration update")
        if "security" in content and "policy" in content:
            deps.append("Security policy review and approval")
        return deps

    def _link_dependencies(self, issues: list[CategorizedIssue]) -> list[CategorizedIssue]:
        """Lower-priority issues in a component depend on its blockers."""
        blockers_by_component: dict[str, list[str]] = {}
        for ci in issues:
            if ci.deployment_blocker:
                blockers_by_component.setdefault(ci.component, []).append(ci.id)

        linked: list[CategorizedIssue] = []
        for ci in issues:
            upstream = [b for b in blockers_by_component.get(ci.component, []) if b != ci.id]
            if ci.deployment_blocker or not upstream:
                linked.append(ci)
                continue
            linked.append(ci.model_copy(update={
                "dependencies": [*ci.dependencies, *(f"Resolve {b} first" for b in upstream)],
            }))
        return linked

    @staticmethod
    def _extract_issues(result: BLESystemValidationResult) -> list[ValidationResult]:
        seen: dict[str, ValidationResult] = {}
        for r in [*result.issues(), *result.critical_issues]:
            if r.is_issue:
                seen.setdefault(r.id, r)
        return list(seen.values())


def sort_by_priority(issues: list[CategorizedIssue]) -> list[CategorizedIssue]:
    """Blockers first, then priority, then severity rank."""
    return sorted(
        issues,
        key=lambda ci: (
            not ci.deployment_blocker,
            _PRIORITY_ORDER.index(ci.priority),
            -ci.issue.severity.rank,
            ci.id,
        ),
    )
