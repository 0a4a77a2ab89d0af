"""
BLE Validation — Reporting

Pure views over a finished run, its categorization and its verdict:

  generate_executive_summary()     one-page stakeholder view
  generate_technical_analysis()    per-phase and per-component detail
  generate_issue_tracker()         prioritized issues + remediation tasks
  generate_deployment_checklist()  configuration / permission / build /
                                   monitoring items with PASS/FAIL/WARNING

None of these mutate their inputs.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from blevalidation.config import PHASE_ORDER
from blevalidation.primitives.common import ValidationBaseModel, utc_now
from blevalidation.systems.validation.categorization import FIX_HOURS, sort_by_priority
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    CapacityStep,
    IssueCategorizationResult,
    IssuePriority,
    ProductionReadinessVerdictResult,
    Recommendation,
    Severity,
    ValidationResult,
    ValidationStatus,
)
from blevalidation.systems.validation.verdict import MONITORING_REQUIREMENTS

# ── Models ───────────────────────────────────────────────────────────────────


class ExecutiveSummary(ValidationBaseModel):
    execution_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    headline: str
    recommendation: Recommendation
    overall_status: ValidationStatus
    production_readiness: str
    confidence: str
    health_score: float
    health_rating: str
    supported_users: int
    target_users: int
    key_metrics: dict[str, Any] = Field(default_factory=dict)
    critical_findings: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class PhaseAnalysis(ValidationBaseModel):
    phase_id: str
    phase_name: str
    status: ValidationStatus
    duration_ms: int
    checks: int
    issues_by_severity: dict[str, int] = Field(default_factory=dict)
    top_issues: list[str] = Field(default_factory=list)
    summary: str = ""


class TechnicalAnalysis(ValidationBaseModel):
    execution_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    phases: list[PhaseAnalysis] = Field(default_factory=list)
    component_scores: dict[str, float] = Field(default_factory=dict)
    capacity_steps: list[CapacityStep] = Field(default_factory=list)
    limiting_factor: str = ""
    security_findings: list[str] = Field(default_factory=list)
    performance_findings: list[str] = Field(default_factory=list)
    skipped_phases: list[str] = Field(default_factory=list)


class RemediationTask(ValidationBaseModel):
    issue_id: str
    title: str
    priority: IssuePriority
    component: str
    milestone: str
    estimated_hours: int
    deployment_blocker: bool = False
    steps: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)


class IssueTracker(ValidationBaseModel):
    execution_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    tasks: list[RemediationTask] = Field(default_factory=list)
    total_estimated_hours: int = 0
    hours_by_milestone: dict[str, int] = Field(default_factory=dict)


class ChecklistStatus(enum.StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARNING = "WARNING"


class ChecklistItem(ValidationBaseModel):
    id: str
    section: str
    title: str
    status: ChecklistStatus
    evidence: str = ""
    remediation: str = ""


class DeploymentChecklist(ValidationBaseModel):
    execution_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    items: list[ChecklistItem] = Field(default_factory=list)
    ready: bool = False
    failing_items: list[str] = Field(default_factory=list)
    pre_deployment_tasks: list[str] = Field(default_factory=list)
    post_deployment_tasks: list[str] = Field(default_factory=list)
    rollback_procedures: list[str] = Field(default_factory=list)


# ── Executive summary ────────────────────────────────────────────────────────


_HEADLINES: dict[Recommendation, str] = {
    Recommendation.GO: "BLE attendance is ready for production deployment",
    Recommendation.CONDITIONAL_GO: "BLE attendance can ship once the listed conditions are closed",
    Recommendation.NO_GO: "BLE attendance is not ready for production deployment",
}

_STRENGTHS: dict[str, str] = {
    "static_analysis": "Native modules and bridge layer pass static analysis",
    "database_simulation": "Database functions hold up under simulated concurrent check-ins",
    "security_audit": "Token generation and organization isolation meet security checks",
    "performance_analysis": "Resource usage and capacity stay within thresholds",
    "configuration_audit": "App, build and permission configuration is complete",
}


def generate_executive_summary(
    result: BLESystemValidationResult,
    categorization: IssueCategorizationResult,
    verdict: ProductionReadinessVerdictResult,
) -> ExecutiveSummary:
    rec = verdict.recommendation
    critical = [
        f"{ci.id}: {ci.issue.message}"
        for ci in sort_by_priority(categorization.deployment_blockers or categorization.critical)
    ][:5]
    strengths = [
        _STRENGTHS[phase]
        for phase, p in result.phases.items()
        if p.status == ValidationStatus.PASS and phase in _STRENGTHS
    ]
    if rec.recommendation == Recommendation.GO:
        next_steps = ["Proceed with a staged rollout", "Enable production monitoring", "Rehearse rollback"]
    else:
        next_steps = [*rec.conditions[:5], "Re-run validation after fixes"]

    return ExecutiveSummary(
        execution_id=result.execution_id,
        headline=_HEADLINES[rec.recommendation],
        recommendation=rec.recommendation,
        overall_status=result.overall_status,
        production_readiness=result.production_readiness.value,
        confidence=verdict.confidence.value,
        health_score=verdict.health.score,
        health_rating=verdict.health.rating.value,
        supported_users=verdict.capacity.max_supported_users,
        target_users=verdict.capacity.target_users,
        key_metrics={
            "total_issues": result.total_issues_found,
            "critical_issues": len(result.critical_issues),
            "deployment_blockers": verdict.blocker_count,
            "security_vulnerabilities": len(categorization.security_vulnerabilities),
            "performance_bottlenecks": len(categorization.performance_bottlenecks),
            "estimated_fix_days": rec.timeline.estimated_fix_days,
            "phases_completed": len(result.phases),
            "execution_time_ms": result.total_execution_time_ms,
        },
        critical_findings=critical,
        strengths=strengths,
        next_steps=next_steps,
    )


# ── Technical analysis ───────────────────────────────────────────────────────


def _issue_line(r: ValidationResult) -> str:
    return f"[{r.severity.value}] {r.id}: {r.message}"


def generate_technical_analysis(
    result: BLESystemValidationResult,
    categorization: IssueCategorizationResult,
    verdict: ProductionReadinessVerdictResult,
) -> TechnicalAnalysis:
    phases: list[PhaseAnalysis] = []
    for phase_id in PHASE_ORDER:
        phase = result.phases.get(phase_id)
        if phase is None:
            continue
        issues = sorted(
            (r for r in phase.results if r.is_issue),
            key=lambda r: -r.severity.rank,
        )
        counts = {s.value: 0 for s in Severity}
        for r in issues:
            counts[r.severity.value] += 1
        phases.append(PhaseAnalysis(
            phase_id=phase_id,
            phase_name=phase.phase_name,
            status=phase.status,
            duration_ms=phase.duration_ms,
            checks=len(phase.results),
            issues_by_severity=counts,
            top_issues=[_issue_line(r) for r in issues[:5]],
            summary=phase.summary,
        ))

    return TechnicalAnalysis(
        execution_id=result.execution_id,
        phases=phases,
        component_scores=verdict.health.component_scores,
        capacity_steps=verdict.capacity.steps,
        limiting_factor=verdict.capacity.limiting_factor,
        security_findings=[_issue_line(ci.issue) for ci in categorization.security_vulnerabilities],
        performance_findings=[_issue_line(ci.issue) for ci in categorization.performance_bottlenecks],
        skipped_phases=[p for p in PHASE_ORDER if p not in result.phases],
    )


# ── Issue tracker ────────────────────────────────────────────────────────────

MILESTONE_BLOCKERS = "Before deployment"
MILESTONE_HIGH = "Before full rollout"
MILESTONE_BACKLOG = "Backlog"


def generate_issue_tracker(categorization: IssueCategorizationResult) -> IssueTracker:
    tasks: list[RemediationTask] = []
    for ci in sort_by_priority(categorization.all_issues):
        if ci.deployment_blocker:
            milestone = MILESTONE_BLOCKERS
        elif ci.priority in (IssuePriority.CRITICAL, IssuePriority.HIGH):
            milestone = MILESTONE_HIGH
        else:
            milestone = MILESTONE_BACKLOG
        tasks.append(RemediationTask(
            issue_id=ci.id,
            title=ci.issue.name,
            priority=ci.priority,
            component=ci.component,
            milestone=milestone,
            estimated_hours=FIX_HOURS[ci.effort],
            deployment_blocker=ci.deployment_blocker,
            steps=ci.remediation_steps,
            depends_on=ci.dependencies,
        ))

    by_milestone: dict[str, int] = {
        MILESTONE_BLOCKERS: 0, MILESTONE_HIGH: 0, MILESTONE_BACKLOG: 0,
    }
    for task in tasks:
        by_milestone[task.milestone] += task.estimated_hours

    return IssueTracker(
        execution_id=categorization.execution_id,
        tasks=tasks,
        total_estimated_hours=sum(t.estimated_hours for t in tasks),
        hours_by_milestone=by_milestone,
    )


# ── Deployment checklist ─────────────────────────────────────────────────────

# (finding id, section, title, remediation)
_CHECKLIST: tuple[tuple[str, str, str, str], ...] = (
    ("config_app_file", "configuration", "App configuration present",
     "Add app.json or app.config.js"),
    ("config_app_uuid", "configuration", "APP_UUID configured",
     "Set a well-formed APP_UUID in the app config extra section"),
    ("config_beacon_modules", "configuration", "Beacon modules registered",
     "Register the BLE beacon native modules with the Expo config"),
    ("security_hardcoded_secrets", "configuration", "No hardcoded secrets",
     "Move keys to EAS secrets or environment variables"),
    ("config_ios_usage_descriptions", "permissions", "iOS usage descriptions",
     "Add Bluetooth and location usage descriptions to infoPlist"),
    ("config_ios_background_modes", "permissions", "iOS background modes",
     "Add bluetooth-central, bluetooth-peripheral and location background modes"),
    ("config_android_permissions", "permissions", "Android permissions declared",
     "Declare BLUETOOTH_SCAN, BLUETOOTH_ADVERTISE, BLUETOOTH_CONNECT and location permissions"),
    ("config_android_sdk", "permissions", "Android target SDK supports runtime BLE permissions",
     "Target SDK 31 or later"),
    ("config_eas_profiles", "build", "EAS build profiles",
     "Define development, preview and production profiles in eas.json"),
    ("config_eas_environment", "build", "EAS build environment",
     "Set per-profile environment variables"),
    ("config_expo_sdk", "build", "Expo SDK version", "Upgrade to a supported Expo SDK"),
    ("config_native_dependencies", "build", "Native module dependencies",
     "Add the BLE native module packages to package.json"),
    ("config_dev_client", "build", "Development client",
     "Install expo-dev-client for native module testing"),
)

_CHECKLIST_STATUS: dict[ValidationStatus, ChecklistStatus] = {
    ValidationStatus.PASS: ChecklistStatus.PASS,
    ValidationStatus.FAIL: ChecklistStatus.FAIL,
    ValidationStatus.CONDITIONAL: ChecklistStatus.WARNING,
    ValidationStatus.PENDING: ChecklistStatus.WARNING,
    ValidationStatus.SKIPPED: ChecklistStatus.WARNING,
}


def generate_deployment_checklist(
    result: BLESystemValidationResult,
    verdict: ProductionReadinessVerdictResult,
) -> DeploymentChecklist:
    findings = {r.id: r for r in result.all_results()}
    items: list[ChecklistItem] = []

    for finding_id, section, title, remediation in _CHECKLIST:
        finding = findings.get(finding_id)
        if finding is None:
            items.append(ChecklistItem(
                id=finding_id, section=section, title=title,
                status=ChecklistStatus.WARNING,
                evidence="Not checked in this run",
                remediation=remediation,
            ))
            continue
        status = _CHECKLIST_STATUS[finding.status]
        items.append(ChecklistItem(
            id=finding_id, section=section, title=title,
            status=status,
            evidence=finding.message,
            remediation="" if status == ChecklistStatus.PASS else remediation,
        ))

    for index, requirement in enumerate(MONITORING_REQUIREMENTS, start=1):
        items.append(ChecklistItem(
            id=f"monitoring_{index}",
            section="monitoring",
            title=f"Monitor: {requirement}",
            status=ChecklistStatus.WARNING,
            evidence="Monitoring cannot be verified statically",
            remediation="Configure a dashboard and alert before rollout",
        ))

    failing = [i.id for i in items if i.status == ChecklistStatus.FAIL]
    rec = verdict.recommendation
    return DeploymentChecklist(
        execution_id=result.execution_id,
        items=items,
        ready=not failing and rec.recommendation != Recommendation.NO_GO,
        failing_items=failing,
        pre_deployment_tasks=[
            *(f"Fix: {i.title}" for i in items if i.status == ChecklistStatus.FAIL),
            *rec.conditions,
            "Produce a production EAS build and smoke-test check-in on one iOS and one Android device",
        ],
        post_deployment_tasks=[
            *(f"Watch {m}" for m in rec.monitoring_requirements),
            "Re-run validation after the first week in production",
        ],
        rollback_procedures=list(rec.rollback_plan),
    )


# ── Markdown ─────────────────────────────────────────────────────────────────


def render_executive_summary(summary: ExecutiveSummary) -> str:
    lines = [
        "# Executive Summary",
        "",
        f"**{summary.headline}**",
        "",
        f"- Recommendation: **{summary.recommendation.value}**",
        f"- Overall status: {summary.overall_status.value}",
        f"- Production readiness: {summary.production_readiness}",
        f"- Health: {summary.health_score:.0f}/100 ({summary.health_rating})",
        f"- Capacity: {summary.supported_users}/{summary.target_users} concurrent users",
        f"- Confidence: {summary.confidence}",
        "",
    ]
    if summary.critical_findings:
        lines += ["## Critical Findings", "", *(f"- {f}" for f in summary.critical_findings), ""]
    if summary.strengths:
        lines += ["## Strengths", "", *(f"- {s}" for s in summary.strengths), ""]
    lines += ["## Next Steps", "", *(f"{i}. {s}" for i, s in enumerate(summary.next_steps, start=1))]
    return "\n".join(lines)


def render_deployment_checklist(checklist: DeploymentChecklist) -> str:
    marks = {ChecklistStatus.PASS: "[x]", ChecklistStatus.FAIL: "[ ]", ChecklistStatus.WARNING: "[~]"}
    lines = ["# Deployment Readiness Checklist", ""]
    section = ""
    for item in checklist.items:
        if item.section != section:
            section = item.section
            lines += ["", f"## {section.title()}", ""]
        note = f": {item.remediation}" if item.remediation else ""
        lines.append(f"- {marks[item.status]} {item.title} ({item.status.value}){note}")
    lines += ["", f"**Ready:** {'yes' if checklist.ready else 'no'}"]
    return "\n".join(lines)
