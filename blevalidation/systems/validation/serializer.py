"""
BLE Validation — Result Serialization

JSON is the pydantic dump of BLESystemValidationResult and parses back
into the same model. Markdown renders the same aggregate as a report.
"""

from __future__ import annotations

import json
from typing import Any

from blevalidation.config import PHASE_ORDER
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    ValidationPhaseResult,
    ValidationProgress,
    ValidationResult,
)


class ValidationResultSerializer:
    def __init__(
        self,
        include_details: bool = True,
        include_evidence: bool = True,
        indent: int | None = 2,
    ) -> None:
        self._include_details = include_details
        self._include_evidence = include_evidence
        self._indent = indent

    # ── JSON ─────────────────────────────────────────────────────────────────

    def to_json(self, result: BLESystemValidationResult) -> str:
        if self._include_details and self._include_evidence:
            return result.model_dump_json(indent=self._indent)
        data = result.model_dump(mode="json")
        for phase in data["phases"].values():
            for finding in [*phase["results"], *phase["critical_issues"]]:
                self._strip(finding)
        for finding in data["critical_issues"]:
            self._strip(finding)
        return json.dumps(data, indent=self._indent)

    def _strip(self, finding: dict[str, Any]) -> None:
        if not self._include_details:
            finding["details"] = None
        if not self._include_evidence:
            finding["evidence"] = []

    @staticmethod
    def from_json(payload: str | bytes) -> BLESystemValidationResult:
        return BLESystemValidationResult.model_validate_json(payload)

    # ── Markdown ─────────────────────────────────────────────────────────────

    def to_markdown(self, result: BLESystemValidationResult) -> str:
        lines: list[str] = [
            "# BLE System Validation Report",
            "",
            f"**Execution ID:** {result.execution_id}",
            f"**Timestamp:** {result.timestamp.isoformat()}",
            f"**Version:** {result.validation_version}",
            f"**Overall Status:** {result.overall_status.value}",
            f"**Production Readiness:** {result.production_readiness.value}",
            f"**Confidence Level:** {result.confidence_level.value}",
            f"**Total Execution Time:** {result.total_execution_time_ms}ms",
            f"**Total Issues Found:** {result.total_issues_found}",
        ]
        if result.aborted:
            lines.append("**Run aborted:** results are partial")
        lines += [
            "",
            "## Executive Summary",
            "",
            (
                f"The BLE system validation finished with an overall status of "
                f"**{result.overall_status.value}**. The system is assessed as "
                f"**{result.production_readiness.value}** for production deployment "
                f"with **{result.confidence_level.value}** confidence."
            ),
            "",
            "### Issues by Category",
            "",
            "| Category | Issues |",
            "|---|---|",
            *(f"| {c} | {n} |" for c, n in result.issues_by_category.items()),
            "",
            "### Issues by Severity",
            "",
            "| Severity | Issues |",
            "|---|---|",
            *(f"| {s} | {n} |" for s, n in result.issues_by_severity.items()),
            "",
        ]

        if result.critical_issues:
            lines += ["## Critical Issues Requiring Immediate Attention", ""]
            for index, issue in enumerate(result.critical_issues, start=1):
                lines.append(f"### {index}. {issue.name}")
                lines += self.result_to_markdown(issue)

        for phase_id in sorted(result.phases, key=_phase_rank):
            lines += self.phase_to_markdown(result.phases[phase_id])

        if result.recommendations:
            lines += ["## Overall Recommendations", ""]
            lines += [f"{i}. {rec}" for i, rec in enumerate(result.recommendations, start=1)]
            lines.append("")

        return "\n".join(lines)

    def phase_to_markdown(self, phase: ValidationPhaseResult) -> list[str]:
        lines = [
            f"## {phase.phase_name} Phase",
            "",
            f"**Status:** {phase.status.value} | **Duration:** {phase.duration_ms}ms | "
            f"**Results:** {len(phase.results)}",
            "",
            phase.summary,
            "",
        ]
        issues = [r for r in phase.results if r.is_issue]
        if issues:
            lines += [
                "| ID | Status | Severity | Category | Message |",
                "|---|---|---|---|---|",
            ]
            lines += [
                f"| {r.id} | {r.status.value} | {r.severity.value} | "
                f"{r.category.value} | {_cell(r.message)} |"
                for r in issues
            ]
            lines.append("")
        return lines

    def result_to_markdown(self, result: ValidationResult) -> list[str]:
        lines = [
            "",
            f"**Status:** {result.status.value} | **Severity:** {result.severity.value} | "
            f"**Category:** {result.category.value}",
            "",
            result.message,
            "",
        ]
        if self._include_details and result.details:
            lines += ["```json", json.dumps(result.details, indent=2, default=str), "```", ""]
        if self._include_evidence and result.evidence:
            lines.append("**Evidence:**")
            for ev in result.evidence:
                where = f"{ev.location}:{ev.line_number}" if ev.line_number else ev.location
                lines.append(f"- `{where}` ({ev.type.value}): {ev.details}")
            lines.append("")
        if result.recommendations:
            lines.append("**Recommendations:**")
            lines += [f"- {rec}" for rec in result.recommendations]
            lines.append("")
        return lines

    @staticmethod
    def progress_to_markdown(progress: ValidationProgress) -> str:
        lines = [
            "# Validation Progress",
            "",
            f"**Current Phase:** {progress.current_phase}",
            f"**Current Step:** {progress.current_step}",
            f"**Progress:** {progress.completed_steps}/{progress.total_steps} "
            f"({progress.percent_complete:.1f}%)",
        ]
        if progress.errors:
            lines += ["", f"## Errors ({len(progress.errors)})", *(f"- {e}" for e in progress.errors)]
        if progress.warnings:
            lines += ["", f"## Warnings ({len(progress.warnings)})", *(f"- {w}" for w in progress.warnings)]
        return "\n".join(lines)


def _phase_rank(phase_id: str) -> int:
    return PHASE_ORDER.index(phase_id) if phase_id in PHASE_ORDER else len(PHASE_ORDER)


def _cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")
