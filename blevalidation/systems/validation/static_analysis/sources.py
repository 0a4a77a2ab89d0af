"""
Read-only source loading and declarative pattern rules for the static
analysis phase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)


@dataclass(frozen=True)
class SourceFile:
    path: Path
    relative: str
    text: str

    @cached_property
    def lines(self) -> list[str]:
        return self.text.splitlines()

    @property
    def line_count(self) -> int:
        return len(self.lines)

    def find(self, pattern: re.Pattern[str]) -> list[tuple[int, str]]:
        """(1-based line number, stripped line) for every matching line."""
        return [
            (idx, line.strip())
            for idx, line in enumerate(self.lines, start=1)
            if pattern.search(line)
        ]

    def contains(self, pattern: re.Pattern[str]) -> bool:
        return pattern.search(self.text) is not None


def load_sources(root: Path, globs: tuple[str, ...]) -> list[SourceFile]:
    """Every file under ``root`` matching any glob, sorted by path."""
    if not root.is_dir():
        return []
    seen: dict[Path, None] = {}
    for pattern in globs:
        for path in root.rglob(pattern):
            if path.is_file():
                seen.setdefault(path, None)
    files: list[SourceFile] = []
    for path in sorted(seen):
        files.append(SourceFile(
            path=path,
            relative=str(path.relative_to(root)),
            text=path.read_text(encoding="utf-8", errors="replace"),
        ))
    return files


@dataclass(frozen=True)
class PatternRule:
    """
    One declarative check over a group of source files.

    ``required`` rules fail when no file matches; forbidden rules
    (``required=False``) fail when any line matches.
    """

    id: str
    name: str
    pattern: re.Pattern[str]
    required: bool
    severity: Severity
    message: str
    recommendation: str
    category: ValidationCategory = ValidationCategory.NATIVE

    def evaluate(self, files: list[SourceFile]) -> tuple[bool, list[Evidence]]:
        """Returns (passed, evidence)."""
        evidence: list[Evidence] = []
        for src in files:
            for line_no, line in src.find(self.pattern):
                evidence.append(Evidence(
                    type=EvidenceType.CODE_REFERENCE,
                    location=src.relative,
                    details=self.name,
                    severity=Severity.INFO if self.required else self.severity,
                    line_number=line_no,
                    code_snippet=line[:200],
                ))
        if self.required:
            return bool(evidence), evidence[:5]
        return not evidence, evidence[:10]


def rule(
    id: str,
    name: str,
    pattern: str,
    *,
    required: bool = True,
    severity: Severity = Severity.MEDIUM,
    message: str,
    recommendation: str,
    category: ValidationCategory = ValidationCategory.NATIVE,
    flags: int = 0,
) -> PatternRule:
    return PatternRule(
        id=id,
        name=name,
        pattern=re.compile(pattern, flags),
        required=required,
        severity=severity,
        message=message,
        recommendation=recommendation,
        category=category,
    )


def evaluate_rules(
    rules: tuple[PatternRule, ...],
    files: list[SourceFile],
    prefix: str,
) -> list[ValidationResult]:
    """Run every rule over ``files`` and return one finding per rule."""
    results: list[ValidationResult] = []
    for r in rules:
        passed, evidence = r.evaluate(files)
        results.append(ValidationResult(
            id=f"{prefix}_{r.id}",
            name=r.name,
            status=ValidationStatus.PASS if passed else ValidationStatus.FAIL,
            severity=Severity.INFO if passed else r.severity,
            category=r.category,
            message=f"{r.name}: ok" if passed else r.message,
            details={"files_scanned": len(files), "matches": len(evidence)},
            evidence=evidence,
            recommendations=[] if passed else [r.recommendation],
        ))
    return results
