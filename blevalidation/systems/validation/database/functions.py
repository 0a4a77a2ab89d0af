"""
Static validation of the PL/pgSQL data functions behind BLE attendance.

Functions are extracted from the migrations directory (later files replace
earlier definitions, as CREATE OR REPLACE would) and run through a fixed
battery of input classes. Nothing is executed: each class is judged by
whether the function body contains the guard that input class needs.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

CORE_FUNCTIONS: tuple[str, ...] = (
    "create_session_secure",
    "resolve_session",
    "add_attendance_secure",
)
HELPER_FUNCTIONS: tuple[str, ...] = (
    "get_org_code",
    "encode_session_token",
    "validate_token_security",
)

INPUT_CLASSES: tuple[str, ...] = ("valid", "boundary", "malformed", "adversarial")

_FUNCTION = re.compile(
    r"CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\s+(?:[\w\"]+\.)?\"?(\w+)\"?\s*"
    r"\((?P<params>[^)]*)\)(?P<header>.*?)\$(?P<tag>\w*)\$(?P<body>.*?)\$(?P=tag)\$"
    r"(?P<trailer>[^;]*)",
    re.IGNORECASE | re.DOTALL,
)
_LANGUAGE = re.compile(r"LANGUAGE\s+(\w+)", re.IGNORECASE)
_DYNAMIC_CONCAT = re.compile(r"\bEXECUTE\b[^;]*\|\|", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class SqlFunction:
    name: str
    params: str
    header: str
    body: str
    language: str
    source: str
    line: int

    @property
    def definition(self) -> str:
        return f"{self.header}\n{self.body}"

    def has(self, *needles: str) -> bool:
        """Case-insensitive: any needle present in header or body."""
        text = self.definition.lower()
        return any(n.lower() in text for n in needles)


def extract_functions(migrations_dir: Path) -> dict[str, SqlFunction]:
    functions: dict[str, SqlFunction] = {}
    if not migrations_dir.is_dir():
        return functions
    for path in sorted(migrations_dir.rglob("*.sql")):
        text = path.read_text(encoding="utf-8", errors="replace")
        for match in _FUNCTION.finditer(text):
            lang = _LANGUAGE.search(match.group("header") + match.group("trailer"))
            functions[match.group(1).lower()] = SqlFunction(
                name=match.group(1).lower(),
                params=match.group("params").strip(),
                header=match.group("header"),
                body=match.group("body"),
                language=lang.group(1).lower() if lang else "sql",
                source=str(path.relative_to(migrations_dir)),
                line=text.count("\n", 0, match.start()) + 1,
            )
    return functions


# ── Checks ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Check:
    id: str
    name: str
    predicate: Callable[[SqlFunction], bool]
    severity: Severity
    category: ValidationCategory
    failure: str
    recommendation: str


def _syntax_ok(fn: SqlFunction) -> bool:
    return not syntax_issues(fn)


def syntax_issues(fn: SqlFunction) -> list[str]:
    issues: list[str] = []
    body = fn.body
    if fn.language == "plpgsql":
        if not re.search(r"\bBEGIN\b", body, re.IGNORECASE) or not re.search(
            r"\bEND\b", body, re.IGNORECASE,
        ):
            issues.append("missing BEGIN/END block")
        if re.search(r"\bDECLARE\b", body, re.IGNORECASE) and not re.search(
            r"\bDECLARE\b.*?\bBEGIN\b", body, re.IGNORECASE | re.DOTALL,
        ):
            issues.append("DECLARE section without BEGIN")
    if body.count("(") != body.count(")"):
        issues.append("unbalanced parentheses")
    if body.count("'") % 2:
        issues.append("unbalanced single quotes")
    return issues


def _no_dynamic_concat(fn: SqlFunction) -> bool:
    return _DYNAMIC_CONCAT.search(fn.body) is None


_COMMON: tuple[Check, ...] = (
    Check(
        "security_definer", "SECURITY DEFINER scoping",
        lambda fn: not fn.has("security definer") or fn.has("auth.uid()", "org_id"),
        Severity.HIGH, ValidationCategory.SECURITY,
        "SECURITY DEFINER function does not scope access by auth.uid() or org_id",
        "Check auth.uid() and organization membership inside every SECURITY DEFINER function",
    ),
    Check(
        "search_path", "Pinned search_path",
        lambda fn: not fn.has("security definer") or fn.has("search_path"),
        Severity.LOW, ValidationCategory.SECURITY,
        "SECURITY DEFINER function does not pin search_path",
        "Add SET search_path = public to SECURITY DEFINER functions",
    ),
)

# Guard required per input class
_INPUT_CLASS_CHECKS: dict[str, Check] = {
    "valid": Check(
        "valid_input", "Valid input handling", _syntax_ok,
        Severity.HIGH, ValidationCategory.DATABASE,
        "Function body has syntax problems; valid calls cannot succeed",
        "Fix the syntax issues reported for this function",
    ),
    "boundary": Check(
        "boundary_input", "Boundary input handling",
        lambda fn: fn.has("length(", "char_length(", "between"),
        Severity.MEDIUM, ValidationCategory.DATABASE,
        "No length or range checks on parameters",
        "Validate parameter lengths (e.g. LENGTH(TRIM(p_session_token)) = 12)",
    ),
    "malformed": Check(
        "malformed_input", "Malformed input handling",
        lambda fn: fn.has("is null") and fn.has("trim(", "upper(", "~"),
        Severity.MEDIUM, ValidationCategory.DATABASE,
        "NULL or unnormalised input is not rejected",
        "Reject NULL parameters and normalise text input with TRIM/UPPER",
    ),
    "adversarial": Check(
        "adversarial_input", "Injection-shaped input handling", _no_dynamic_concat,
        Severity.CRITICAL, ValidationCategory.SECURITY,
        "Dynamic SQL is built by string concatenation; injection-shaped input reaches EXECUTE",
        "Use EXECUTE ... USING or format() with %L/%I instead of concatenation",
    ),
}

_SPECIFIC: dict[str, tuple[Check, ...]] = {
    "create_session_secure": (
        Check(
            "secure_token", "Cryptographic token generation",
            lambda fn: fn.has("gen_random_bytes", "gen_random_uuid", "secure_chars")
            and not re.search(r"\brandom\(\)", fn.body, re.IGNORECASE),
            Severity.HIGH, ValidationCategory.SECURITY,
            "Session tokens are generated with random(), which is not cryptographically secure",
            "Generate tokens from gen_random_bytes() over an unambiguous character set",
        ),
        Check(
            "collision_check", "Token collision retry",
            lambda fn: fn.has("while exists", "collision", "max_retries"),
            Severity.MEDIUM, ValidationCategory.DATABASE,
            "Token uniqueness is not re-checked before insert",
            "Loop WHILE EXISTS on the generated token with a bounded retry count",
        ),
        Check(
            "officer_authorization", "Officer authorization",
            lambda fn: fn.has("auth.uid()") and fn.has("memberships", "role"),
            Severity.CRITICAL, ValidationCategory.SECURITY,
            "Any authenticated user can open an attendance session",
            "Require an active officer membership in the target organization",
        ),
    ),
    "resolve_session": (
        Check(
            "expiration", "Session expiration",
            lambda fn: fn.has("now()", "current_timestamp")
            and fn.has("ends_at", "expires_at"),
            Severity.HIGH, ValidationCategory.DATABASE,
            "Expired sessions are still resolvable",
            "Compare ends_at/expires_at with NOW() when resolving a session",
        ),
        Check(
            "org_isolation", "Organization isolation",
            lambda fn: fn.has("org_id"),
            Severity.CRITICAL, ValidationCategory.SECURITY,
            "Session resolution is not filtered by organization",
            "Filter by org_id so beacons from other organizations never resolve",
        ),
    ),
    "add_attendance_secure": (
        Check(
            "authentication", "Authentication check",
            lambda fn: fn.has("auth.uid()"),
            Severity.CRITICAL, ValidationCategory.SECURITY,
            "Attendance can be recorded without an authenticated user",
            "Read the member from auth.uid() and reject NULL",
        ),
        Check(
            "duplicate_prevention", "Duplicate check-in prevention",
            lambda fn: fn.has("on conflict", "not exists", "existing_attendance", "unique"),
            Severity.CRITICAL, ValidationCategory.DATABASE,
            "Nothing prevents the same member checking into an event twice",
            "Enforce UNIQUE(member_id, event_id) and insert with ON CONFLICT DO NOTHING",
        ),
        Check(
            "membership", "Active membership validation",
            lambda fn: fn.has("memberships") and fn.has("is_active"),
            Severity.HIGH, ValidationCategory.SECURITY,
            "Check-in does not require an active membership in the session's organization",
            "Require memberships.is_active = true for the session's org_id",
        ),
        Check(
            "error_disclosure", "Error response hygiene",
            lambda fn: not fn.has("sqlerrm") and fn.has("jsonb_build_object"),
            Severity.MEDIUM, ValidationCategory.SECURITY,
            "Errors leak database internals (SQLERRM) or are not structured",
            "Return jsonb_build_object error codes without SQLERRM",
        ),
    ),
}


def _evidence(fn: SqlFunction, details: str, severity: Severity) -> list[Evidence]:
    return [Evidence(
        type=EvidenceType.CODE_REFERENCE,
        location=fn.source,
        details=details,
        severity=severity,
        line_number=fn.line,
    )]


def _check_result(fn: SqlFunction, check: Check, input_class: str | None = None) -> ValidationResult:
    passed = check.predicate(fn)
    details: dict[str, object] = {"function": fn.name, "source": fn.source}
    if input_class:
        details["input_class"] = input_class
    if check.id == "valid_input" and not passed:
        details["syntax_issues"] = syntax_issues(fn)
    return ValidationResult(
        id=f"db_{fn.name}_{check.id}",
        name=f"{fn.name}: {check.name}",
        status=ValidationStatus.PASS if passed else ValidationStatus.FAIL,
        severity=Severity.INFO if passed else check.severity,
        category=check.category,
        message=f"{fn.name}: {check.name} ok" if passed else f"{fn.name}: {check.failure}",
        details=details,
        evidence=[] if passed else _evidence(fn, check.failure, check.severity),
        recommendations=[] if passed else [check.recommendation],
    )


def validate_function(fn: SqlFunction) -> list[ValidationResult]:
    results = [
        _check_result(fn, _INPUT_CLASS_CHECKS[input_class], input_class)
        for input_class in INPUT_CLASSES
    ]
    results.extend(_check_result(fn, check) for check in _COMMON)
    results.extend(_check_result(fn, check) for check in _SPECIFIC.get(fn.name, ()))
    return results


def missing_function_result(name: str, core: bool) -> ValidationResult:
    severity = Severity.CRITICAL if core else Severity.LOW
    return ValidationResult(
        id=f"db_{name}_missing",
        name=f"{name} function missing",
        status=ValidationStatus.FAIL if core else ValidationStatus.CONDITIONAL,
        severity=severity,
        category=ValidationCategory.DATABASE,
        message=f"Function {name} not found in migration files",
        details={"function": name, "core": core},
        recommendations=[f"Add a migration defining {name}"],
    )
