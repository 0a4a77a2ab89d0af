"""
BLE Validation — Security Audit Engine

Audits the attendance system's security posture from its SQL migrations,
bridge-layer sources and app configuration:

  - token generation and validation (entropy, charset, normalisation)
  - database functions (injection, RLS, SECURITY DEFINER scoping, leaks)
  - BLE payload (token hashing into the 16-bit minor, expiry)
  - organization isolation (org_id filtering, membership checks)
  - hardcoded secrets in app configuration

Each audit collects SecurityVulnerability records and rolls them up into
a single finding whose severity is the worst vulnerability found.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from blevalidation.config import SourcePathsConfig
from blevalidation.systems.validation.database.functions import (
    SqlFunction,
    extract_functions,
)
from blevalidation.systems.validation.engine import BaseAnalysisEngine
from blevalidation.systems.validation.errors import EngineInitError
from blevalidation.systems.validation.static_analysis.bridge import BRIDGE_GLOBS
from blevalidation.systems.validation.static_analysis.sources import SourceFile, load_sources
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
)

logger = structlog.get_logger()

MIN_TOKEN_ENTROPY_BITS = 60.0
AMBIGUOUS_CHARS = frozenset("0O1IL")

_SECURE_CHARS = re.compile(r"secure_chars\s+(?:TEXT\s*)?(?::=|=)\s*'([^']+)'", re.IGNORECASE)
_TOKEN_LENGTH_CHECK = re.compile(r"LENGTH\s*\([^;]*?\)\s*(?:!=|<>|=)\s*(\d+)", re.IGNORECASE)
_DYNAMIC_CONCAT = re.compile(r"\bEXECUTE\b[^;]*\|\|", re.IGNORECASE | re.DOTALL)
_FORMAT_UNQUOTED = re.compile(r"\bEXECUTE\s+format\s*\(\s*'[^']*%s", re.IGNORECASE)
_CREATE_TABLE = re.compile(
    r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?:public\.)?\"?(\w+)\"?", re.IGNORECASE,
)
_ENABLE_RLS = re.compile(
    r"ALTER\s+TABLE\s+(?:public\.)?\"?(\w+)\"?\s+ENABLE\s+ROW\s+LEVEL\s+SECURITY", re.IGNORECASE,
)
_FROM_TABLE = re.compile(r"\bFROM\s+(?:public\.)?(\w+)", re.IGNORECASE)
_ORG_FILTER = re.compile(r"\bWHERE\b[^;]*\borg_id\s*=", re.IGNORECASE)
_SQLERRM = re.compile(r"(?:RETURN|RAISE)[^;]*SQLERRM", re.IGNORECASE)
_MINOR_HASH = re.compile(r"%\s*65536|hashtext\s*\(|encode_session_token|& 0xFFFF", re.IGNORECASE)
_JWT = re.compile(r"eyJ[A-Za-z0-9_-]{8,}\.([A-Za-z0-9_-]{8,})\.[A-Za-z0-9_-]{8,}")
_SECRET_LITERAL = re.compile(
    r"(\w*(?:secret|private|access_?key|password)\w*)\s*[:=]\s*"
    r"(?:[^\"'\n]*\|\|\s*)?[\"']([A-Za-z0-9/+=_-]{20,})[\"']",
    re.IGNORECASE,
)

# Tables that must be protected by row-level security
_PROTECTED_TABLES = ("attendance", "events", "memberships", "ble_sessions", "sessions")


@dataclass(frozen=True)
class SecurityVulnerability:
    kind: str
    severity: Severity
    location: str
    description: str
    recommendation: str
    cwe: str = ""
    line_number: int | None = None


def token_entropy_bits(charset: str, length: int) -> float:
    """Entropy of a uniformly random token over the distinct chars of ``charset``."""
    distinct = len(set(charset))
    if distinct < 2 or length <= 0:
        return 0.0
    return length * math.log2(distinct)


def decode_jwt_claims(token: str) -> dict[str, object]:
    """Unverified JWT payload claims; empty dict when undecodable."""
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        return {}
    return claims if isinstance(claims, dict) else {}


class SecurityAuditEngine(BaseAnalysisEngine):
    engine_name = "SecurityAuditEngine"
    version = "1.0.0"
    phase_id = "security_audit"
    phase_name = "Security Audit"
    category = ValidationCategory.SECURITY
    total_steps = 5

    def __init__(self, sources: SourcePathsConfig) -> None:
        super().__init__()
        self._sources = sources
        self._sql = ""
        self._sql_files: dict[str, str] = {}
        self._functions: dict[str, SqlFunction] = {}
        self._bridge: list[SourceFile] = []
        self._config_files: dict[str, str] = {}
        self._log = logger.bind(system="validation.security")

    def _reset_state(self) -> None:
        self._sql = ""
        self._sql_files = {}
        self._functions = {}
        self._bridge = []
        self._config_files = {}

    async def _setup(self) -> None:
        migrations = self._sources.resolve(self._sources.migrations_dir)
        if migrations.is_dir():
            for path in sorted(migrations.rglob("*.sql")):
                self._sql_files[str(path.relative_to(migrations))] = path.read_text(
                    encoding="utf-8", errors="replace",
                )
        self._sql = "\n".join(self._sql_files.values())
        self._functions = extract_functions(migrations)
        self._bridge = load_sources(self._sources.resolve(self._sources.bridge_dir), BRIDGE_GLOBS)
        for name in (self._sources.app_config_js, self._sources.app_json):
            path: Path = self._sources.resolve(name)
            if path.is_file():
                self._config_files[name] = path.read_text(encoding="utf-8", errors="replace")

        if not (self._sql_files or self._bridge):
            raise EngineInitError(
                self.engine_name,
                f"no SQL migrations under {self._sources.migrations_dir} "
                f"and no bridge sources under {self._sources.bridge_dir}",
            )
        self._log.info(
            "security_sources_loaded",
            sql_files=len(self._sql_files),
            functions=len(self._functions),
            bridge_files=len(self._bridge),
            config_files=len(self._config_files),
        )

    async def _run(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for label, audit in (
            ("token security", self.audit_token_security),
            ("database security", self.audit_database_security),
            ("BLE payload security", self.audit_ble_payload_security),
            ("organization isolation", self.audit_organization_isolation),
            ("hardcoded secrets", self.audit_hardcoded_secrets),
        ):
            self._progress.update(f"Auditing {label}")
            results.extend(await audit())
            self._progress.update(f"Audited {label}", completed=True)
        return results

    # ── Roll-up ──────────────────────────────────────────────────────────────

    def _roll_up(
        self,
        id: str,
        name: str,
        vulnerabilities: list[SecurityVulnerability],
        pass_message: str,
    ) -> ValidationResult:
        if not vulnerabilities:
            return self._finding(id, name, passed=True, message=pass_message)

        worst = max((v.severity for v in vulnerabilities), key=lambda s: s.rank)
        evidence = [
            Evidence(
                type=EvidenceType.SECURITY_FINDING,
                location=v.location,
                details=f"{v.cwe}: {v.description}" if v.cwe else v.description,
                severity=v.severity,
                line_number=v.line_number,
            )
            for v in vulnerabilities
        ]
        recommendations = list(dict.fromkeys(v.recommendation for v in vulnerabilities))
        return self._finding(
            id, name,
            passed=False,
            conditional=worst.rank < Severity.HIGH.rank,
            message=f"{name}: {len(vulnerabilities)} issue(s), worst {worst.value}; "
                    + "; ".join(v.description for v in vulnerabilities[:3]),
            severity=worst,
            details={
                "vulnerabilities": [
                    {"kind": v.kind, "severity": v.severity.value, "cwe": v.cwe,
                     "location": v.location}
                    for v in vulnerabilities
                ],
            },
            evidence=evidence,
            recommendations=recommendations,
        )

    def _no_sql(self, id: str, name: str) -> ValidationResult:
        return self._finding(
            id, name,
            passed=False, conditional=True,
            message=f"{name}: no SQL migrations found; not audited",
            severity=Severity.MEDIUM,
            recommendations=["Point sources.migrations_dir at the SQL migrations"],
        )

    def _fn_location(self, name: str) -> str:
        fn = self._functions.get(name)
        return f"{fn.source}:{name}" if fn else name

    # ── Token security ───────────────────────────────────────────────────────

    async def audit_token_security(self) -> list[ValidationResult]:
        if not self._sql:
            return [self._no_sql("security_token_generation", "Token generation security")]
        return [self._audit_token_generation(), self._audit_token_validation()]

    def _audit_token_generation(self) -> ValidationResult:
        vulns: list[SecurityVulnerability] = []
        location = self._fn_location("create_session_secure")
        sql = self._sql

        if re.search(r"\brandom\(\)", sql, re.IGNORECASE) and "gen_random_bytes" not in sql.lower():
            vulns.append(SecurityVulnerability(
                "weak_randomness", Severity.HIGH, location,
                "Tokens are drawn from random(), which is not cryptographically secure",
                "Draw token characters from gen_random_bytes()", "CWE-338",
            ))

        charset_match = _SECURE_CHARS.search(sql)
        length_match = _TOKEN_LENGTH_CHECK.search(sql)
        length = int(length_match.group(1)) if length_match else 12
        if charset_match is None:
            vulns.append(SecurityVulnerability(
                "undeclared_charset", Severity.MEDIUM, location,
                "Token character set is not declared",
                "Declare an explicit unambiguous secure_chars alphabet", "CWE-330",
            ))
        else:
            charset = charset_match.group(1)
            bits = token_entropy_bits(charset, length)
            if bits < MIN_TOKEN_ENTROPY_BITS:
                vulns.append(SecurityVulnerability(
                    "low_entropy", Severity.HIGH, location,
                    f"Token entropy {bits:.1f} bits is below {MIN_TOKEN_ENTROPY_BITS:.0f}",
                    "Lengthen tokens or widen the alphabet to reach 60 bits", "CWE-331",
                ))
            ambiguous = sorted(AMBIGUOUS_CHARS & set(charset.upper()))
            if ambiguous:
                vulns.append(SecurityVulnerability(
                    "ambiguous_charset", Severity.LOW, location,
                    f"Token alphabet contains ambiguous characters {''.join(ambiguous)}",
                    "Exclude 0, O, 1, I and L from the token alphabet", "CWE-330",
                ))

        if not re.search(r"WHILE\s+EXISTS|collision|max_retries", sql, re.IGNORECASE):
            vulns.append(SecurityVulnerability(
                "no_collision_retry", Severity.MEDIUM, location,
                "Token collisions are not detected before insert",
                "Retry generation WHILE EXISTS with a bounded retry count", "CWE-330",
            ))

        return self._roll_up(
            "security_token_generation", "Token generation security", vulns,
            "Tokens use a secure alphabet with sufficient entropy and collision retries",
        )

    def _audit_token_validation(self) -> ValidationResult:
        vulns: list[SecurityVulnerability] = []
        location = self._fn_location("add_attendance_secure")
        if not re.search(r"UPPER\s*\(\s*TRIM\s*\(|TRIM\s*\(\s*UPPER\s*\(", self._sql, re.IGNORECASE):
            vulns.append(SecurityVulnerability(
                "unnormalised_input", Severity.MEDIUM, location,
                "Token input is not normalised before comparison",
                "Compare UPPER(TRIM(p_token)) against stored tokens", "CWE-20",
            ))
        if _TOKEN_LENGTH_CHECK.search(self._sql) is None:
            vulns.append(SecurityVulnerability(
                "no_length_check", Severity.MEDIUM, location,
                "Token length is not validated",
                "Reject tokens whose LENGTH is not exactly 12", "CWE-20",
            ))
        if "validate_token_security" not in self._functions:
            vulns.append(SecurityVulnerability(
                "no_token_validator", Severity.LOW, location,
                "No dedicated token validation function",
                "Centralise token format checks in validate_token_security()", "CWE-20",
            ))
        return self._roll_up(
            "security_token_validation", "Token validation security", vulns,
            "Token input is normalised and length-checked before lookup",
        )

    # ── Database security ────────────────────────────────────────────────────

    async def audit_database_security(self) -> list[ValidationResult]:
        if not self._sql:
            return [self._no_sql("security_sql_injection", "SQL injection")]
        return [
            self._audit_sql_injection(),
            self._audit_row_level_security(),
            self._audit_security_definer(),
            self._audit_information_disclosure(),
        ]

    def _audit_sql_injection(self) -> ValidationResult:
        vulns: list[SecurityVulnerability] = []
        for source, text in self._sql_files.items():
            for match in _DYNAMIC_CONCAT.finditer(text):
                vulns.append(SecurityVulnerability(
                    "sql_injection", Severity.CRITICAL, source,
                    "Dynamic SQL built by string concatenation reaches EXECUTE",
                    "Use EXECUTE ... USING or format() with %L/%I placeholders", "CWE-89",
                    line_number=text.count("\n", 0, match.start()) + 1,
                ))
            for match in _FORMAT_UNQUOTED.finditer(text):
                vulns.append(SecurityVulnerability(
                    "unquoted_format", Severity.HIGH, source,
                    "EXECUTE format() interpolates with %s instead of %L/%I",
                    "Quote interpolated values with %L and identifiers with %I", "CWE-89",
                    line_number=text.count("\n", 0, match.start()) + 1,
                ))
        return self._roll_up(
            "security_sql_injection", "SQL injection", vulns,
            "No dynamic SQL built from concatenated input",
        )

    def _audit_row_level_security(self) -> ValidationResult:
        created = {m.group(1).lower() for m in _CREATE_TABLE.finditer(self._sql)}
        protected = {m.group(1).lower() for m in _ENABLE_RLS.finditer(self._sql)}
        vulns: list[SecurityVulnerability] = []
        if created:
            for table in sorted(t for t in created if t in _PROTECTED_TABLES):
                if table not in protected:
                    vulns.append(SecurityVulnerability(
                        "rls_disabled", Severity.HIGH, f"table {table}",
                        f"Row-level security is not enabled on {table}",
                        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY and add policies",
                        "CWE-284",
                    ))
        elif not protected:
            vulns.append(SecurityVulnerability(
                "rls_unverified", Severity.MEDIUM, "migrations",
                "No ENABLE ROW LEVEL SECURITY statements found in migrations",
                "Enable row-level security on attendance, events and memberships",
                "CWE-284",
            ))
        return self._roll_up(
            "security_row_level_security", "Row-level security", vulns,
            "Row-level security enabled on attendance tables",
        )

    def _audit_security_definer(self) -> ValidationResult:
        vulns: list[SecurityVulnerability] = []
        for fn in self._functions.values():
            if not fn.has("security definer"):
                continue
            if not fn.has("auth.uid()") and not fn.has("org_id"):
                vulns.append(SecurityVulnerability(
                    "privilege_escalation", Severity.HIGH, f"{fn.source}:{fn.name}",
                    f"SECURITY DEFINER function {fn.name} bypasses RLS without auth or org scoping",
                    "Scope SECURITY DEFINER functions by auth.uid() and org_id", "CWE-269",
                    line_number=fn.line,
                ))
            if not fn.has("search_path"):
                vulns.append(SecurityVulnerability(
                    "mutable_search_path", Severity.LOW, f"{fn.source}:{fn.name}",
                    f"SECURITY DEFINER function {fn.name} does not pin search_path",
                    "Add SET search_path = public", "CWE-426",
                    line_number=fn.line,
                ))
        return self._roll_up(
            "security_definer_scoping", "SECURITY DEFINER scoping", vulns,
            "SECURITY DEFINER functions are scoped by caller and organization",
        )

    def _audit_information_disclosure(self) -> ValidationResult:
        vulns = [
            SecurityVulnerability(
                "error_disclosure", Severity.MEDIUM, source,
                "Database error text (SQLERRM) is returned to clients",
                "Return stable error codes and log SQLERRM server-side", "CWE-209",
                line_number=text.count("\n", 0, match.start()) + 1,
            )
            for source, text in self._sql_files.items()
            for match in _SQLERRM.finditer(text)
        ]
        return self._roll_up(
            "security_information_disclosure", "Information disclosure", vulns,
            "Error responses do not leak database internals",
        )

    # ── BLE payload ──────────────────────────────────────────────────────────

    async def audit_ble_payload_security(self) -> list[ValidationResult]:
        vulns: list[SecurityVulnerability] = []
        bridge_text = "\n".join(f.text for f in self._bridge)
        if not (_MINOR_HASH.search(self._sql) or _MINOR_HASH.search(bridge_text)):
            vulns.append(SecurityVulnerability(
                "raw_token_broadcast", Severity.MEDIUM, "beacon payload",
                "Session tokens are not hashed into the 16-bit minor before broadcast",
                "Broadcast hash(token) % 65536 instead of raw token material", "CWE-200",
            ))
        if self._sql and not (
            re.search(r"expires_at|ends_at", self._sql, re.IGNORECASE)
            and re.search(r"NOW\s*\(\)|CURRENT_TIMESTAMP", self._sql, re.IGNORECASE)
        ):
            vulns.append(SecurityVulnerability(
                "no_session_expiry", Severity.HIGH, self._fn_location("resolve_session"),
                "Broadcast sessions never expire, so a captured payload stays valid",
                "Store expires_at and compare it with NOW() on every resolve", "CWE-613",
            ))
        if self._sql and not re.search(r"ttl|INTERVAL\s+'", self._sql, re.IGNORECASE):
            vulns.append(SecurityVulnerability(
                "unbounded_ttl", Severity.LOW, self._fn_location("create_session_secure"),
                "Session lifetime is not bounded by a TTL parameter",
                "Accept a TTL and cap it server-side", "CWE-613",
            ))
        return [self._roll_up(
            "security_ble_payload", "BLE payload security", vulns,
            "Beacon payload carries a hashed, expiring session reference",
        )]

    # ── Organization isolation ───────────────────────────────────────────────

    async def audit_organization_isolation(self) -> list[ValidationResult]:
        if not self._sql:
            return [self._no_sql("security_org_isolation", "Organization isolation")]
        vulns: list[SecurityVulnerability] = []
        if "org_id" not in self._sql.lower():
            vulns.append(SecurityVulnerability(
                "no_org_scoping", Severity.CRITICAL, "migrations",
                "No query is scoped by org_id; organizations can read each other's sessions",
                "Filter every session and attendance query by org_id", "CWE-639",
            ))
        else:
            queries = len(_FROM_TABLE.findall(self._sql))
            filtered = len(_ORG_FILTER.findall(self._sql))
            if queries and filtered / queries < 0.5:
                vulns.append(SecurityVulnerability(
                    "partial_org_scoping", Severity.MEDIUM, "migrations",
                    f"Only {filtered} of {queries} queries filter by org_id",
                    "Audit unfiltered queries for cross-organization reads", "CWE-639",
                ))

        resolve = self._functions.get("resolve_session")
        if resolve is not None and not resolve.has("org_id"):
            vulns.append(SecurityVulnerability(
                "cross_org_resolve", Severity.CRITICAL, f"{resolve.source}:resolve_session",
                "resolve_session matches beacons without the organization",
                "Join on the organization code when resolving a beacon", "CWE-639",
                line_number=resolve.line,
            ))
        if not (re.search(r"memberships", self._sql, re.IGNORECASE)
                and re.search(r"is_active", self._sql, re.IGNORECASE)):
            vulns.append(SecurityVulnerability(
                "no_membership_check", Severity.HIGH, self._fn_location("add_attendance_secure"),
                "Check-in does not verify an active membership",
                "Require memberships.is_active = true for the session's org_id", "CWE-285",
            ))
        return [self._roll_up(
            "security_org_isolation", "Organization isolation", vulns,
            "Sessions and attendance are isolated per organization",
        )]

    # ── Secrets ──────────────────────────────────────────────────────────────

    async def audit_hardcoded_secrets(self) -> list[ValidationResult]:
        vulns: list[SecurityVulnerability] = []
        sources = dict(self._config_files)
        sources.update({f.relative: f.text for f in self._bridge})
        for location, text in sources.items():
            seen: set[str] = set()
            for match in _JWT.finditer(text):
                token = match.group(0)
                if token in seen:
                    continue
                seen.add(token)
                role = str(decode_jwt_claims(token).get("role", "unknown"))
                line = text.count("\n", 0, match.start()) + 1
                if role == "service_role":
                    vulns.append(SecurityVulnerability(
                        "service_key_exposed", Severity.CRITICAL, location,
                        "Service-role key is embedded in client configuration",
                        "Revoke the service-role key and keep it server-side only", "CWE-798",
                        line_number=line,
                    ))
                else:
                    vulns.append(SecurityVulnerability(
                        "hardcoded_jwt", Severity.MEDIUM, location,
                        f"JWT with role '{role}' is hardcoded in source",
                        "Load API keys from environment variables at build time", "CWE-798",
                        line_number=line,
                    ))
            for match in _SECRET_LITERAL.finditer(text):
                vulns.append(SecurityVulnerability(
                    "hardcoded_secret", Severity.HIGH, location,
                    f"Secret-looking literal assigned to {match.group(1)}",
                    "Move secrets out of the app bundle into server-side configuration",
                    "CWE-798",
                    line_number=text.count("\n", 0, match.start()) + 1,
                ))
        return [self._roll_up(
            "security_hardcoded_secrets", "Hardcoded secrets", vulns,
            "No credentials embedded in app configuration or bridge sources",
        )]
