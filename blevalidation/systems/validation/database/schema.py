"""
Migration-driven checks of the attendance schema.

The migrations directory is replayed into a SchemaModel in file order, so a
later ALTER TABLE or DROP POLICY amends what an earlier file created. Bodies
of functions and DO blocks are skipped; only top-level DDL counts. The model
is then held against what BLE attendance depends on:

  - the five core tables and the columns the data functions read
  - foreign keys from events, memberships and attendance to their parents
  - indexes behind the per-event and per-member attendance lookups
  - one unique (event_id, member_id) key on attendance
  - row-level security with policies for every operation, none of them open
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

REQUIRED_TABLES: dict[str, tuple[str, ...]] = {
    "organizations": ("id", "slug"),
    "profiles": ("id",),
    "memberships": ("user_id", "org_id", "role", "is_active"),
    "events": ("id", "org_id", "starts_at", "ends_at"),
    "attendance": ("event_id", "member_id", "org_id"),
}

# (table, column, acceptable parents); auth.users counts as "users"
REQUIRED_FOREIGN_KEYS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("memberships", "org_id", ("organizations",)),
    ("memberships", "user_id", ("profiles", "users")),
    ("events", "org_id", ("organizations",)),
    ("attendance", "event_id", ("events",)),
    ("attendance", "member_id", ("profiles", "users")),
    ("attendance", "org_id", ("organizations",)),
)

REQUIRED_INDEXES: tuple[tuple[str, tuple[str, ...], Severity], ...] = (
    ("attendance", ("event_id",), Severity.HIGH),
    ("attendance", ("member_id",), Severity.HIGH),
    ("memberships", ("user_id", "org_id"), Severity.MEDIUM),
    ("events", ("org_id",), Severity.MEDIUM),
)

POLICY_COMMANDS: tuple[str, ...] = ("SELECT", "INSERT", "UPDATE", "DELETE")

# Roles that legitimately see every row
_PRIVILEGED_ROLES = frozenset({"service_role", "postgres", "supabase_admin"})


@dataclass
class Table:
    name: str
    source: str
    line: int
    columns: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class ForeignKey:
    table: str
    columns: tuple[str, ...]
    references: str


@dataclass(frozen=True)
class Index:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class Policy:
    name: str
    table: str
    command: str
    roles: tuple[str, ...]
    condition: str
    source: str
    line: int

    @property
    def open(self) -> bool:
        """USING/WITH CHECK is a bare ``true`` for a non-privileged role."""
        if self.roles and all(r in _PRIVILEGED_ROLES for r in self.roles):
            return False
        clauses = re.split(r"\bWITH\s+CHECK\b", self.condition, flags=re.IGNORECASE)
        return all(re.fullmatch(r"[\s()]*true[\s()]*", c, re.IGNORECASE) for c in clauses)


@dataclass
class SchemaModel:
    tables: dict[str, Table] = field(default_factory=dict)
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    indexes: dict[str, Index] = field(default_factory=dict)
    rls_enabled: set[str] = field(default_factory=set)
    policies: dict[tuple[str, str], Policy] = field(default_factory=dict)

    def references(self, table: str, column: str, parents: tuple[str, ...]) -> bool:
        return any(
            fk.table == table and column in fk.columns and fk.references in parents
            for fk in self.foreign_keys
        )

    def indexed(self, table: str, columns: tuple[str, ...]) -> bool:
        wanted = set(columns)
        return any(i.table == table and wanted <= set(i.columns) for i in self.indexes.values())

    def unique_on(self, table: str, columns: tuple[str, ...]) -> bool:
        return any(
            i.table == table and i.unique and set(i.columns) == set(columns)
            for i in self.indexes.values()
        )

    def policies_for(self, table: str) -> list[Policy]:
        return [p for (t, _), p in sorted(self.policies.items()) if t == table]


# ── Parsing ──────────────────────────────────────────────────────────────────


def _ident(group: str) -> str:
    return rf'(?:"?\w+"?\.)?"?(?P<{group}>\w+)"?'


_FLAGS = re.IGNORECASE | re.DOTALL

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_DOLLAR_QUOTED = re.compile(r"\$(\w*)\$.*?\$\1\$", re.DOTALL)

_CREATE_TABLE = re.compile(
    rf"CREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{_ident('table')}\s*\((?P<body>.*)\)",
    _FLAGS,
)
_ALTER_TABLE = re.compile(
    rf"ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?{_ident('table')}\s+(?P<actions>.*)", _FLAGS,
)
_CREATE_INDEX = re.compile(
    rf"CREATE\s+(?P<unique>UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
    rf"(?:{_ident('name')}\s+)?ON\s+(?:ONLY\s+)?{_ident('table')}\s*(?:USING\s+\w+\s*)?\((?P<cols>.*?)\)",
    _FLAGS,
)
_DROP_INDEX = re.compile(
    rf"DROP\s+INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+EXISTS\s+)?{_ident('name')}", _FLAGS,
)
_CREATE_POLICY = re.compile(
    rf'CREATE\s+POLICY\s+(?P<name>"[^"]+"|\w+)\s+ON\s+{_ident("table")}(?P<rest>.*)', _FLAGS,
)
_DROP_POLICY = re.compile(
    rf'DROP\s+POLICY\s+(?:IF\s+EXISTS\s+)?(?P<name>"[^"]+"|\w+)\s+ON\s+{_ident("table")}', _FLAGS,
)
_REFERENCES = re.compile(rf"\bREFERENCES\s+{_ident('parent')}", _FLAGS)
_POLICY_COMMAND = re.compile(r"\bFOR\s+(ALL|SELECT|INSERT|UPDATE|DELETE)\b", re.IGNORECASE)
_POLICY_ROLES = re.compile(r"\bTO\s+(.+?)(?=\s+(?:USING|WITH\s+CHECK)\b|\s*$)", _FLAGS)
_POLICY_CONDITION = re.compile(r"\b(?:USING|WITH\s+CHECK)\b(?P<cond>.*)", _FLAGS)
_PAREN_COLUMNS = re.compile(r"\((?P<cols>[^)]*)\)")

_CONSTRAINT_WORDS = ("CONSTRAINT", "PRIMARY", "FOREIGN", "UNIQUE", "CHECK", "EXCLUDE", "LIKE")


def _blank(match: re.Match[str]) -> str:
    # Keep line numbers stable for evidence
    return "\n" * match.group(0).count("\n")


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _column_list(text: str) -> tuple[str, ...]:
    columns = []
    for part in _split_top_level(text):
        word = re.search(r"\w+", part)
        if word:
            columns.append(word.group(0).lower())
    return tuple(columns)


class _SchemaReplay:
    def __init__(self) -> None:
        self.model = SchemaModel()

    def apply(self, statement: str, source: str, line: int) -> None:
        if match := _CREATE_TABLE.match(statement):
            self._create_table(match.group("table").lower(), match.group("body"), source, line)
        elif match := _ALTER_TABLE.match(statement):
            table = match.group("table").lower()
            for action in _split_top_level(match.group("actions")):
                self._alter(table, action)
        elif match := _CREATE_INDEX.match(statement):
            table = match.group("table").lower()
            columns = _column_list(match.group("cols"))
            name = (match.group("name") or f"{table}_{'_'.join(columns)}_idx").lower()
            self.model.indexes[name] = Index(name, table, columns, unique=bool(match.group("unique")))
        elif match := _DROP_INDEX.match(statement):
            self.model.indexes.pop(match.group("name").lower(), None)
        elif match := _CREATE_POLICY.match(statement):
            self._create_policy(match, source, line)
        elif match := _DROP_POLICY.match(statement):
            key = (match.group("table").lower(), match.group("name").strip('"'))
            self.model.policies.pop(key, None)

    def _create_table(self, name: str, body: str, source: str, line: int) -> None:
        table = self.model.tables.setdefault(name, Table(name=name, source=source, line=line))
        for item in _split_top_level(body):
            if not item:
                continue
            if item.split(None, 1)[0].upper() in _CONSTRAINT_WORDS:
                self._constraint(name, item)
            else:
                self._column(table, item)

    def _column(self, table: Table, definition: str) -> None:
        column = definition.split(None, 1)[0].strip('"').lower()
        table.columns.add(column)
        if ref := _REFERENCES.search(definition):
            self.model.foreign_keys.append(ForeignKey(table.name, (column,), ref.group("parent").lower()))
        if re.search(r"\bPRIMARY\s+KEY\b|\bUNIQUE\b", definition, re.IGNORECASE):
            name = f"{table.name}_{column}_key"
            self.model.indexes[name] = Index(name, table.name, (column,), unique=True)

    def _constraint(self, table: str, definition: str) -> None:
        name = None
        if m := re.match(r"CONSTRAINT\s+\"?(\w+)\"?\s+(.*)", definition, _FLAGS):
            name, definition = m.group(1).lower(), m.group(2)
        keyword = definition.split(None, 1)[0].upper()
        columns_match = _PAREN_COLUMNS.search(definition)
        columns = _column_list(columns_match.group("cols")) if columns_match else ()
        if keyword == "FOREIGN":
            if ref := _REFERENCES.search(definition):
                self.model.foreign_keys.append(ForeignKey(table, columns, ref.group("parent").lower()))
        elif keyword in ("PRIMARY", "UNIQUE") and columns:
            name = name or f"{table}_{'_'.join(columns)}_key"
            self.model.indexes[name] = Index(name, table, columns, unique=True)

    def _alter(self, table_name: str, action: str) -> None:
        upper = " ".join(action.upper().split())
        if upper.startswith("ENABLE ROW LEVEL SECURITY"):
            self.model.rls_enabled.add(table_name)
        elif upper.startswith("DISABLE ROW LEVEL SECURITY"):
            self.model.rls_enabled.discard(table_name)
        elif upper.startswith("DROP COLUMN"):
            m = re.match(r"DROP\s+COLUMN\s+(?:IF\s+EXISTS\s+)?\"?(\w+)\"?", action, _FLAGS)
            table = self.model.tables.get(table_name)
            if m and table is not None:
                table.columns.discard(m.group(1).lower())
        elif upper.startswith("ADD "):
            rest = action.split(None, 1)[1]
            if rest.split(None, 1)[0].upper() in _CONSTRAINT_WORDS:
                self._constraint(table_name, rest)
                return
            rest = re.sub(r"^COLUMN\s+(?:IF\s+NOT\s+EXISTS\s+)?", "", rest, flags=re.IGNORECASE)
            table = self.model.tables.get(table_name)
            if table is not None:
                self._column(table, rest)

    def _create_policy(self, match: re.Match[str], source: str, line: int) -> None:
        table = match.group("table").lower()
        name = match.group("name").strip('"')
        rest = match.group("rest")
        command = _POLICY_COMMAND.search(rest)
        roles = _POLICY_ROLES.search(rest)
        condition = _POLICY_CONDITION.search(rest)
        self.model.policies[(table, name)] = Policy(
            name=name,
            table=table,
            command=command.group(1).upper() if command else "ALL",
            roles=tuple(
                r.strip().strip('"').lower() for r in roles.group(1).split(",")
            ) if roles else (),
            condition=condition.group("cond").strip() if condition else "",
            source=source,
            line=line,
        )


def parse_schema(migrations_dir: Path) -> SchemaModel:
    replay = _SchemaReplay()
    if not migrations_dir.is_dir():
        return replay.model
    for path in sorted(migrations_dir.rglob("*.sql")):
        text = path.read_text(encoding="utf-8", errors="replace")
        for pattern in (_BLOCK_COMMENT, _LINE_COMMENT, _DOLLAR_QUOTED):
            text = pattern.sub(_blank, text)
        source = str(path.relative_to(migrations_dir))
        offset = 0
        for raw in text.split(";"):
            statement = raw.strip()
            if statement:
                line = text.count("\n", 0, offset + raw.index(statement[0])) + 1
                replay.apply(statement, source, line)
            offset += len(raw) + 1
    return replay.model


# ── Checks ───────────────────────────────────────────────────────────────────


def _result(
    id: str,
    name: str,
    problems: list[str],
    severity: Severity,
    ok_message: str,
    recommendation: str,
    *,
    category: ValidationCategory = ValidationCategory.DATABASE,
    conditional: bool = False,
    evidence: list[Evidence] | None = None,
) -> ValidationResult:
    if not problems:
        return ValidationResult(
            id=id, name=name, status=ValidationStatus.PASS, severity=Severity.INFO,
            category=category, message=ok_message, details={"problems": []},
        )
    return ValidationResult(
        id=id,
        name=name,
        status=ValidationStatus.CONDITIONAL if conditional else ValidationStatus.FAIL,
        severity=severity,
        category=category,
        message=f"{name}: {'; '.join(problems)}",
        details={"problems": problems},
        evidence=evidence or [],
        recommendations=[recommendation],
    )


def check_tables(schema: SchemaModel) -> list[ValidationResult]:
    results: list[ValidationResult] = []
    for name, columns in REQUIRED_TABLES.items():
        table = schema.tables.get(name)
        if table is None:
            results.append(_result(
                f"schema_table_{name}", f"Table {name}",
                ["not created by any migration"], Severity.CRITICAL, "",
                f"Add a migration creating the {name} table",
            ))
            continue
        missing = [c for c in columns if c not in table.columns]
        results.append(_result(
            f"schema_table_{name}", f"Table {name}",
            [f"missing column {c}" for c in missing], Severity.HIGH,
            f"Table {name} defines {', '.join(columns)}",
            f"Add {', '.join(missing)} to {name}",
            evidence=[Evidence(
                type=EvidenceType.CODE_REFERENCE,
                location=table.source,
                details=f"CREATE TABLE {name}",
                severity=Severity.HIGH,
                line_number=table.line,
            )],
        ))
    return results


def check_foreign_keys(schema: SchemaModel) -> ValidationResult:
    missing = [
        f"{table}.{column} -> {'/'.join(parents)}"
        for table, column, parents in REQUIRED_FOREIGN_KEYS
        if table in schema.tables and not schema.references(table, column, parents)
    ]
    return _result(
        "schema_foreign_keys", "Foreign key constraints",
        [f"no foreign key {m}" for m in missing], Severity.HIGH,
        "Events, memberships and attendance reference their parent rows",
        "Declare REFERENCES ... ON DELETE CASCADE for every parent relation",
    )


def check_indexes(schema: SchemaModel) -> ValidationResult:
    missing = [
        (table, columns, severity)
        for table, columns, severity in REQUIRED_INDEXES
        if table in schema.tables and not schema.indexed(table, columns)
    ]
    worst = Severity.HIGH if any(s == Severity.HIGH for _, _, s in missing) else Severity.MEDIUM
    return _result(
        "schema_performance_indexes", "Performance indexes",
        [f"no index on {table}({', '.join(columns)})" for table, columns, _ in missing],
        worst,
        "Attendance, membership and event lookups are indexed",
        "CREATE INDEX on the attendance, membership and event lookup columns",
        category=ValidationCategory.PERFORMANCE,
        conditional=worst != Severity.HIGH,
    )


def check_attendance_unique(schema: SchemaModel) -> ValidationResult:
    problems = []
    if "attendance" in schema.tables and not schema.unique_on("attendance", ("event_id", "member_id")):
        problems.append("no unique key on (event_id, member_id)")
    return _result(
        "schema_attendance_unique", "Unique attendance per member and event",
        problems, Severity.HIGH,
        "Attendance is unique per (event_id, member_id)",
        "ALTER TABLE attendance ADD CONSTRAINT ... UNIQUE (event_id, member_id)",
    )


def check_rls(schema: SchemaModel) -> list[ValidationResult]:
    present = [t for t in REQUIRED_TABLES if t in schema.tables]
    unprotected = [t for t in present if t not in schema.rls_enabled]

    uncovered: list[str] = []
    for table in present:
        if table in unprotected:
            continue
        commands = {p.command for p in schema.policies_for(table)}
        missing = [] if "ALL" in commands else [c for c in POLICY_COMMANDS if c not in commands]
        if missing:
            uncovered.append(f"{table} has no policy for {', '.join(missing)}")

    open_policies = [p for t in present for p in schema.policies_for(t) if p.open]

    return [
        _result(
            "schema_rls_enabled", "Row-level security enabled",
            [f"RLS not enabled on {t}" for t in unprotected], Severity.CRITICAL,
            "RLS is enabled on every core table",
            "ALTER TABLE ... ENABLE ROW LEVEL SECURITY on every core table",
            category=ValidationCategory.SECURITY,
        ),
        _result(
            "schema_rls_policy_coverage", "RLS policy completeness",
            uncovered, Severity.MEDIUM,
            "Every RLS-protected core table has policies for all operations",
            "Add explicit policies, even deny-by-default ones, for each operation",
            category=ValidationCategory.SECURITY,
            conditional=True,
        ),
        _result(
            "schema_rls_open_policies", "Organization-scoped policies",
            [f"policy {p.name!r} on {p.table} allows every row ({p.command})" for p in open_policies],
            Severity.HIGH,
            "No policy grants unrestricted row access outside the service role",
            "Scope policies by auth.uid() and organization membership",
            category=ValidationCategory.SECURITY,
            evidence=[
                Evidence(
                    type=EvidenceType.SECURITY_FINDING,
                    location=p.source,
                    details=f"CREATE POLICY {p.name} ON {p.table} USING (true)",
                    severity=Severity.HIGH,
                    line_number=p.line,
                )
                for p in open_policies[:5]
            ],
        ),
    ]


def run_schema_checks(schema: SchemaModel) -> list[ValidationResult]:
    results = check_tables(schema)
    results.append(check_foreign_keys(schema))
    results.append(check_indexes(schema))
    results.append(check_attendance_unique(schema))
    results.extend(check_rls(schema))
    return results
