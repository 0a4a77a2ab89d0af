"""
BLE Validation — Database Simulation Engine

Validates the attendance data layer without a live database:

  1. validate_database_functions      PL/pgSQL functions from the migrations
  2. validate_schema                  tables, keys, indexes and RLS from the DDL
  3. simulate_end_to_end_flows        scripted officer/member flows
  4. run_concurrent_operations        load at each configured user count
  5. run_concurrent_session_creation  officers opening sessions at once
  6. validate_data_integrity          invariants over the post-load state
"""

from __future__ import annotations

from typing import Any

import structlog

from blevalidation.config import ConcurrencyConfig, SourcePathsConfig
from blevalidation.systems.validation.database.backend import IntegrityReport
from blevalidation.systems.validation.database.concurrency import (
    LoadSimulation,
    SessionCreationSimulation,
    SimulationMetrics,
)
from blevalidation.systems.validation.database.flows import run_flows
from blevalidation.systems.validation.database.functions import (
    CORE_FUNCTIONS,
    HELPER_FUNCTIONS,
    SqlFunction,
    extract_functions,
    missing_function_result,
    validate_function,
)
from blevalidation.systems.validation.database.schema import (
    SchemaModel,
    parse_schema,
    run_schema_checks,
)
from blevalidation.systems.validation.engine import BaseAnalysisEngine
from blevalidation.systems.validation.errors import EngineInitError
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
)

logger = structlog.get_logger()


class DatabaseSimulationEngine(BaseAnalysisEngine):
    engine_name = "DatabaseSimulationEngine"
    version = "1.0.0"
    phase_id = "database_simulation"
    phase_name = "Database Simulation"
    category = ValidationCategory.DATABASE
    total_steps = 6

    def __init__(
        self,
        sources: SourcePathsConfig,
        concurrency: ConcurrencyConfig | None = None,
        max_concurrent_users: int = 150,
    ) -> None:
        super().__init__()
        self._sources = sources
        self._concurrency = concurrency or ConcurrencyConfig()
        self._max_users = max_concurrent_users
        self._functions: dict[str, SqlFunction] = {}
        self._schema = SchemaModel()
        self._runs: list[tuple[int, LoadSimulation, SimulationMetrics]] = []
        self._metrics: list[SimulationMetrics] = []
        self._log = logger.bind(system="validation.database")

    @property
    def metrics(self) -> list[SimulationMetrics]:
        """Metrics of the latest cycle's concurrency runs. Kept across cleanup()."""
        return list(self._metrics)

    def _reset_state(self) -> None:
        self._functions = {}
        self._schema = SchemaModel()
        self._runs = []
        self._metrics = []

    async def _teardown(self) -> None:
        # Drop the simulated backends but keep the metrics
        self._functions = {}
        self._schema = SchemaModel()
        self._runs = []

    async def _setup(self) -> None:
        migrations = self._sources.resolve(self._sources.migrations_dir)
        if not migrations.is_dir():
            raise EngineInitError(
                self.engine_name, f"migrations directory {migrations} does not exist",
            )
        self._functions = extract_functions(migrations)
        self._schema = parse_schema(migrations)
        self._log.info(
            "migrations_parsed",
            functions=len(self._functions),
            tables=len(self._schema.tables),
            policies=len(self._schema.policies),
        )

    def _user_steps(self) -> list[int]:
        steps = {s for s in self._concurrency.user_steps if 0 < s <= self._max_users}
        steps.add(self._max_users)
        steps.update(s for s in self._concurrency.stress_user_steps if s > self._max_users)
        return sorted(steps)

    async def _run(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []

        self._progress.update("Validating database functions")
        results.extend(await self.validate_database_functions())
        self._progress.update("Database functions validated", completed=True)

        self._progress.update("Validating schema")
        results.extend(await self.validate_schema())
        self._progress.update("Schema validated", completed=True)

        self._progress.update("Simulating end-to-end flows")
        results.extend(await self.simulate_end_to_end_flows())
        self._progress.update("End-to-end flows simulated", completed=True)

        for users in self._user_steps():
            self._progress.update(f"Running concurrent operations with {users} users")
            results.extend(await self.run_concurrent_operations(users))
        self._progress.update("Concurrent operations complete", completed=True)

        officers = self._concurrency.session_officers
        self._progress.update(f"Opening {officers} sessions concurrently")
        if officers > 0:
            results.extend(await self.run_concurrent_session_creation(officers))
        self._progress.update("Concurrent session creation complete", completed=True)

        self._progress.update("Validating data integrity")
        results.extend(await self.validate_data_integrity())
        self._progress.update("Data integrity validated", completed=True)
        return results

    # ── Steps ────────────────────────────────────────────────────────────────

    async def validate_database_functions(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for name in CORE_FUNCTIONS:
            fn = self._functions.get(name)
            if fn is None:
                self._progress.warn(f"Function {name} not found")
                results.append(missing_function_result(name, core=True))
            else:
                results.extend(validate_function(fn))
        for name in HELPER_FUNCTIONS:
            if name not in self._functions:
                results.append(missing_function_result(name, core=False))
        self._log.info(
            "database_functions_validated",
            functions=len(self._functions),
            findings=len(results),
            issues=sum(1 for r in results if r.is_issue),
        )
        return results

    async def validate_schema(self) -> list[ValidationResult]:
        results = run_schema_checks(self._schema)
        issues = [r for r in results if r.is_issue]
        for result in issues:
            if result.severity in (Severity.CRITICAL, Severity.HIGH):
                self._progress.warn(result.message)
        self._log.info(
            "schema_validated",
            tables=sorted(self._schema.tables),
            rls_tables=sorted(self._schema.rls_enabled),
            findings=len(results),
            issues=len(issues),
        )
        return results

    async def simulate_end_to_end_flows(self) -> list[ValidationResult]:
        return await run_flows(self._concurrency.seed)

    async def run_concurrent_operations(self, user_count: int) -> list[ValidationResult]:
        """
        Simulate ``user_count`` members checking into one session at once
        and grade the run against the configured success-rate and p95 bounds.
        """
        cfg = self._concurrency
        seed = None if cfg.seed is None else cfg.seed + user_count
        simulation = LoadSimulation(cfg, user_count, seed)
        metrics = await simulation.run()
        self._runs.append((user_count, simulation, metrics))
        self._metrics.append(metrics)

        details: dict[str, Any] = {
            "user_count": user_count,
            "target_users": self._max_users,
            "metrics": metrics.model_dump(),
        }
        evidence = [Evidence(
            type=EvidenceType.PERFORMANCE_METRIC,
            location=f"concurrency:{user_count}",
            details=(
                f"success_rate={metrics.success_rate:.2%} "
                f"p95={metrics.p95_response_ms:.0f}ms "
                f"throughput={metrics.throughput_per_second:.1f}/s"
            ),
        )]
        finding_id = f"concurrency_{user_count}_users"
        name = f"Concurrent check-in with {user_count} users"

        if metrics.success_rate < cfg.min_success_rate:
            result = self._finding(
                finding_id, name, passed=False,
                message=(
                    f"Success rate {metrics.success_rate:.1%} below "
                    f"{cfg.min_success_rate:.0%} at {user_count} concurrent users"
                ),
                severity=Severity.CRITICAL,
                category=ValidationCategory.PERFORMANCE,
                details={**details, "offending_metric": "success_rate"},
                evidence=evidence,
                recommendations=[
                    "Increase the connection pool or add request queueing with retries",
                    "Spread check-in arrivals with client-side jitter",
                ],
            )
        elif metrics.p95_response_ms > cfg.p95_latency_bound_ms:
            result = self._finding(
                finding_id, name, passed=False,
                message=(
                    f"p95 latency {metrics.p95_response_ms:.0f}ms exceeds "
                    f"{cfg.p95_latency_bound_ms:.0f}ms at {user_count} concurrent users"
                ),
                severity=Severity.HIGH,
                category=ValidationCategory.PERFORMANCE,
                details={**details, "offending_metric": "p95_response_ms"},
                evidence=evidence,
                recommendations=["Reduce per-check-in round trips or add database capacity"],
            )
        elif (
            metrics.success_rate < cfg.conditional_success_rate
            or metrics.p95_response_ms > cfg.conditional_p95_latency_ms
        ):
            result = self._finding(
                finding_id, name, passed=False, conditional=True,
                message=(
                    f"Degraded at {user_count} users: success {metrics.success_rate:.1%}, "
                    f"p95 {metrics.p95_response_ms:.0f}ms"
                ),
                severity=Severity.MEDIUM,
                category=ValidationCategory.PERFORMANCE,
                details=details,
                evidence=evidence,
                recommendations=["Monitor check-in latency closely at this load"],
            )
        else:
            result = self._finding(
                finding_id, name, passed=True,
                message=(
                    f"{user_count} users: success {metrics.success_rate:.1%}, "
                    f"p95 {metrics.p95_response_ms:.0f}ms"
                ),
                category=ValidationCategory.PERFORMANCE,
                details=details,
                evidence=evidence,
            )

        self._log.info(
            "concurrency_step_complete",
            users=user_count,
            status=result.status.value,
            success_rate=round(metrics.success_rate, 4),
            p95_ms=metrics.p95_response_ms,
        )
        return [result]

    async def run_concurrent_session_creation(self, officer_count: int) -> list[ValidationResult]:
        """
        Let ``officer_count`` officers open sessions at the same moment and
        check that each one is still uniquely resolvable from its beacon.
        """
        cfg = self._concurrency
        seed = None if cfg.seed is None else cfg.seed - officer_count
        metrics = await SessionCreationSimulation(cfg, officer_count, seed).run()

        details: dict[str, Any] = {"officer_count": officer_count, "metrics": metrics.model_dump()}
        evidence = [Evidence(
            type=EvidenceType.TEST_RESULT,
            location=f"session_creation:{officer_count}",
            details=(
                f"created={metrics.sessions_created}/{officer_count} "
                f"minor_collisions={metrics.minor_collisions} "
                f"unresolvable={metrics.unresolvable_sessions}"
            ),
        )]
        finding_id = f"session_creation_{officer_count}_officers"
        name = f"Concurrent session creation by {officer_count} officers"

        if metrics.duplicate_tokens:
            result = self._finding(
                finding_id, name, passed=False,
                message=f"{metrics.duplicate_tokens} session tokens issued twice under concurrent creation",
                severity=Severity.CRITICAL,
                details={**details, "offending_metric": "duplicate_tokens"},
                evidence=evidence,
                recommendations=["Back session tokens with a unique constraint and retry on conflict"],
            )
        elif metrics.success_rate < cfg.min_success_rate:
            result = self._finding(
                finding_id, name, passed=False,
                message=(
                    f"Only {metrics.success_rate:.1%} of sessions created with "
                    f"{officer_count} officers at once"
                ),
                severity=Severity.CRITICAL,
                category=ValidationCategory.PERFORMANCE,
                details={**details, "offending_metric": "success_rate"},
                evidence=evidence,
                recommendations=["Increase the connection pool or retry session creation"],
            )
        elif metrics.unresolvable_sessions:
            result = self._finding(
                finding_id, name, passed=False,
                message=(
                    f"{metrics.unresolvable_sessions} sessions cannot be resolved from their beacon: "
                    f"{metrics.minor_collisions} minor collisions within an organization"
                ),
                severity=Severity.HIGH,
                details={**details, "offending_metric": "unresolvable_sessions"},
                evidence=evidence,
                recommendations=[
                    "Reject a generated token whose minor is already active in the organization",
                ],
            )
        elif metrics.collision_probability > cfg.minor_collision_tolerance:
            result = self._finding(
                finding_id, name, passed=False, conditional=True,
                message=(
                    f"{metrics.max_sessions_per_org} concurrent sessions in one organization "
                    f"collide on the 16-bit minor with probability {metrics.collision_probability:.2%}"
                ),
                severity=Severity.MEDIUM,
                details=details,
                evidence=evidence,
                recommendations=[
                    "Reject a generated token whose minor is already active in the organization",
                ],
            )
        else:
            result = self._finding(
                finding_id, name, passed=True,
                message=(
                    f"{metrics.sessions_created} sessions created concurrently, "
                    "each resolvable from its beacon"
                ),
                details=details,
                evidence=evidence,
            )

        self._log.info(
            "session_creation_complete",
            officers=officer_count,
            status=result.status.value,
            minor_collisions=metrics.minor_collisions,
            unresolvable=metrics.unresolvable_sessions,
        )
        return [result]

    async def validate_data_integrity(self) -> list[ValidationResult]:
        if not self._runs:
            return [self._finding(
                "integrity_no_data", "Data integrity",
                passed=False, conditional=True,
                message="No concurrency runs to check; data integrity not verified",
                severity=Severity.LOW,
            )]

        results: list[ValidationResult] = []
        checks = (
            ("referential", "Referential integrity", Severity.CRITICAL),
            ("uniqueness", "Unique check-in per member per event", Severity.CRITICAL),
            ("membership", "Attendance only by active members", Severity.CRITICAL),
            ("session_window", "Check-ins inside session window", Severity.HIGH),
            ("monotonic", "Monotonic commit order", Severity.HIGH),
        )
        reports: list[tuple[int, IntegrityReport]] = [
            (users, sim.backend.integrity_report()) for users, sim, _ in self._runs
        ]
        for key, name, severity in checks:
            violations = [
                f"{users} users: {v}"
                for users, report in reports
                for v in getattr(report, key)
            ]
            results.append(self._finding(
                f"integrity_{key}", name,
                passed=not violations,
                message=(
                    f"{name}: held across {len(reports)} concurrency runs"
                    if not violations
                    else f"{name}: {len(violations)} violations under contention"
                ),
                severity=severity,
                details={"violations": violations[:20], "runs": len(reports)},
                evidence=[
                    Evidence(
                        type=EvidenceType.TEST_RESULT,
                        location="simulated_backend",
                        details=v,
                        severity=severity,
                    )
                    for v in violations[:5]
                ],
                recommendations=[f"Enforce '{name.lower()}' with a database constraint"],
            ))

        lost = sum(m.lost_updates for _, _, m in self._runs)
        races = sum(m.race_conflicts for _, _, m in self._runs)
        results.append(self._finding(
            "integrity_lost_updates", "No lost updates",
            passed=lost == 0,
            message=(
                f"Every recorded check-in persisted; {races} races resolved by the unique constraint"
                if lost == 0
                else f"{lost} recorded check-ins missing from attendance"
            ),
            severity=Severity.CRITICAL,
            details={"lost_updates": lost, "race_conflicts": races},
            recommendations=["Commit attendance inserts atomically with the duplicate check"],
        ))
        return results
