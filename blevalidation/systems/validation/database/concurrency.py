"""
Concurrent load simulations against the simulated backend.

LoadSimulation: every check-in is an independent task that arrives at a
jittered virtual time, resolves the broadcast session and checks in. A
configurable share of members double-submit shortly after their first
attempt, so two tasks for the same member race on the attendance
constraint.

SessionCreationSimulation: officers spread over several organizations open
sessions at once; afterwards every session must still resolve from its own
(major, minor) pair. Tokens are 12 characters but the beacon minor is only
16 bits, so sessions active in the same organization can collide.

Each run shares one SimulatedBackend and one connection pool between its
tasks.
"""

from __future__ import annotations

import collections
import math
import random

import structlog

from blevalidation.config import ConcurrencyConfig
from blevalidation.primitives.common import ValidationBaseModel
from blevalidation.systems.validation.database.backend import (
    MINOR_SPACE,
    CheckInOutcome,
    ConnectionPool,
    Session,
    SimulatedBackend,
    VirtualClock,
)

logger = structlog.get_logger()

SIM_ORG_ID = "org-sim"
SIM_ORG_CODE = 1
SIM_OFFICER_ID = "officer-sim"
SIM_EVENT_ID = "event-sim"

# A repeat submission rejected as DUPLICATE is the correct outcome
_ACCEPTABLE = frozenset({CheckInOutcome.RECORDED, CheckInOutcome.DUPLICATE})


class SimulationMetrics(ValidationBaseModel):
    total_users: int
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    duplicates_rejected: int = 0
    race_conflicts: int = 0
    lost_updates: int = 0
    timeouts: int = 0
    transient_errors: int = 0
    average_response_ms: float = 0.0
    p95_response_ms: float = 0.0
    p99_response_ms: float = 0.0
    throughput_per_second: float = 0.0
    success_rate: float = 1.0
    error_rate_pct: float = 0.0
    database_connections: int = 0
    peak_queue_wait_ms: float = 0.0
    makespan_ms: float = 0.0
    recorded_check_ins: int = 0
    unique_check_ins: int = 0
    seed: int | None = None


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


class _PooledSimulation:
    """Seeded RNG, a fresh backend and pooled round trips on virtual time."""

    def __init__(self, config: ConcurrencyConfig, seed: int | None) -> None:
        self._config = config
        self._seed = seed
        self._rng = random.Random(seed)
        self.backend = SimulatedBackend(rng=random.Random(self._rng.random()))
        self._latencies: list[float] = []
        self._timeouts = 0
        self._transient = 0

    def _service_ms(self) -> float:
        return self._config.base_latency_ms + self._rng.uniform(0, self._config.latency_jitter_ms)

    async def _query(self, clock: VirtualClock, pool: ConnectionPool) -> bool:
        """One round trip through the pool. False on pool timeout or transient error."""
        end = pool.reserve(clock.now, self._service_ms(), self._config.connection_timeout_ms)
        if end is None:
            self._timeouts += 1
            await clock.sleep(self._config.connection_timeout_ms)
            return False
        await clock.sleep_until(end)
        if self._rng.random() < self._config.transient_error_rate:
            self._transient += 1
            return False
        return True

    def _session_ttl_ms(self) -> float:
        return self._config.arrival_window_ms + self._config.connection_timeout_ms * 10


class LoadSimulation(_PooledSimulation):
    """One run of ``user_count`` concurrent members against a fresh backend."""

    def __init__(self, config: ConcurrencyConfig, user_count: int, seed: int | None) -> None:
        super().__init__(config, seed)
        self._user_count = user_count
        self._outcomes: list[CheckInOutcome | None] = []

    async def _submit(
        self,
        clock: VirtualClock,
        pool: ConnectionPool,
        user_id: str,
        arrival_ms: float,
        minor: int,
    ) -> None:
        await clock.sleep_until(arrival_ms)
        started = clock.now
        outcome: CheckInOutcome | None = None
        try:
            if not await self._query(clock, pool):
                return
            session = self.backend.resolve_session(SIM_ORG_CODE, minor, clock.now)
            if session is None:
                outcome = CheckInOutcome.SESSION_NOT_FOUND
                return
            precheck_ok = self.backend.precheck_attendance(user_id, session.token)
            if not await self._query(clock, pool):
                return
            outcome = await self.backend.add_attendance(
                user_id, session.token, clock.now, precheck_ok=precheck_ok,
            )
        finally:
            self._latencies.append(clock.now - started)
            self._outcomes.append(outcome)

    async def run(self) -> SimulationMetrics:
        cfg = self._config
        clock = VirtualClock(self._rng)
        pool = ConnectionPool(cfg.connection_pool_size)

        self.backend.add_organization(SIM_ORG_ID, SIM_ORG_CODE)
        self.backend.add_member(SIM_OFFICER_ID, SIM_ORG_ID)
        session = self.backend.create_session(
            SIM_ORG_ID, SIM_OFFICER_ID, SIM_EVENT_ID, now_ms=0.0,
            ttl_ms=self._session_ttl_ms(),
        )

        tasks = []
        for i in range(self._user_count):
            user_id = f"member-{i:04d}"
            self.backend.add_member(user_id, SIM_ORG_ID)
            arrival = self._rng.uniform(0, cfg.arrival_window_ms)
            submissions = cfg.operations_per_user
            if self._rng.random() < cfg.duplicate_submission_rate:
                submissions += 1
            for attempt in range(submissions):
                # Repeat taps land within a couple of round trips of the first
                offset = self._rng.uniform(0, 2 * cfg.base_latency_ms) * attempt
                tasks.append(clock.spawn(
                    self._submit(clock, pool, user_id, arrival + offset, session.minor),
                ))
        await clock.run(tasks)

        return self._metrics(clock.now, pool)

    def _metrics(self, makespan_ms: float, pool: ConnectionPool) -> SimulationMetrics:
        total = len(self._outcomes)
        ok = sum(1 for outcome in self._outcomes if outcome in _ACCEPTABLE)
        recorded_outcomes = sum(1 for o in self._outcomes if o == CheckInOutcome.RECORDED)
        rows = len(self.backend.attendance)
        unique = len({(r.user_id, r.event_id) for r in self.backend.attendance})
        metrics = SimulationMetrics(
            total_users=self._user_count,
            total_operations=total,
            successful_operations=ok,
            failed_operations=total - ok,
            duplicates_rejected=sum(1 for o in self._outcomes if o == CheckInOutcome.DUPLICATE),
            race_conflicts=self.backend.race_conflicts,
            lost_updates=abs(recorded_outcomes - rows),
            timeouts=self._timeouts,
            transient_errors=self._transient,
            average_response_ms=round(sum(self._latencies) / len(self._latencies), 2)
            if self._latencies else 0.0,
            p95_response_ms=round(percentile(self._latencies, 95), 2),
            p99_response_ms=round(percentile(self._latencies, 99), 2),
            throughput_per_second=round(total / (makespan_ms / 1000), 2) if makespan_ms else 0.0,
            success_rate=ok / total if total else 1.0,
            error_rate_pct=round((total - ok) / total * 100, 2) if total else 0.0,
            database_connections=min(self._user_count, pool.size),
            peak_queue_wait_ms=round(pool.peak_wait_ms, 2),
            makespan_ms=round(makespan_ms, 2),
            recorded_check_ins=rows,
            unique_check_ins=unique,
            seed=self._seed,
        )
        logger.debug(
            "load_simulation_complete",
            system="validation.database.concurrency",
            users=self._user_count,
            success_rate=round(metrics.success_rate, 4),
            p95_ms=metrics.p95_response_ms,
        )
        return metrics


# ── Concurrent session creation ──────────────────────────────────────────────


class SessionCreationMetrics(ValidationBaseModel):
    officers: int
    organizations: int
    sessions_created: int = 0
    failed_creations: int = 0
    success_rate: float = 1.0
    duplicate_tokens: int = 0
    minor_collisions: int = 0
    unresolvable_sessions: int = 0
    max_sessions_per_org: int = 0
    collision_probability: float = 0.0
    p95_response_ms: float = 0.0
    makespan_ms: float = 0.0
    timeouts: int = 0
    seed: int | None = None


def minor_collision_probability(active_sessions: int, space: int = MINOR_SPACE) -> float:
    """Chance that at least two of ``active_sessions`` in one organization share a minor."""
    unique = 1.0
    for i in range(active_sessions):
        unique *= (space - i) / space
    return 1.0 - unique


class SessionCreationSimulation(_PooledSimulation):
    """``officers`` officers, round-robin over the organizations, opening sessions at once."""

    def __init__(self, config: ConcurrencyConfig, officers: int, seed: int | None) -> None:
        super().__init__(config, seed)
        self._officers = officers
        self._org_count = max(1, min(config.session_organizations, officers))
        self._created: list[Session] = []
        self._failed = 0

    async def _open(
        self,
        clock: VirtualClock,
        pool: ConnectionPool,
        org_id: str,
        officer_id: str,
        event_id: str,
        arrival_ms: float,
    ) -> None:
        await clock.sleep_until(arrival_ms)
        started = clock.now
        try:
            if not await self._query(clock, pool):
                self._failed += 1
                return
            self._created.append(self.backend.create_session(
                org_id, officer_id, event_id, now_ms=clock.now, ttl_ms=self._session_ttl_ms(),
            ))
        finally:
            self._latencies.append(clock.now - started)

    async def run(self) -> SessionCreationMetrics:
        cfg = self._config
        clock = VirtualClock(self._rng)
        pool = ConnectionPool(cfg.connection_pool_size)

        for code in range(1, self._org_count + 1):
            self.backend.add_organization(f"org-{code:03d}", code)

        tasks = []
        for i in range(self._officers):
            org_id = f"org-{i % self._org_count + 1:03d}"
            officer_id = f"officer-{i:04d}"
            self.backend.add_member(officer_id, org_id)
            arrival = self._rng.uniform(0, cfg.arrival_window_ms)
            tasks.append(clock.spawn(
                self._open(clock, pool, org_id, officer_id, f"event-{i:04d}", arrival),
            ))
        await clock.run(tasks)

        return self._metrics(clock.now)

    def _metrics(self, now_ms: float) -> SessionCreationMetrics:
        created = self._created
        tokens = collections.Counter(s.token for s in created)
        minors = collections.Counter((s.org_id, s.minor) for s in created)
        per_org = collections.Counter(s.org_id for s in created)
        # Every session must come back from a scan of its own beacon
        unresolvable = sum(
            1 for s in created
            if self.backend.resolve_session(self.backend.orgs[s.org_id].code, s.minor, now_ms) is not s
        )
        busiest = max(per_org.values(), default=0)
        metrics = SessionCreationMetrics(
            officers=self._officers,
            organizations=self._org_count,
            sessions_created=len(created),
            failed_creations=self._failed,
            success_rate=len(created) / self._officers if self._officers else 1.0,
            duplicate_tokens=sum(n - 1 for n in tokens.values()),
            minor_collisions=sum(n - 1 for n in minors.values()),
            unresolvable_sessions=unresolvable,
            max_sessions_per_org=busiest,
            collision_probability=round(minor_collision_probability(busiest), 6),
            p95_response_ms=round(percentile(self._latencies, 95), 2),
            makespan_ms=round(now_ms, 2),
            timeouts=self._timeouts,
            seed=self._seed,
        )
        logger.debug(
            "session_creation_simulation_complete",
            system="validation.database.concurrency",
            officers=self._officers,
            created=metrics.sessions_created,
            minor_collisions=metrics.minor_collisions,
            unresolvable=metrics.unresolvable_sessions,
        )
        return metrics
