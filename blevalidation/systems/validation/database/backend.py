"""
Simulated attendance backend and the virtual clock that drives it.

The backend mirrors the server-side data functions (create_session_secure,
resolve_session, add_attendance_secure) over in-memory state so flows and
concurrent load can be exercised without a live database.

Concurrency is logical: every simulated client is an asyncio task, and the
VirtualClock wakes sleeping tasks in virtual-time order with seeded random
tie-breaking, so the same scenario can be replayed under many interleavings.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import heapq
import random
import secrets
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

MINOR_SPACE = 65_536
TOKEN_LENGTH = 12
SECURE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


# ── Virtual time ─────────────────────────────────────────────────────────────


class VirtualClock:
    """
    Discrete-event clock for cooperative tasks.

    Tasks started with ``spawn`` run until they await ``sleep_until``; once
    every task is parked (or finished) the driver advances ``now`` to the
    earliest wake-up and resumes that task. Tasks must not hold a lock
    across a clock sleep.
    """

    def __init__(self, rng: random.Random) -> None:
        self.now = 0.0
        self._rng = rng
        self._heap: list[tuple[float, float, int, asyncio.Future[None]]] = []
        self._seq = 0
        self._running = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def _enter(self) -> None:
        self._running += 1
        self._idle.clear()

    def _leave(self) -> None:
        self._running -= 1
        if self._running == 0:
            self._idle.set()

    async def sleep_until(self, when: float) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._heap, (max(when, self.now), self._rng.random(), self._seq, fut))
        self._seq += 1
        self._leave()
        await fut

    async def sleep(self, delay_ms: float) -> None:
        await self.sleep_until(self.now + delay_ms)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        self._enter()

        async def _runner() -> Any:
            try:
                return await coro
            finally:
                self._leave()

        return asyncio.create_task(_runner())

    async def run(self, tasks: list[asyncio.Task[Any]]) -> list[Any]:
        while True:
            await self._idle.wait()
            if not self._heap:
                break
            when, _, _, fut = heapq.heappop(self._heap)
            self.now = when
            self._enter()
            fut.set_result(None)
        return await asyncio.gather(*tasks)


class ConnectionPool:
    """
    Fixed-size connection pool on virtual time. Callers reserve in
    virtual-time order (the clock guarantees it), so FIFO queueing falls out
    of always taking the earliest-free connection.
    """

    def __init__(self, size: int) -> None:
        self.size = size
        self._free_at: list[float] = [0.0] * size
        heapq.heapify(self._free_at)
        self.peak_wait_ms = 0.0

    def reserve(self, now: float, service_ms: float, timeout_ms: float) -> float | None:
        """End time of the reserved slot, or None when the wait exceeds the timeout."""
        free_at = heapq.heappop(self._free_at)
        start = max(now, free_at)
        wait = start - now
        if wait > timeout_ms:
            heapq.heappush(self._free_at, free_at)
            return None
        self.peak_wait_ms = max(self.peak_wait_ms, wait)
        end = start + service_ms
        heapq.heappush(self._free_at, end)
        return end


# ── Records ──────────────────────────────────────────────────────────────────


class CheckInOutcome(enum.StrEnum):
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    NOT_MEMBER = "not_member"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    INVALID_TOKEN = "invalid_token"


@dataclass
class Organization:
    id: str
    code: int  # beacon major


@dataclass
class Membership:
    user_id: str
    org_id: str
    is_active: bool = True


@dataclass
class Session:
    event_id: str
    org_id: str
    token: str
    minor: int
    created_by: str
    starts_at_ms: float
    ends_at_ms: float
    closed: bool = False


@dataclass(frozen=True)
class AttendanceRecord:
    seq: int
    user_id: str
    event_id: str
    org_id: str
    checked_in_at_ms: float


@dataclass
class IntegrityReport:
    referential: list[str] = field(default_factory=list)
    uniqueness: list[str] = field(default_factory=list)
    membership: list[str] = field(default_factory=list)
    session_window: list[str] = field(default_factory=list)
    monotonic: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (
            self.referential or self.uniqueness or self.membership
            or self.session_window or self.monotonic
        )


def minor_for_token(token: str) -> int:
    """16-bit beacon minor derived from a session token."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % MINOR_SPACE


def is_valid_token(token: str) -> bool:
    return len(token) == TOKEN_LENGTH and all(c in SECURE_CHARS for c in token)


# ── Backend ──────────────────────────────────────────────────────────────────


class SimulatedBackend:
    """
    In-memory stand-in for the attendance database.

    add_attendance performs an optimistic pre-check, then commits under a
    lock that enforces the unique (user, event) constraint. A caller whose
    pre-check passed but lost the race is told DUPLICATE, exactly like an
    INSERT ... ON CONFLICT DO NOTHING.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self.orgs: dict[str, Organization] = {}
        self.memberships: dict[tuple[str, str], Membership] = {}
        self.sessions: dict[str, Session] = {}
        self.attendance: list[AttendanceRecord] = []
        self._attendance_keys: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()
        self._seq = 0
        self.race_conflicts = 0

    # ── Setup ────────────────────────────────────────────────────────────────

    def add_organization(self, org_id: str, code: int) -> Organization:
        org = Organization(id=org_id, code=code)
        self.orgs[org_id] = org
        return org

    def add_member(self, user_id: str, org_id: str, active: bool = True) -> Membership:
        membership = Membership(user_id=user_id, org_id=org_id, is_active=active)
        self.memberships[(user_id, org_id)] = membership
        return membership

    def _generate_token(self) -> str:
        for _ in range(10):
            token = "".join(self._rng.choice(SECURE_CHARS) for _ in range(TOKEN_LENGTH))
            if token not in self.sessions:
                return token
        # Collision retries exhausted; fall back to the OS CSPRNG
        return "".join(secrets.choice(SECURE_CHARS) for _ in range(TOKEN_LENGTH))

    # ── Data functions ───────────────────────────────────────────────────────

    def create_session(
        self,
        org_id: str,
        officer_id: str,
        event_id: str,
        now_ms: float,
        ttl_ms: float = 3_600_000,
    ) -> Session:
        if org_id not in self.orgs:
            raise KeyError(f"unknown organization {org_id}")
        membership = self.memberships.get((officer_id, org_id))
        if membership is None or not membership.is_active:
            raise PermissionError(f"{officer_id} is not an active member of {org_id}")
        token = self._generate_token()
        session = Session(
            event_id=event_id,
            org_id=org_id,
            token=token,
            minor=minor_for_token(token),
            created_by=officer_id,
            starts_at_ms=now_ms,
            ends_at_ms=now_ms + ttl_ms,
        )
        self.sessions[token] = session
        return session

    def resolve_session(self, org_code: int, minor: int, now_ms: float) -> Session | None:
        """Active session broadcasting (major=org_code, minor). Ambiguous matches resolve to None."""
        matches = [
            s for s in self.sessions.values()
            if not s.closed
            and s.minor == minor
            and self.orgs[s.org_id].code == org_code
            and s.starts_at_ms <= now_ms <= s.ends_at_ms
        ]
        return matches[0] if len(matches) == 1 else None

    def close_session(self, token: str, now_ms: float) -> bool:
        session = self.sessions.get(token)
        if session is None or session.closed:
            return False
        session.closed = True
        session.ends_at_ms = min(session.ends_at_ms, now_ms)
        return True

    def precheck_attendance(self, user_id: str, token: str) -> bool:
        """Non-locking read; may be stale by commit time."""
        session = self.sessions.get(token)
        return session is not None and (user_id, session.event_id) not in self._attendance_keys

    async def add_attendance(
        self,
        user_id: str,
        token: str,
        now_ms: float,
        precheck_ok: bool | None = None,
    ) -> CheckInOutcome:
        """
        ``precheck_ok`` is the caller's earlier read of precheck_attendance;
        when omitted the read happens here.
        """
        token = token.strip().upper()
        if not is_valid_token(token):
            return CheckInOutcome.INVALID_TOKEN
        if precheck_ok is None:
            precheck_ok = self.precheck_attendance(user_id, token)

        async with self._lock:
            # Interleaving point inside the critical section
            await asyncio.sleep(0)
            session = self.sessions.get(token)
            if session is None:
                return CheckInOutcome.SESSION_NOT_FOUND
            if session.closed or not (session.starts_at_ms <= now_ms <= session.ends_at_ms):
                return CheckInOutcome.SESSION_EXPIRED
            membership = self.memberships.get((user_id, session.org_id))
            if membership is None or not membership.is_active:
                return CheckInOutcome.NOT_MEMBER
            key = (user_id, session.event_id)
            if key in self._attendance_keys:
                if precheck_ok:
                    self.race_conflicts += 1
                return CheckInOutcome.DUPLICATE
            self._seq += 1
            self._attendance_keys.add(key)
            self.attendance.append(AttendanceRecord(
                seq=self._seq,
                user_id=user_id,
                event_id=session.event_id,
                org_id=session.org_id,
                checked_in_at_ms=now_ms,
            ))
            return CheckInOutcome.RECORDED

    # ── Invariants ───────────────────────────────────────────────────────────

    def integrity_report(self) -> IntegrityReport:
        report = IntegrityReport()
        sessions_by_event = {s.event_id: s for s in self.sessions.values()}
        seen: set[tuple[str, str]] = set()
        last_seq = 0
        last_time = float("-inf")

        for rec in self.attendance:
            session = sessions_by_event.get(rec.event_id)
            if session is None or session.org_id != rec.org_id:
                report.referential.append(
                    f"attendance #{rec.seq} references unknown session for event {rec.event_id}"
                )
            key = (rec.user_id, rec.event_id)
            if key in seen:
                report.uniqueness.append(
                    f"user {rec.user_id} checked into event {rec.event_id} more than once"
                )
            seen.add(key)
            membership = self.memberships.get((rec.user_id, rec.org_id))
            if membership is None or not membership.is_active:
                report.membership.append(
                    f"attendance #{rec.seq} by non-member {rec.user_id} of {rec.org_id}"
                )
            if session is not None and not (
                session.starts_at_ms <= rec.checked_in_at_ms <= session.ends_at_ms
            ):
                report.session_window.append(
                    f"attendance #{rec.seq} at {rec.checked_in_at_ms:.0f}ms outside session window"
                )
            if rec.seq <= last_seq or rec.checked_in_at_ms < last_time:
                report.monotonic.append(
                    f"attendance #{rec.seq} breaks commit order (previous #{last_seq})"
                )
            last_seq = rec.seq
            last_time = rec.checked_in_at_ms

        if len(seen) != len(self._attendance_keys):
            report.uniqueness.append("unique-key index disagrees with attendance rows")
        return report
