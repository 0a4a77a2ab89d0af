"""
Tests for the simulated attendance backend and the scripted flows.

Covers:
  - Session creation, token shape and beacon minor derivation
  - Session resolution by (org code, minor)
  - Check-in outcomes: recorded, duplicate, not member, expired, invalid token
  - Unique-constraint race accounting
  - Connection pool reservation on virtual time
  - Integrity report over corrupted state
  - Flow recorder blocking and the built-in flows
"""

from __future__ import annotations

import random

import pytest

from blevalidation.systems.validation.database.backend import (
    MINOR_SPACE,
    SECURE_CHARS,
    TOKEN_LENGTH,
    AttendanceRecord,
    CheckInOutcome,
    ConnectionPool,
    SimulatedBackend,
    is_valid_token,
    minor_for_token,
)
from blevalidation.systems.validation.database.flows import FlowRecorder, run_flows
from blevalidation.systems.validation.types import Severity, ValidationStatus


def _make_backend(seed: int = 1) -> SimulatedBackend:
    backend = SimulatedBackend(rng=random.Random(seed))
    backend.add_organization("org-a", 101)
    backend.add_organization("org-b", 202)
    backend.add_member("officer", "org-a")
    backend.add_member("alice", "org-a")
    backend.add_member("bob", "org-b")
    backend.add_member("carol", "org-a", active=False)
    return backend


# ─── Backend ─────────────────────────────────────────────────────


class TestSessions:
    def test_token_shape_and_minor(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0)

        assert len(session.token) == TOKEN_LENGTH
        assert set(session.token) <= set(SECURE_CHARS)
        assert is_valid_token(session.token)
        assert session.minor == minor_for_token(session.token)
        assert 0 <= session.minor < MINOR_SPACE

    def test_unknown_org(self):
        with pytest.raises(KeyError):
            _make_backend().create_session("org-x", "officer", "event-1", now_ms=0.0)

    def test_inactive_officer_refused(self):
        with pytest.raises(PermissionError):
            _make_backend().create_session("org-a", "carol", "event-1", now_ms=0.0)

    def test_resolve_scoped_to_org_and_window(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0, ttl_ms=1_000)

        assert backend.resolve_session(101, session.minor, now_ms=500) is session
        assert backend.resolve_session(202, session.minor, now_ms=500) is None
        assert backend.resolve_session(101, session.minor, now_ms=1_500) is None

    def test_ambiguous_minor_resolves_to_none(self):
        backend = _make_backend()
        first = backend.create_session("org-a", "officer", "event-1", now_ms=0.0)
        second = backend.create_session("org-a", "officer", "event-2", now_ms=0.0)
        second.minor = first.minor
        assert backend.resolve_session(101, first.minor, now_ms=10) is None

    def test_close_once(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0)
        assert backend.close_session(session.token, now_ms=100)
        assert not backend.close_session(session.token, now_ms=200)
        assert session.ends_at_ms == 100
        assert not backend.close_session("UNKNOWN", now_ms=200)


class TestCheckIn:
    @pytest.mark.asyncio
    async def test_outcomes(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0, ttl_ms=1_000)
        token = session.token

        assert await backend.add_attendance("alice", token, 10) == CheckInOutcome.RECORDED
        assert await backend.add_attendance("alice", token, 20) == CheckInOutcome.DUPLICATE
        assert await backend.add_attendance("bob", token, 30) == CheckInOutcome.NOT_MEMBER
        assert await backend.add_attendance("carol", token, 40) == CheckInOutcome.NOT_MEMBER
        assert await backend.add_attendance("officer", token, 2_000) == CheckInOutcome.SESSION_EXPIRED
        assert await backend.add_attendance("alice", "SHORT", 50) == CheckInOutcome.INVALID_TOKEN
        assert await backend.add_attendance("alice", "A" * TOKEN_LENGTH, 50) == CheckInOutcome.SESSION_NOT_FOUND
        assert len(backend.attendance) == 1

    @pytest.mark.asyncio
    async def test_token_normalised(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0)
        outcome = await backend.add_attendance("alice", f" {session.token.lower()}  ", 10)
        assert outcome == CheckInOutcome.RECORDED

    @pytest.mark.asyncio
    async def test_stale_precheck_counts_race(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0)
        precheck = backend.precheck_attendance("alice", session.token)
        assert precheck

        await backend.add_attendance("alice", session.token, 10)
        outcome = await backend.add_attendance("alice", session.token, 11, precheck_ok=precheck)

        assert outcome == CheckInOutcome.DUPLICATE
        assert backend.race_conflicts == 1
        assert backend.integrity_report().clean


class TestConnectionPool:
    def test_fifo_queueing_and_timeout(self):
        pool = ConnectionPool(1)
        assert pool.reserve(0, 10, timeout_ms=100) == 10
        assert pool.reserve(0, 10, timeout_ms=100) == 20
        assert pool.reserve(0, 10, timeout_ms=5) is None
        assert pool.peak_wait_ms == 10
        # The rejected caller does not consume the slot
        assert pool.reserve(20, 10, timeout_ms=0) == 30


class TestIntegrityReport:
    @pytest.mark.asyncio
    async def test_detects_corruption(self):
        backend = _make_backend()
        session = backend.create_session("org-a", "officer", "event-1", now_ms=0.0, ttl_ms=1_000)
        await backend.add_attendance("alice", session.token, 100)

        backend.attendance.append(AttendanceRecord(
            seq=1, user_id="alice", event_id="event-1", org_id="org-a", checked_in_at_ms=50,
        ))
        backend.attendance.append(AttendanceRecord(
            seq=9, user_id="bob", event_id="event-1", org_id="org-a", checked_in_at_ms=5_000,
        ))
        backend.attendance.append(AttendanceRecord(
            seq=10, user_id="alice", event_id="event-404", org_id="org-a", checked_in_at_ms=6_000,
        ))
        report = backend.integrity_report()

        assert not report.clean
        assert report.uniqueness
        assert report.monotonic
        assert any("non-member bob" in v for v in report.membership)
        assert any("outside session window" in v for v in report.session_window)
        assert any("event-404" in v for v in report.referential)


# ─── Flows ───────────────────────────────────────────────────────


class TestFlowRecorder:
    @pytest.mark.asyncio
    async def test_failure_blocks_later_steps(self):
        flow = FlowRecorder("demo")

        async def ok(ctx):
            ctx["value"] = 1
            return True, "ok"

        async def broken(ctx):
            return ctx["missing"], "unreachable"

        await flow.step("first", "First", ok)
        await flow.step("second", "Second", broken, Severity.CRITICAL, "Fix the second step")
        await flow.step("third", "Third", ok)

        first, second, third = flow.results
        assert first.status == ValidationStatus.PASS
        assert second.status == ValidationStatus.FAIL
        assert second.severity == Severity.CRITICAL
        assert second.message == "KeyError: 'missing'"
        assert second.recommendations == ["Fix the second step"]
        assert second.evidence[0].location == "flow:demo/second"
        assert third.status == ValidationStatus.PENDING
        assert third.details == {"flow": "demo", "blocked_by": "Second"}
        assert [r.id for r in flow.results] == [
            "flow_demo_first", "flow_demo_second", "flow_demo_third",
        ]


class TestBuiltInFlows:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [None, 1, 42])
    async def test_all_flows_pass(self, seed):
        results = await run_flows(seed)

        assert len(results) == 14
        assert [r.id for r in results if r.status != ValidationStatus.PASS] == []

    @pytest.mark.asyncio
    async def test_flow_ids(self):
        ids = [r.id for r in await run_flows(7)]
        assert ids[0] == "flow_attendance_open_session"
        assert "flow_attendance_duplicate_rejected" in ids
        assert "flow_isolation_foreign_resolve" in ids
        assert ids[-1] == "flow_token_input_normalised_token"
