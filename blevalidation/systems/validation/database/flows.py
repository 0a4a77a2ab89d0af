"""
Scripted end-to-end attendance flows over the simulated backend.

Each flow is an ordered list of steps sharing one context. A step that
fails blocks the rest of its flow: later steps are reported PENDING since
their preconditions were never established.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from blevalidation.systems.validation.database.backend import (
    MINOR_SPACE,
    CheckInOutcome,
    SimulatedBackend,
    is_valid_token,
    minor_for_token,
)
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

logger = structlog.get_logger()

StepCheck = Callable[[dict[str, Any]], Awaitable[tuple[bool, str]]]


class FlowRecorder:
    """Runs the steps of one flow in order and records a result per step."""

    def __init__(self, flow_id: str, category: ValidationCategory = ValidationCategory.DATABASE) -> None:
        self.flow_id = flow_id
        self.category = category
        self.context: dict[str, Any] = {}
        self.results: list[ValidationResult] = []
        self._blocked_by: str | None = None

    async def step(
        self,
        step_id: str,
        name: str,
        check: StepCheck,
        severity: Severity = Severity.HIGH,
        recommendation: str = "",
    ) -> None:
        result_id = f"flow_{self.flow_id}_{step_id}"
        if self._blocked_by is not None:
            self.results.append(ValidationResult(
                id=result_id,
                name=name,
                status=ValidationStatus.PENDING,
                severity=Severity.LOW,
                category=self.category,
                message=f"Not exercised: preceding step '{self._blocked_by}' did not succeed",
                details={"flow": self.flow_id, "blocked_by": self._blocked_by},
            ))
            return

        try:
            passed, message = await check(self.context)
        except (KeyError, PermissionError, ValueError) as exc:
            passed, message = False, f"{type(exc).__name__}: {exc}"

        if not passed:
            self._blocked_by = name
        self.results.append(ValidationResult(
            id=result_id,
            name=name,
            status=ValidationStatus.PASS if passed else ValidationStatus.FAIL,
            severity=Severity.INFO if passed else severity,
            category=self.category,
            message=message,
            details={"flow": self.flow_id},
            evidence=[] if passed else [Evidence(
                type=EvidenceType.TEST_RESULT,
                location=f"flow:{self.flow_id}/{step_id}",
                details=message,
                severity=severity,
            )],
            recommendations=[recommendation] if recommendation and not passed else [],
        ))


# ── Flows ────────────────────────────────────────────────────────────────────


async def attendance_flow(seed: int | None) -> list[ValidationResult]:
    """Officer opens a session, members check in, officer closes it."""
    backend = SimulatedBackend(rng=random.Random(seed))
    backend.add_organization("org-a", 101)
    backend.add_member("officer-a", "org-a")
    backend.add_member("member-1", "org-a")
    backend.add_member("member-2", "org-a")
    flow = FlowRecorder("attendance")

    async def open_session(ctx: dict[str, Any]) -> tuple[bool, str]:
        session = backend.create_session("org-a", "officer-a", "event-1", now_ms=0.0)
        ctx["session"] = session
        if not is_valid_token(session.token):
            return False, f"Session token {session.token!r} is not a 12-character secure token"
        return True, "Officer opened a session with a well-formed token"

    async def broadcast(ctx: dict[str, Any]) -> tuple[bool, str]:
        session = ctx["session"]
        major, minor = backend.orgs["org-a"].code, session.minor
        ctx["payload"] = (major, minor)
        if not (0 <= major < MINOR_SPACE and 0 <= minor < MINOR_SPACE):
            return False, f"Beacon payload ({major}, {minor}) does not fit 16-bit fields"
        if minor != minor_for_token(session.token):
            return False, "Broadcast minor does not match the session token hash"
        return True, f"Beacon payload major={major} minor={minor}"

    async def detect(ctx: dict[str, Any]) -> tuple[bool, str]:
        major, minor = ctx["payload"]
        found = backend.resolve_session(major, minor, now_ms=1_000.0)
        if found is None or found.token != ctx["session"].token:
            return False, "Member device could not resolve the broadcast session"
        return True, "Member device resolved the broadcast to the open session"

    async def check_in(ctx: dict[str, Any]) -> tuple[bool, str]:
        outcome = await backend.add_attendance("member-1", ctx["session"].token, 2_000.0)
        if outcome != CheckInOutcome.RECORDED:
            return False, f"Check-in returned {outcome.value}, expected recorded"
        return True, "Member check-in recorded"

    async def duplicate(ctx: dict[str, Any]) -> tuple[bool, str]:
        outcome = await backend.add_attendance("member-1", ctx["session"].token, 2_500.0)
        rows = sum(1 for r in backend.attendance if r.user_id == "member-1")
        if outcome != CheckInOutcome.DUPLICATE or rows != 1:
            return False, f"Repeat check-in returned {outcome.value} with {rows} attendance rows"
        return True, "Repeat check-in rejected as duplicate"

    async def close(ctx: dict[str, Any]) -> tuple[bool, str]:
        if not backend.close_session(ctx["session"].token, now_ms=3_000.0):
            return False, "Officer could not close the session"
        return True, "Officer closed the session"

    async def late(ctx: dict[str, Any]) -> tuple[bool, str]:
        outcome = await backend.add_attendance("member-2", ctx["session"].token, 4_000.0)
        if outcome != CheckInOutcome.SESSION_EXPIRED:
            return False, f"Check-in after close returned {outcome.value}"
        return True, "Check-in after close rejected"

    await flow.step("open_session", "Officer opens session", open_session, Severity.CRITICAL,
                    "Fix create_session_secure so officers can open sessions")
    await flow.step("broadcast", "Session broadcast payload", broadcast, Severity.HIGH,
                    "Derive the beacon minor from the session token hash")
    await flow.step("detect", "Member detects session", detect, Severity.HIGH,
                    "Make resolve_session match on (org code, minor) for active sessions")
    await flow.step("check_in", "Member checks in", check_in, Severity.CRITICAL,
                    "Fix add_attendance_secure for active members of the session's organization")
    await flow.step("duplicate_rejected", "Duplicate check-in rejected", duplicate, Severity.CRITICAL,
                    "Enforce a unique (member, event) constraint on attendance")
    await flow.step("close_session", "Officer closes session", close, Severity.MEDIUM,
                    "Allow officers to end sessions early")
    await flow.step("late_check_in_rejected", "Late check-in rejected", late, Severity.HIGH,
                    "Reject check-ins for closed or expired sessions")
    return flow.results


async def isolation_flow(seed: int | None) -> list[ValidationResult]:
    """Members of another organization, and inactive members, are refused."""
    backend = SimulatedBackend(rng=random.Random(seed))
    backend.add_organization("org-a", 101)
    backend.add_organization("org-b", 202)
    backend.add_member("officer-a", "org-a")
    backend.add_member("outsider", "org-b")
    backend.add_member("lapsed", "org-a", active=False)
    flow = FlowRecorder("isolation", ValidationCategory.SECURITY)

    async def open_session(ctx: dict[str, Any]) -> tuple[bool, str]:
        ctx["session"] = backend.create_session("org-a", "officer-a", "event-a", now_ms=0.0)
        return True, "Session opened in organization A"

    async def foreign_resolve(ctx: dict[str, Any]) -> tuple[bool, str]:
        found = backend.resolve_session(202, ctx["session"].minor, now_ms=500.0)
        if found is not None:
            return False, "Organization B's beacon code resolved organization A's session"
        return True, "Foreign organization code does not resolve the session"

    async def outsider_check_in(ctx: dict[str, Any]) -> tuple[bool, str]:
        outcome = await backend.add_attendance("outsider", ctx["session"].token, 1_000.0)
        if outcome != CheckInOutcome.NOT_MEMBER:
            return False, f"Non-member check-in returned {outcome.value}"
        return True, "Non-member check-in refused"

    async def inactive_check_in(ctx: dict[str, Any]) -> tuple[bool, str]:
        outcome = await backend.add_attendance("lapsed", ctx["session"].token, 1_500.0)
        if outcome != CheckInOutcome.NOT_MEMBER:
            return False, f"Inactive member check-in returned {outcome.value}"
        return True, "Inactive member check-in refused"

    await flow.step("open_session", "Officer opens session", open_session, Severity.HIGH)
    await flow.step("foreign_resolve", "Cross-organization resolve refused", foreign_resolve,
                    Severity.CRITICAL, "Scope resolve_session by organization code")
    await flow.step("outsider_check_in", "Non-member check-in refused", outsider_check_in,
                    Severity.CRITICAL, "Require membership in the session's organization")
    await flow.step("inactive_check_in", "Inactive member check-in refused", inactive_check_in,
                    Severity.HIGH, "Require memberships.is_active = true")
    return flow.results


async def token_input_flow(seed: int | None) -> list[ValidationResult]:
    """Malformed tokens are refused; case and whitespace are normalised."""
    backend = SimulatedBackend(rng=random.Random(seed))
    backend.add_organization("org-a", 101)
    backend.add_member("officer-a", "org-a")
    backend.add_member("member-1", "org-a")
    flow = FlowRecorder("token_input")

    async def open_session(ctx: dict[str, Any]) -> tuple[bool, str]:
        ctx["session"] = backend.create_session("org-a", "officer-a", "event-t", now_ms=0.0)
        return True, "Session opened"

    async def malformed(ctx: dict[str, Any]) -> tuple[bool, str]:
        for bad in ("", "SHORT", "O0I1O0I1O0I1", "'; DROP TABLE attendance; --"):
            outcome = await backend.add_attendance("member-1", bad, 500.0)
            if outcome != CheckInOutcome.INVALID_TOKEN:
                return False, f"Malformed token {bad!r} returned {outcome.value}"
        return True, "Malformed and injection-shaped tokens refused"

    async def normalised(ctx: dict[str, Any]) -> tuple[bool, str]:
        raw = f"  {ctx['session'].token.lower()} "
        outcome = await backend.add_attendance("member-1", raw, 1_000.0)
        if outcome != CheckInOutcome.RECORDED:
            return False, f"Lower-case padded token returned {outcome.value}"
        return True, "Token input normalised with TRIM/UPPER before lookup"

    await flow.step("open_session", "Officer opens session", open_session, Severity.HIGH)
    await flow.step("malformed_tokens", "Malformed tokens refused", malformed, Severity.HIGH,
                    "Validate token length and charset before lookup")
    await flow.step("normalised_token", "Token normalisation", normalised, Severity.MEDIUM,
                    "Apply UPPER(TRIM(token)) before comparing tokens")
    return flow.results


FLOWS: tuple[Callable[[int | None], Awaitable[list[ValidationResult]]], ...] = (
    attendance_flow,
    isolation_flow,
    token_input_flow,
)


async def run_flows(seed: int | None) -> list[ValidationResult]:
    results: list[ValidationResult] = []
    for flow in FLOWS:
        flow_results = await flow(seed)
        logger.debug(
            "flow_complete",
            system="validation.database.flows",
            flow=flow.__name__,
            steps=len(flow_results),
            failed=sum(1 for r in flow_results if r.status == ValidationStatus.FAIL),
        )
        results.extend(flow_results)
    return results
