"""
Tests for the Performance Analysis engine.

Covers:
  - Erlang-C queueing model and pool predictions
  - Default configuration meets the 150-user target
  - Undersized pools and measured capacity shortfalls
  - Resource thresholds
"""

from __future__ import annotations

import math

import pytest

from blevalidation.config import ConcurrencyConfig, PerformanceConfig
from blevalidation.systems.validation.database.concurrency import SimulationMetrics
from blevalidation.systems.validation.errors import EngineInitError
from blevalidation.systems.validation.performance import (
    PerformanceAnalysisEngine,
    erlang_c,
    predict_pool,
    supported_users,
)
from blevalidation.systems.validation.types import Severity, ValidationStatus


def _metrics(users: int, success_rate: float = 1.0, p95_ms: float = 120.0) -> SimulationMetrics:
    return SimulationMetrics(total_users=users, success_rate=success_rate, p95_response_ms=p95_ms)


async def _validate(engine: PerformanceAnalysisEngine):
    await engine.initialize()
    try:
        return await engine.validate()
    finally:
        await engine.cleanup()


def _by_id(phase):
    return {r.id: r for r in phase.results}


# ─── Queueing model ──────────────────────────────────────────────


class TestErlangC:
    def test_single_server_equals_utilization(self):
        assert erlang_c(1, 0.5) == pytest.approx(0.5)

    def test_saturated(self):
        assert erlang_c(2, 3.0) == 1.0
        assert erlang_c(0, 1.0) == 1.0

    def test_idle(self):
        assert erlang_c(5, 0.0) == 0.0

    def test_more_servers_wait_less(self):
        assert erlang_c(20, 10.0) < erlang_c(12, 10.0)


class TestPredictPool:
    def test_target_load(self):
        prediction = predict_pool(150, ConcurrencyConfig())
        # 150 users * 1.1 submissions over 2 s
        assert prediction.arrival_rate == pytest.approx(82.5)
        assert prediction.utilization == pytest.approx(0.825)
        assert not prediction.saturated
        assert prediction.p95_response_ms < 1_000

    def test_saturated_pool(self):
        prediction = predict_pool(200, ConcurrencyConfig())
        assert prediction.saturated
        assert math.isinf(prediction.p95_response_ms)

    def test_supported_users(self):
        capacity = supported_users(ConcurrencyConfig(), ceiling=1_000)
        assert 170 <= capacity < 182
        assert supported_users(ConcurrencyConfig(), ceiling=100) == 100


# ─── Engine ──────────────────────────────────────────────────────


class TestPerformancePhase:
    @pytest.mark.asyncio
    async def test_default_configuration(self):
        phase = await _validate(PerformanceAnalysisEngine())
        by_id = _by_id(phase)

        assert phase.critical_issues == []
        assert by_id["performance_db_capacity"].status == ValidationStatus.PASS
        assert by_id["performance_concurrent_user_requirement"].status == ValidationStatus.PASS
        assert by_id["performance_realtime_capacity"].status == ValidationStatus.PASS
        # 82.5% pool utilization is near the limit
        assert by_id["bottleneck_database"].status == ValidationStatus.CONDITIONAL
        assert by_id["performance_battery"].status == ValidationStatus.CONDITIONAL
        assert "performance_measured_capacity" not in by_id
        assert phase.status == ValidationStatus.CONDITIONAL

    @pytest.mark.asyncio
    async def test_undersized_pool(self):
        engine = PerformanceAnalysisEngine(concurrency=ConcurrencyConfig(connection_pool_size=5))
        by_id = _by_id(await _validate(engine))

        capacity = by_id["performance_db_capacity"]
        assert capacity.status == ValidationStatus.FAIL
        assert capacity.severity == Severity.HIGH
        assert capacity.details["predicted_p95_ms"] is None
        assert by_id["bottleneck_database"].severity == Severity.HIGH
        requirement = by_id["performance_concurrent_user_requirement"]
        assert requirement.status == ValidationStatus.FAIL
        assert requirement.severity == Severity.CRITICAL
        assert requirement.details["modelled_capacity"] < 150

    @pytest.mark.asyncio
    async def test_measured_capacity_shortfall(self):
        engine = PerformanceAnalysisEngine(
            measured_metrics=lambda: [_metrics(150), _metrics(50), _metrics(100, success_rate=0.5)],
        )
        by_id = _by_id(await _validate(engine))

        measured = by_id["performance_measured_capacity"]
        assert measured.status == ValidationStatus.CONDITIONAL
        assert measured.details["measured_capacity"] == 50
        assert measured.details["steps"] == [50, 100, 150]
        requirement = by_id["performance_concurrent_user_requirement"]
        assert requirement.status == ValidationStatus.FAIL
        assert requirement.details["measured_capacity"] == 50

    @pytest.mark.asyncio
    async def test_measured_capacity_meets_target(self):
        engine = PerformanceAnalysisEngine(
            measured_metrics=lambda: [_metrics(50), _metrics(150)],
        )
        by_id = _by_id(await _validate(engine))
        assert by_id["performance_measured_capacity"].status == ValidationStatus.PASS
        assert by_id["performance_concurrent_user_requirement"].status == ValidationStatus.PASS

    @pytest.mark.asyncio
    async def test_invalid_pool(self):
        engine = PerformanceAnalysisEngine(concurrency=ConcurrencyConfig(connection_pool_size=0))
        with pytest.raises(EngineInitError):
            await engine.initialize()


class TestResourceThresholds:
    @pytest.mark.asyncio
    async def test_battery_over_limit(self):
        engine = PerformanceAnalysisEngine(PerformanceConfig(battery_drain_max_pct_per_hour=5.0))
        battery = (await engine.estimate_resource_usage())[0]

        assert battery.id == "performance_battery"
        assert battery.status == ValidationStatus.FAIL
        assert battery.severity == Severity.MEDIUM
        assert battery.details["estimate"] == pytest.approx(6.8)

    @pytest.mark.asyncio
    async def test_within_limits(self):
        results = await PerformanceAnalysisEngine().estimate_resource_usage()
        statuses = {r.id: r.status for r in results}
        assert statuses["performance_memory"] == ValidationStatus.PASS
        assert statuses["performance_cpu"] == ValidationStatus.PASS
        assert statuses["performance_network"] == ValidationStatus.PASS

    @pytest.mark.asyncio
    async def test_realtime_over_connection_limit(self):
        engine = PerformanceAnalysisEngine(PerformanceConfig(max_websocket_connections=100))
        [_, realtime] = await engine.analyze_scalability(150)
        assert realtime.status == ValidationStatus.FAIL
        assert realtime.severity == Severity.HIGH
