"""
BLE Validation — Performance Analysis Engine

Capacity and resource estimates for the attendance system:

  analyze_scalability              Erlang-C model of the connection pool,
                                   realtime subscription load, measured
                                   capacity from the load simulation
  estimate_resource_usage          device battery, memory, CPU, network
  identify_bottlenecks             native, bridge, database, realtime layers
  validate_performance_requirements  estimates vs configured thresholds

Figures that cannot be measured without devices are documented estimates;
each finding's details record which inputs it used.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from blevalidation.config import ConcurrencyConfig, PerformanceConfig
from blevalidation.systems.validation.database.concurrency import SimulationMetrics
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

# Estimated execution time of each backend call, in milliseconds
QUERY_ESTIMATES_MS: dict[str, float] = {
    "create_session_secure": 150.0,
    "add_attendance_secure": 120.0,
    "resolve_session": 80.0,
    "realtime_subscription": 200.0,
}
# Connection time held by one member check-in (resolve + attendance)
CHECK_IN_SERVICE_MS = QUERY_ESTIMATES_MS["resolve_session"] + QUERY_ESTIMATES_MS["add_attendance_secure"]

REALTIME_MESSAGES_PER_USER = 2
SUBSCRIPTION_MEMORY_KB = 100.0
SUBSCRIPTION_MEMORY_LIMIT_MB = 50.0

# Share of the limit above which a layer is reported as near saturation
_NEAR_LIMIT = 0.8


@dataclass(frozen=True)
class LatencyFactor:
    name: str
    latency_ms: float
    limit_ms: float


NATIVE_LATENCIES: tuple[LatencyFactor, ...] = (
    LatencyFactor("iOS scan start", 300.0, 500.0),
    LatencyFactor("iOS broadcast start", 250.0, 400.0),
    LatencyFactor("Android scan start", 400.0, 600.0),
    LatencyFactor("Android permission check", 150.0, 300.0),
)
BRIDGE_LATENCIES: tuple[LatencyFactor, ...] = (
    LatencyFactor("BLE state update", 50.0, 100.0),
    LatencyFactor("Permission request", 80.0, 150.0),
    LatencyFactor("Payload serialization", 30.0, 100.0),
)

# Battery drain weights (percent of BLE drain); scaled by 0.1 into %/h
BATTERY_FACTORS: dict[str, float] = {
    "ble_scanning": 15.0,
    "ble_broadcasting": 10.0,
    "location_services": 8.0,
    "database_operations": 5.0,
    "realtime_subscriptions": 7.0,
    "background_processing": 3.0,
}
BATTERY_BASELINE_PCT_PER_HOUR = 2.0

MEMORY_BASELINE_MB = 25.0
NATIVE_MEMORY_MB: dict[str, float] = {"ios_broadcaster": 3.0, "android_manager": 4.0, "shared_buffers": 2.0}
REACT_MEMORY_MB: dict[str, float] = {
    "ble_context_state": 2.0,
    "attendance_cache": 5.0,
    "event_listeners": 1.0,
    "component_overhead": 3.0,
}

CPU_BASELINE_PCT = 5.0
CPU_SCANNING_PCT = 8.0
CPU_BROADCASTING_PCT = 5.0
CPU_PEAK_FACTOR = 1.5

NETWORK_DATABASE_KBPS: dict[str, float] = {"sessions": 50.0, "attendance": 30.0, "sync": 20.0}
NETWORK_REALTIME_KBPS: dict[str, float] = {"websocket": 10.0, "live_updates": 40.0, "notifications": 15.0}


# ── Queueing model ───────────────────────────────────────────────────────────


def erlang_c(servers: int, offered_load: float) -> float:
    """Probability an arrival waits in an M/M/c queue (1.0 when saturated)."""
    if servers <= 0 or offered_load >= servers:
        return 1.0
    if offered_load <= 0:
        return 0.0
    blocking = 1.0
    for k in range(1, servers + 1):
        blocking = offered_load * blocking / (k + offered_load * blocking)
    rho = offered_load / servers
    return blocking / (1 - rho * (1 - blocking))


@dataclass(frozen=True)
class PoolPrediction:
    users: int
    arrival_rate: float
    utilization: float
    wait_probability: float
    p95_response_ms: float

    @property
    def saturated(self) -> bool:
        return self.utilization >= 1.0


def predict_pool(users: int, concurrency: ConcurrencyConfig, service_ms: float = CHECK_IN_SERVICE_MS) -> PoolPrediction:
    """
    Check-ins arrive uniformly over the arrival window (repeat taps
    included) and each holds one pooled connection for ``service_ms``.
    """
    servers = concurrency.connection_pool_size
    window_s = max(concurrency.arrival_window_ms, 1.0) / 1000
    arrival_rate = users * concurrency.operations_per_user * (1 + concurrency.duplicate_submission_rate) / window_s
    service_rate = 1000 / service_ms
    offered = arrival_rate / service_rate
    utilization = offered / servers if servers else math.inf
    wait_probability = erlang_c(servers, offered)

    if utilization >= 1.0:
        p95 = math.inf
    else:
        drain = servers * service_rate - arrival_rate
        # P(W > t) = C * exp(-drain * t)
        p95_wait_s = math.log(wait_probability / 0.05) / drain if wait_probability > 0.05 else 0.0
        p95 = service_ms + p95_wait_s * 1000
    return PoolPrediction(users, arrival_rate, utilization, wait_probability, p95)


def supported_users(concurrency: ConcurrencyConfig, ceiling: int) -> int:
    """Largest user count whose predicted p95 stays within the latency bound."""
    best = 0
    for users in range(1, ceiling + 1):
        prediction = predict_pool(users, concurrency)
        if prediction.saturated or prediction.p95_response_ms > concurrency.p95_latency_bound_ms:
            break
        best = users
    return best


# ── Engine ───────────────────────────────────────────────────────────────────


class PerformanceAnalysisEngine(BaseAnalysisEngine):
    engine_name = "PerformanceAnalysisEngine"
    version = "1.0.0"
    phase_id = "performance_analysis"
    phase_name = "Performance Analysis"
    category = ValidationCategory.PERFORMANCE
    total_steps = 4

    def __init__(
        self,
        performance: PerformanceConfig | None = None,
        concurrency: ConcurrencyConfig | None = None,
        target_users: int = 150,
        measured_metrics: Callable[[], list[SimulationMetrics]] | None = None,
    ) -> None:
        super().__init__()
        self._config = performance or PerformanceConfig()
        self._concurrency = concurrency or ConcurrencyConfig()
        self._target = target_users
        self._measured_metrics = measured_metrics
        self._measured: list[SimulationMetrics] = []
        self._log = logger.bind(system="validation.performance")

    def _reset_state(self) -> None:
        self._measured = []

    async def _setup(self) -> None:
        if self._concurrency.connection_pool_size <= 0:
            raise EngineInitError(self.engine_name, "connection_pool_size must be positive")
        if self._target <= 0:
            raise EngineInitError(self.engine_name, "target user count must be positive")
        if self._measured_metrics is not None:
            self._measured = sorted(self._measured_metrics(), key=lambda m: m.total_users)
        self._log.info("performance_inputs_ready", measured_steps=len(self._measured))

    async def _run(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []

        self._progress.update("Analyzing scalability")
        results.extend(await self.analyze_scalability(self._target))
        self._progress.update("Scalability analyzed", completed=True)

        self._progress.update("Estimating resource usage")
        results.extend(await self.estimate_resource_usage())
        self._progress.update("Resource usage estimated", completed=True)

        self._progress.update("Identifying bottlenecks")
        results.extend(await self.identify_bottlenecks())
        self._progress.update("Bottlenecks identified", completed=True)

        self._progress.update("Validating performance requirements")
        results.extend(await self.validate_performance_requirements())
        self._progress.update("Performance requirements validated", completed=True)
        return results

    def _metric_evidence(self, location: str, details: str) -> list[Evidence]:
        return [Evidence(type=EvidenceType.PERFORMANCE_METRIC, location=location, details=details)]

    def _measured_capacity(self) -> int | None:
        if not self._measured:
            return None
        cfg = self._concurrency
        capacity = 0
        for m in self._measured:
            if m.success_rate >= cfg.min_success_rate and m.p95_response_ms <= cfg.p95_latency_bound_ms:
                capacity = m.total_users
            else:
                break
        return capacity

    # ── Steps ────────────────────────────────────────────────────────────────

    async def analyze_scalability(self, max_users: int) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        cfg = self._concurrency

        prediction = predict_pool(max_users, cfg)
        capacity = supported_users(cfg, ceiling=max(max_users * 4, 1))
        details = {
            "user_count": max_users,
            "supported_users": capacity,
            "pool_size": cfg.connection_pool_size,
            "utilization": round(prediction.utilization, 3),
            "wait_probability": round(prediction.wait_probability, 4),
            "predicted_p95_ms": None if math.isinf(prediction.p95_response_ms)
            else round(prediction.p95_response_ms, 1),
            "service_ms": CHECK_IN_SERVICE_MS,
        }
        results.append(self._finding(
            "performance_db_capacity",
            "Database connection pool capacity",
            passed=capacity >= max_users,
            message=(
                f"Pool of {cfg.connection_pool_size} supports about {capacity} concurrent "
                f"check-ins within {cfg.p95_latency_bound_ms:.0f}ms p95 "
                f"(utilization {prediction.utilization:.0%} at {max_users} users)"
            ),
            severity=Severity.HIGH,
            details=details,
            evidence=self._metric_evidence(
                "queueing_model", f"M/M/{cfg.connection_pool_size} at {prediction.arrival_rate:.1f} check-ins/s",
            ),
            recommendations=[
                "Increase the database connection pool",
                "Widen the check-in arrival window with client-side jitter",
            ],
        ))

        connections = max_users
        messages = max_users * REALTIME_MESSAGES_PER_USER
        memory_mb = max_users * SUBSCRIPTION_MEMORY_KB / 1024
        over = connections > self._config.max_websocket_connections or messages > self._config.max_messages_per_second
        results.append(self._finding(
            "performance_realtime_capacity",
            "Realtime subscription capacity",
            passed=not over and memory_mb <= SUBSCRIPTION_MEMORY_LIMIT_MB,
            conditional=not over,
            message=(
                f"{connections} connections (limit {self._config.max_websocket_connections}), "
                f"{messages} msgs/s (limit {self._config.max_messages_per_second}), "
                f"{memory_mb:.1f} MB subscription memory"
            ),
            severity=Severity.HIGH if over else Severity.MEDIUM,
            details={
                "user_count": max_users,
                "connections": connections,
                "messages_per_second": messages,
                "subscription_memory_mb": round(memory_mb, 2),
            },
            recommendations=["Share one realtime channel per session instead of per member"],
        ))

        measured = self._measured_capacity()
        if measured is not None:
            results.append(self._finding(
                "performance_measured_capacity",
                "Measured concurrent capacity",
                passed=measured >= max_users,
                conditional=True,
                message=(
                    f"Load simulation stayed within bounds up to {measured} users "
                    f"(target {max_users})"
                ),
                severity=Severity.MEDIUM,
                details={
                    "user_count": max_users,
                    "measured_capacity": measured,
                    "steps": [m.total_users for m in self._measured],
                },
                recommendations=["Investigate the first failing concurrency step"],
            ))

        self._log.info(
            "scalability_analyzed",
            target=max_users,
            modelled_capacity=capacity,
            measured_capacity=measured,
        )
        return results

    async def estimate_resource_usage(self) -> list[ValidationResult]:
        cfg = self._config
        results: list[ValidationResult] = []

        battery = BATTERY_BASELINE_PCT_PER_HOUR + sum(BATTERY_FACTORS.values()) * 0.1
        results.append(self._threshold_finding(
            "performance_battery", "Battery drain", battery,
            cfg.battery_drain_max_pct_per_hour, "%/h",
            {"factors": BATTERY_FACTORS},
            "Scan in duty cycles instead of continuously",
        ))

        native = sum(NATIVE_MEMORY_MB.values())
        react = sum(REACT_MEMORY_MB.values())
        peak_memory = MEMORY_BASELINE_MB + native + react
        results.append(self._threshold_finding(
            "performance_memory", "Peak memory", peak_memory,
            cfg.memory_peak_max_mb, "MB",
            {
                "average_mb": round(MEMORY_BASELINE_MB + native * 0.7 + react * 0.8, 1),
                "native_mb": native,
                "react_mb": react,
            },
            "Bound the attendance cache and release native buffers when idle",
        ))

        cpu_avg = CPU_BASELINE_PCT + CPU_SCANNING_PCT + CPU_BROADCASTING_PCT
        cpu_peak = cpu_avg * CPU_PEAK_FACTOR
        cpu_over = cpu_avg > cfg.cpu_average_max_pct or cpu_peak > cfg.cpu_peak_max_pct
        results.append(self._finding(
            "performance_cpu",
            "CPU utilization",
            passed=not cpu_over,
            message=f"CPU average {cpu_avg:.0f}%, peak {cpu_peak:.0f}%",
            severity=Severity.MEDIUM,
            details={
                "average_pct": cpu_avg,
                "peak_pct": cpu_peak,
                "average_limit_pct": cfg.cpu_average_max_pct,
                "peak_limit_pct": cfg.cpu_peak_max_pct,
            },
            recommendations=["Lower scan frequency while the app is backgrounded"],
        ))

        image_kbps = 500 * 0.3 * 2 * 8 / 60  # 500 KB images, 30 % compression, 2 uploads/min
        network = sum(NETWORK_DATABASE_KBPS.values()) + sum(NETWORK_REALTIME_KBPS.values()) + image_kbps
        results.append(self._threshold_finding(
            "performance_network", "Network bandwidth", network,
            cfg.network_max_kbps, "Kbps",
            {"database": NETWORK_DATABASE_KBPS, "realtime": NETWORK_REALTIME_KBPS,
             "image_uploads": round(image_kbps, 1)},
            "Batch attendance writes and throttle live updates",
        ))
        return results

    def _threshold_finding(
        self,
        id: str,
        name: str,
        value: float,
        limit: float,
        unit: str,
        extra: dict[str, object],
        recommendation: str,
    ) -> ValidationResult:
        near = value > limit * _NEAR_LIMIT
        return self._finding(
            id, name,
            passed=value <= limit and not near,
            conditional=value <= limit,
            message=f"{name} estimated at {value:.1f} {unit} (limit {limit:.0f} {unit})",
            severity=Severity.MEDIUM if value > limit else Severity.LOW,
            details={"estimate": round(value, 2), "limit": limit, "unit": unit, **extra},
            evidence=self._metric_evidence("resource_model", f"{value:.1f} {unit} vs {limit:.0f} {unit}"),
            recommendations=[recommendation],
        )

    async def identify_bottlenecks(self) -> list[ValidationResult]:
        results = [
            self._latency_layer("bottleneck_native", "Native module latency", NATIVE_LATENCIES,
                                ValidationCategory.NATIVE),
            self._latency_layer("bottleneck_bridge", "Bridge layer latency", BRIDGE_LATENCIES,
                                ValidationCategory.BRIDGE),
        ]

        prediction = predict_pool(self._target, self._concurrency)
        saturated = prediction.utilization >= 1.0
        results.append(self._finding(
            "bottleneck_database",
            "Database pool saturation",
            passed=prediction.utilization <= _NEAR_LIMIT,
            conditional=not saturated,
            message=(
                f"Connection pool utilization {prediction.utilization:.0%} at "
                f"{self._target} users; {prediction.wait_probability:.0%} of check-ins queue"
            ),
            severity=Severity.HIGH if saturated else Severity.LOW,
            details={
                "user_count": self._target,
                "utilization": round(prediction.utilization, 3),
                "wait_probability": round(prediction.wait_probability, 4),
            },
            recommendations=["Increase pool size or combine resolve and check-in into one call"],
        ))

        connection_share = self._target / self._config.max_websocket_connections
        results.append(self._finding(
            "bottleneck_realtime",
            "Realtime connection headroom",
            passed=connection_share <= _NEAR_LIMIT,
            conditional=connection_share <= 1.0,
            message=(
                f"{self._target} of {self._config.max_websocket_connections} realtime "
                f"connections in use ({connection_share:.0%})"
            ),
            severity=Severity.HIGH if connection_share > 1.0 else Severity.LOW,
            details={"user_count": self._target, "connection_share": round(connection_share, 3)},
            recommendations=["Multiplex realtime updates over fewer channels"],
        ))
        return results

    def _latency_layer(
        self,
        id: str,
        name: str,
        factors: tuple[LatencyFactor, ...],
        category: ValidationCategory,
    ) -> ValidationResult:
        over = [f for f in factors if f.latency_ms > f.limit_ms]
        near = [f for f in factors if f.limit_ms * _NEAR_LIMIT < f.latency_ms <= f.limit_ms]
        offenders = over or near
        return self._finding(
            id, name,
            passed=not offenders,
            conditional=not over,
            message=(
                f"{name}: all {len(factors)} operations within limits"
                if not offenders
                else f"{name}: " + ", ".join(
                    f"{f.name} {f.latency_ms:.0f}ms (limit {f.limit_ms:.0f}ms)" for f in offenders
                )
            ),
            severity=Severity.HIGH if over else Severity.LOW,
            category=category,
            details={f.name: {"latency_ms": f.latency_ms, "limit_ms": f.limit_ms} for f in factors},
            recommendations=["Start scanning/broadcasting ahead of the check-in window"],
        )

    async def validate_performance_requirements(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        limit = self._config.max_query_latency_ms
        slow = {name: ms for name, ms in QUERY_ESTIMATES_MS.items() if ms > limit}
        results.append(self._finding(
            "performance_query_latency",
            "Database query latency",
            passed=not slow,
            message=(
                f"All query estimates within {limit:.0f}ms"
                if not slow
                else "Slow queries: " + ", ".join(f"{n} {ms:.0f}ms" for n, ms in slow.items())
            ),
            severity=Severity.MEDIUM,
            details={"estimates_ms": QUERY_ESTIMATES_MS, "limit_ms": limit},
            recommendations=["Add indexes on sessions(token) and attendance(member_id, event_id)"],
        ))

        modelled = supported_users(self._concurrency, ceiling=self._target)
        measured = self._measured_capacity()
        meets_model = modelled >= self._target
        meets_measured = measured is None or measured >= self._target
        results.append(self._finding(
            "performance_concurrent_user_requirement",
            f"{self._target} concurrent user requirement",
            passed=meets_model and meets_measured,
            message=(
                f"{self._target} concurrent users: modelled capacity {modelled}, "
                f"measured capacity {'n/a' if measured is None else measured}"
            ),
            severity=Severity.CRITICAL,
            details={
                "user_count": self._target,
                "modelled_capacity": modelled,
                "measured_capacity": measured,
            },
            recommendations=[
                f"Raise capacity to {self._target} concurrent check-ins before deployment",
            ],
        ))
        return results
