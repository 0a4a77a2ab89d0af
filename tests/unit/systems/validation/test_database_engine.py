"""
Tests for the Database Simulation engine.

Covers:
  - Full phase over hardened migrations passes
  - Missing core functions are critical, missing helpers conditional
  - Schema findings from the migrations join the phase
  - Concurrency grading against the success-rate and p95 bounds
  - The default configuration passing at 150 users
  - Concurrent session creation graded on tokens, minors and pool capacity
  - Data integrity before and after load
  - Metrics survive cleanup
"""

from __future__ import annotations

import pytest

from blevalidation.config import ConcurrencyConfig, SourcePathsConfig
from blevalidation.systems.validation.database import DatabaseSimulationEngine
from blevalidation.systems.validation.database import backend as backend_module
from blevalidation.systems.validation.errors import EngineInitError
from blevalidation.systems.validation.types import (
    Severity,
    ValidationCategory,
    ValidationStatus,
)

SCHEMA = """\
CREATE TABLE organizations (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  slug TEXT NOT NULL UNIQUE
);
CREATE TABLE profiles (
  id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE
);
CREATE TABLE memberships (
  user_id UUID NOT NULL REFERENCES profiles(id),
  org_id UUID NOT NULL REFERENCES organizations(id),
  role TEXT NOT NULL DEFAULT 'member',
  is_active BOOLEAN NOT NULL DEFAULT TRUE,
  PRIMARY KEY (user_id, org_id)
);
CREATE TABLE events (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  org_id UUID NOT NULL REFERENCES organizations(id),
  starts_at TIMESTAMPTZ NOT NULL,
  ends_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE attendance (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  event_id UUID NOT NULL REFERENCES events(id) ON DELETE CASCADE,
  member_id UUID NOT NULL REFERENCES profiles(id),
  org_id UUID NOT NULL REFERENCES organizations(id),
  CONSTRAINT attendance_event_member_key UNIQUE (event_id, member_id)
);
CREATE INDEX idx_attendance_member ON attendance (member_id);
CREATE INDEX idx_events_org ON events (org_id);

ALTER TABLE organizations ENABLE ROW LEVEL SECURITY;
ALTER TABLE profiles ENABLE ROW LEVEL SECURITY;
ALTER TABLE memberships ENABLE ROW LEVEL SECURITY;
ALTER TABLE events ENABLE ROW LEVEL SECURITY;
ALTER TABLE attendance ENABLE ROW LEVEL SECURITY;

CREATE POLICY org_members ON organizations FOR ALL TO authenticated
  USING (id IN (SELECT org_id FROM memberships WHERE user_id = auth.uid()));
CREATE POLICY own_profile ON profiles FOR ALL TO authenticated USING (id = auth.uid());
CREATE POLICY own_memberships ON memberships FOR ALL TO authenticated USING (user_id = auth.uid());
CREATE POLICY org_events ON events FOR ALL TO authenticated
  USING (org_id IN (SELECT org_id FROM memberships WHERE user_id = auth.uid()));
CREATE POLICY org_attendance ON attendance FOR ALL TO authenticated
  USING (org_id IN (SELECT org_id FROM memberships WHERE user_id = auth.uid()));

"""

FUNCTIONS_ONLY = """\
CREATE OR REPLACE FUNCTION create_session_secure(p_org_id UUID)
RETURNS jsonb LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
DECLARE
  v_token TEXT;
BEGIN
  IF p_org_id IS NULL OR LENGTH(TRIM(p_org_id::text)) = 0 THEN
    RETURN jsonb_build_object('error', 'invalid_input');
  END IF;
  IF NOT EXISTS (SELECT 1 FROM memberships WHERE user_id = auth.uid() AND role = 'officer') THEN
    RETURN jsonb_build_object('error', 'not_authorized');
  END IF;
  v_token := encode(gen_random_bytes(9), 'base64');
  WHILE EXISTS (SELECT 1 FROM events WHERE session_token = v_token) LOOP
    v_token := encode(gen_random_bytes(9), 'base64');
  END LOOP;
  RETURN jsonb_build_object('token', v_token);
END;
$$;

CREATE OR REPLACE FUNCTION resolve_session(p_org_code INT, p_minor INT)
RETURNS jsonb LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
BEGIN
  IF p_minor IS NULL OR NOT (p_minor BETWEEN 0 AND 65535) OR TRIM(p_org_code::text) = '' THEN
    RETURN NULL;
  END IF;
  RETURN (SELECT to_jsonb(e) FROM events e WHERE e.org_id = p_org_code AND e.ends_at > NOW());
END;
$$;

CREATE OR REPLACE FUNCTION add_attendance_secure(p_session_token TEXT)
RETURNS jsonb LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
BEGIN
  IF auth.uid() IS NULL OR LENGTH(TRIM(p_session_token)) <> 12 THEN
    RETURN jsonb_build_object('error', 'invalid_input');
  END IF;
  IF NOT EXISTS (SELECT 1 FROM memberships WHERE user_id = auth.uid() AND is_active) THEN
    RETURN jsonb_build_object('error', 'not_member');
  END IF;
  INSERT INTO attendance (member_id) VALUES (auth.uid()) ON CONFLICT DO NOTHING;
  RETURN jsonb_build_object('success', true);
END;
$$;

CREATE FUNCTION get_org_code(p UUID) RETURNS INT LANGUAGE sql AS $$ SELECT 1 $$;
CREATE FUNCTION encode_session_token(p TEXT) RETURNS INT LANGUAGE sql AS $$ SELECT 1 $$;
CREATE FUNCTION validate_token_security(p TEXT) RETURNS BOOLEAN LANGUAGE sql AS $$ SELECT TRUE $$;
"""

MIGRATION = SCHEMA + FUNCTIONS_ONLY


def _make_engine(tmp_path, migration: str | None = MIGRATION, **concurrency):
    sources = SourcePathsConfig(project_root=tmp_path)
    if migration is not None:
        migrations = tmp_path / sources.migrations_dir
        migrations.mkdir(parents=True)
        (migrations / "001_attendance.sql").write_text(migration)
    config = ConcurrencyConfig(**{"user_steps": [10], "seed": 3, **concurrency})
    return DatabaseSimulationEngine(sources, config, max_concurrent_users=20)


# ─── Full phase ──────────────────────────────────────────────────


class TestDatabasePhase:
    @pytest.mark.asyncio
    async def test_hardened_migrations_pass(self, tmp_path):
        engine = _make_engine(tmp_path)
        await engine.initialize()
        phase = await engine.validate()

        assert [r.id for r in phase.results if r.is_issue] == []
        assert phase.status == ValidationStatus.PASS
        ids = {r.id for r in phase.results}
        assert {"concurrency_10_users", "concurrency_20_users"} <= ids
        assert "session_creation_20_officers" in ids
        assert {"schema_table_attendance", "schema_rls_enabled", "schema_foreign_keys"} <= ids
        assert "integrity_uniqueness" in ids
        assert "integrity_lost_updates" in ids
        assert engine.get_progress().percent_complete == 100.0

    @pytest.mark.asyncio
    async def test_missing_migrations_directory(self, tmp_path):
        engine = _make_engine(tmp_path, migration=None)
        with pytest.raises(EngineInitError):
            await engine.initialize()
        assert not engine.initialized

    @pytest.mark.asyncio
    async def test_missing_functions(self, tmp_path):
        engine = _make_engine(tmp_path, migration="-- no functions yet\n")
        await engine.initialize()
        results = await engine.validate_database_functions()
        by_id = {r.id: r for r in results}

        for name in ("create_session_secure", "resolve_session", "add_attendance_secure"):
            assert by_id[f"db_{name}_missing"].severity == Severity.CRITICAL
        assert by_id["db_get_org_code_missing"].status == ValidationStatus.CONDITIONAL
        assert len(engine.get_progress().warnings) == 3

    @pytest.mark.asyncio
    async def test_schema_gaps_reported(self, tmp_path):
        engine = _make_engine(tmp_path, migration=FUNCTIONS_ONLY)
        await engine.initialize()
        results = await engine.validate_schema()
        by_id = {r.id: r for r in results}

        assert by_id["schema_table_attendance"].severity == Severity.CRITICAL
        assert by_id["schema_table_attendance"].status == ValidationStatus.FAIL
        assert len(engine.get_progress().warnings) == 5

    @pytest.mark.asyncio
    async def test_stress_steps_above_ceiling(self, tmp_path):
        engine = _make_engine(tmp_path, user_steps=[10, 50], stress_user_steps=[30, 5])
        assert engine._user_steps() == [10, 20, 30]


# ─── Concurrency and integrity ───────────────────────────────────


class TestConcurrencyGrading:
    @pytest.mark.asyncio
    async def test_pass_records_metrics(self, tmp_path):
        engine = _make_engine(tmp_path)
        [result] = await engine.run_concurrent_operations(10)

        assert result.status == ValidationStatus.PASS
        assert result.category == ValidationCategory.PERFORMANCE
        assert result.details["user_count"] == 10
        assert result.details["target_users"] == 20
        assert result.details["metrics"]["total_users"] == 10
        assert len(engine.metrics) == 1

    @pytest.mark.asyncio
    async def test_low_success_rate_is_critical(self, tmp_path):
        engine = _make_engine(
            tmp_path,
            connection_pool_size=1,
            connection_timeout_ms=10.0,
            arrival_window_ms=100.0,
        )
        [result] = await engine.run_concurrent_operations(50)

        assert result.status == ValidationStatus.FAIL
        assert result.severity == Severity.CRITICAL
        assert result.details["offending_metric"] == "success_rate"
        assert result.evidence[0].location == "concurrency:50"

    @pytest.mark.asyncio
    async def test_p95_over_bound_is_high(self, tmp_path):
        # Two uncontended round trips of 600ms each
        engine = _make_engine(
            tmp_path,
            connection_pool_size=500,
            base_latency_ms=600.0,
            latency_jitter_ms=0.0,
        )
        [result] = await engine.run_concurrent_operations(10)

        assert result.status == ValidationStatus.FAIL
        assert result.severity == Severity.HIGH
        assert result.details["offending_metric"] == "p95_response_ms"
        assert result.details["metrics"]["success_rate"] == 1.0
        assert result.details["metrics"]["p95_response_ms"] == 1200.0

    @pytest.mark.asyncio
    async def test_p95_between_bounds_is_conditional(self, tmp_path):
        engine = _make_engine(
            tmp_path,
            connection_pool_size=500,
            base_latency_ms=350.0,
            latency_jitter_ms=0.0,
        )
        [result] = await engine.run_concurrent_operations(10)

        assert result.status == ValidationStatus.CONDITIONAL
        assert result.severity == Severity.MEDIUM
        assert result.details["metrics"]["p95_response_ms"] == 700.0
        assert "offending_metric" not in result.details

    @pytest.mark.asyncio
    async def test_target_load_passes_with_defaults(self, tmp_path):
        engine = DatabaseSimulationEngine(
            SourcePathsConfig(project_root=tmp_path),
            ConcurrencyConfig(),
            max_concurrent_users=150,
        )
        results = await engine.run_concurrent_operations(150)
        [result] = results

        assert result.id == "concurrency_150_users"
        assert result.status == ValidationStatus.PASS
        metrics = result.details["metrics"]
        assert metrics["success_rate"] == 1.0
        assert metrics["p95_response_ms"] <= 500.0
        assert not [
            r for r in results
            if r.is_issue
            and r.category == ValidationCategory.PERFORMANCE
            and r.severity in (Severity.CRITICAL, Severity.HIGH)
        ]


class TestSessionCreationGrading:
    @pytest.mark.asyncio
    async def test_default_officers_pass(self, tmp_path):
        [result] = await _make_engine(tmp_path).run_concurrent_session_creation(20)

        assert result.id == "session_creation_20_officers"
        assert result.status == ValidationStatus.PASS
        assert result.category == ValidationCategory.DATABASE
        assert result.details["metrics"]["unresolvable_sessions"] == 0

    @pytest.mark.asyncio
    async def test_minor_collisions_are_high(self, tmp_path, monkeypatch):
        monkeypatch.setattr(backend_module, "minor_for_token", lambda token: 42)
        [result] = await _make_engine(tmp_path).run_concurrent_session_creation(8)

        assert result.status == ValidationStatus.FAIL
        assert result.severity == Severity.HIGH
        assert result.details["offending_metric"] == "unresolvable_sessions"
        assert result.evidence[0].location == "session_creation:8"

    @pytest.mark.asyncio
    async def test_reused_tokens_are_critical(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            backend_module.SimulatedBackend, "_generate_token", lambda self: "ABCDEFGHJKLM",
        )
        [result] = await _make_engine(tmp_path).run_concurrent_session_creation(4)

        assert result.severity == Severity.CRITICAL
        assert result.details["offending_metric"] == "duplicate_tokens"

    @pytest.mark.asyncio
    async def test_pool_exhaustion_is_critical(self, tmp_path):
        engine = _make_engine(
            tmp_path,
            connection_pool_size=1,
            connection_timeout_ms=10.0,
            arrival_window_ms=100.0,
        )
        [result] = await engine.run_concurrent_session_creation(50)

        assert result.severity == Severity.CRITICAL
        assert result.category == ValidationCategory.PERFORMANCE
        assert result.details["offending_metric"] == "success_rate"

    @pytest.mark.asyncio
    async def test_crowded_organization_is_conditional(self, tmp_path):
        # 20 live sessions in one org: about 0.29% chance of a shared minor
        engine = _make_engine(
            tmp_path,
            session_organizations=1,
            minor_collision_tolerance=0.001,
        )
        [result] = await engine.run_concurrent_session_creation(20)

        assert result.status == ValidationStatus.CONDITIONAL
        assert result.severity == Severity.MEDIUM
        assert result.details["metrics"]["max_sessions_per_org"] == 20


class TestDataIntegrity:
    @pytest.mark.asyncio
    async def test_without_runs_is_conditional(self, tmp_path):
        [result] = await _make_engine(tmp_path).validate_data_integrity()
        assert result.id == "integrity_no_data"
        assert result.status == ValidationStatus.CONDITIONAL

    @pytest.mark.asyncio
    async def test_holds_after_load(self, tmp_path):
        engine = _make_engine(tmp_path, duplicate_submission_rate=1.0)
        await engine.run_concurrent_operations(30)
        results = await engine.validate_data_integrity()

        assert len(results) == 6
        assert all(r.status == ValidationStatus.PASS for r in results)
        lost = results[-1]
        assert lost.details["lost_updates"] == 0

    @pytest.mark.asyncio
    async def test_metrics_survive_cleanup(self, tmp_path):
        engine = _make_engine(tmp_path)
        await engine.initialize()
        await engine.validate()
        await engine.cleanup()

        assert [m.total_users for m in engine.metrics] == [10, 20]
        [result] = await engine.validate_data_integrity()
        assert result.id == "integrity_no_data"

        await engine.initialize()
        assert engine.metrics == []
