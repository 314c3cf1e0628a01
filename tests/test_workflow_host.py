"""
Tests for the trigger surface: accepting and refusing runs, waiting on
outcomes, scheduled syncs, and resuming runs a previous process left behind.
"""

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from dbsage.core.database import get_session_context
from dbsage.models.connection import ConnectionStatus
from dbsage.models.workflow import WorkflowKind, WorkflowRun
from dbsage.services.sync_orchestrator import RECONCILING
from dbsage.services.telemetry_normalizer import build_batch
from dbsage.services.telemetry_store import TelemetryStore
from dbsage.services.workflow_engine import COMPLETED, FAILED, WorkflowRunStore
from dbsage.services.workflow_host import WorkflowHost


class BlockingConnector:
    """Returns empty telemetry, optionally holding the first fetch until released."""

    SOURCE = "pg_stat_statements"

    def __init__(self, gate=None):
        self.gate = gate
        self.tunnel = None

    def fetch_query_stats(self, via_tunnel=False):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return [{"query": "SELECT 1", "query_hash": "h1", "calls": 1, "mean_exec_time": 1.0}]

    def fetch_schema(self, via_tunnel=False):
        return []

    def fetch_index_usage(self, via_tunnel=False):
        return []

    def fetch_table_access_patterns(self, via_tunnel=False):
        return []

    def close(self):
        pass


class FlakyRunStore(WorkflowRunStore):
    """Raises "database is locked" for the first few writes of each kind."""

    def __init__(self, failing_saves=0, failing_finishes=0):
        super().__init__()
        self.failing_saves = failing_saves
        self.failing_finishes = failing_finishes

    def save_progress(self, run_id, state, checkpoint):
        if self.failing_saves:
            self.failing_saves -= 1
            raise RuntimeError("database is locked")
        super().save_progress(run_id, state, checkpoint)

    def finish(self, run_id, state, checkpoint, outcome):
        if self.failing_finishes:
            self.failing_finishes -= 1
            raise RuntimeError("database is locked")
        super().finish(run_id, state, checkpoint, outcome)


class FakeGenerator:
    async def generate(self, context):
        return []


def _host(vault, gate=None, runs=None):
    return WorkflowHost(
        store=TelemetryStore(),
        runs=runs or WorkflowRunStore(),
        vault=vault,
        generator=FakeGenerator(),
        connector_factory=lambda db_type, target, tunnel=None: BlockingConnector(gate),
    )


class TestTriggers:

    @pytest.mark.asyncio
    async def test_unknown_connection_refused(self, vault):
        host = _host(vault)
        result = await host.start_sync("missing")
        assert result.accepted is False
        assert result.run_id is None

        result = await host.start_suggestion_generation("missing")
        assert result.accepted is False

    @pytest.mark.asyncio
    async def test_sync_accepted_and_awaited(self, vault, make_connection):
        conn = make_connection()
        host = _host(vault)

        result = await host.start_sync(conn.id)
        assert result.accepted is True
        assert result.run_id.startswith("sync-")

        outcome = await host.wait_for(result.run_id, timeout=10)
        assert outcome.success is True

        run = await host.get_run(result.run_id)
        assert run.state == COMPLETED
        assert run.connection_id == conn.id

    @pytest.mark.asyncio
    async def test_second_sync_refused_while_running(self, vault, make_connection):
        conn = make_connection()
        gate = threading.Event()
        host = _host(vault, gate=gate)

        first = await host.start_sync(conn.id)
        second = await host.start_sync(conn.id)

        assert first.accepted is True
        assert second.accepted is False
        assert second.run_id == first.run_id

        gate.set()
        await host.wait_for(first.run_id, timeout=10)

        third = await host.start_sync(conn.id)
        assert third.accepted is True
        assert third.run_id != first.run_id
        await host.wait_for(third.run_id, timeout=10)

    @pytest.mark.asyncio
    async def test_suggestion_run(self, vault, make_connection):
        conn = make_connection()
        host = _host(vault)

        result = await host.start_suggestion_generation(conn.id)
        assert result.accepted is True
        assert result.run_id.startswith("suggestions-")

        outcome = await host.wait_for(result.run_id, timeout=10)
        assert outcome.success is True
        assert outcome.suggestions == 0

    @pytest.mark.asyncio
    async def test_wait_timeout_does_not_cancel(self, vault, make_connection):
        conn = make_connection()
        gate = threading.Event()
        host = _host(vault, gate=gate)

        result = await host.start_sync(conn.id)
        with pytest.raises(asyncio.TimeoutError):
            await host.wait_for(result.run_id, timeout=0.05)

        gate.set()
        outcome = await host.wait_for(result.run_id, timeout=10)
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_wait_for_finished_run_reads_store(self, vault, make_connection):
        conn = make_connection()
        host = _host(vault)
        result = await host.start_sync(conn.id)
        await host.wait_for(result.run_id, timeout=10)

        other_host = _host(vault)
        outcome = await other_host.wait_for(result.run_id)
        assert outcome.success is True
        assert await other_host.wait_for("never-existed") is None


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_failed_progress_save_fails_the_run(self, vault, make_connection):
        conn = make_connection()
        host = _host(vault, runs=FlakyRunStore(failing_saves=1))

        first = await host.start_sync(conn.id)
        outcome = await host.wait_for(first.run_id, timeout=10)

        assert outcome.success is False
        assert "database is locked" in outcome.error
        run = await host.get_run(first.run_id)
        assert run.state == FAILED
        assert TelemetryStore().get_connection(conn.id).status == ConnectionStatus.ERROR.value

        second = await host.start_sync(conn.id)
        assert second.accepted is True
        await host.wait_for(second.run_id, timeout=10)

    @pytest.mark.asyncio
    async def test_unrecorded_failure_is_settled_by_host(self, vault, make_connection):
        conn = make_connection()
        host = _host(vault, runs=FlakyRunStore(failing_finishes=2))

        first = await host.start_sync(conn.id)
        outcome = await host.wait_for(first.run_id, timeout=10)

        assert outcome.success is False
        run = await host.get_run(first.run_id)
        assert run.state == FAILED
        assert run.error == outcome.error

        second = await host.start_sync(conn.id)
        assert second.accepted is True
        await host.wait_for(second.run_id, timeout=10)


class TestScheduling:

    @pytest.mark.asyncio
    async def test_schedule_due_syncs(self, vault, make_connection):
        now = datetime.now(timezone.utc)
        due = make_connection(name="due")
        make_connection(name="fresh", last_synced_at=now, polling_interval_minutes=60)
        make_connection(name="errored", status=ConnectionStatus.ERROR.value)
        host = _host(vault)

        started = await host.schedule_due_syncs()

        assert len(started) == 1
        run = await host.get_run(started[0])
        assert run.connection_id == due.id
        await host.wait_for(started[0], timeout=10)

    @pytest.mark.asyncio
    async def test_scheduler_task_and_shutdown(self, vault):
        host = _host(vault)
        task = host.start_scheduler(interval_s=3600)
        assert host.start_scheduler(interval_s=3600) is task

        await asyncio.sleep(0)
        await host.shutdown()
        assert task.cancelled()


class TestResume:

    @pytest.mark.asyncio
    async def test_resumes_incomplete_runs(self, vault, make_connection):
        conn = make_connection()
        runs = WorkflowRunStore()
        batch = build_batch(
            source="pg_stat_statements",
            batch_id="sync-crashed",
            collected_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            query_stats=[{"query": "SELECT 1", "query_hash": "h1", "calls": 1, "mean_exec_time": 1.0}],
        )
        runs.create("sync-crashed", WorkflowKind.SYNC, conn.id, "PENDING")
        runs.save_progress("sync-crashed", RECONCILING, {"batch": batch.model_dump(mode="json")})

        host = _host(vault)
        resumed = await host.resume_incomplete()

        assert resumed == ["sync-crashed"]
        outcome = await host.wait_for("sync-crashed", timeout=10)
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_unreadable_checkpoint_restarts(self, vault, make_connection):
        conn = make_connection()
        runs = WorkflowRunStore()
        run = runs.create("sync-garbled", WorkflowKind.SYNC, conn.id, RECONCILING)

        with get_session_context() as session:
            row = session.get(WorkflowRun, run.id)
            row.checkpoint = "{not json"
            session.add(row)
            session.commit()

        host = _host(vault)
        await host.resume_incomplete()
        outcome = await host.wait_for("sync-garbled", timeout=10)

        assert outcome.success is True
        assert "batch" in json.loads((await host.get_run("sync-garbled")).checkpoint)
