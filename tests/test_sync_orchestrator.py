"""
Tests for the sync workflow: PENDING -> COLLECTING -> RECONCILING ->
COMPLETED, the failure paths and their effect on connection status, and
resuming a run from its last persisted state.
"""

import json
from datetime import datetime, timezone

import pytest
from sqlmodel import select

from dbsage.core.database import get_session_context
from dbsage.core.errors import ConnectivityError
from dbsage.models.connection import ConnectionStatus
from dbsage.models.telemetry import Query, QueryStatSample, SchemaSnapshot
from dbsage.models.workflow import WorkflowKind
from dbsage.services.sync_orchestrator import (
    COLLECTING,
    PENDING,
    RECONCILING,
    SyncOrchestrator,
)
from dbsage.services.telemetry_normalizer import build_batch
from dbsage.services.telemetry_store import TelemetryStore, as_utc
from dbsage.services.workflow_engine import COMPLETED, FAILED, WorkflowRunStore

QUERY_ROWS = [
    {"query": "SELECT * FROM orders WHERE id = $1", "query_hash": "h1", "calls": 12,
     "mean_exec_time": 1500.0, "total_exec_time": 18000.0},
    {"query": "SELECT count(*) FROM customers", "query_hash": "h2", "calls": 2,
     "mean_exec_time": 3.0, "total_exec_time": 6.0},
]
SCHEMA_ROWS = [
    {"table_name": "orders", "column_name": "id", "data_type": "integer", "is_nullable": "NO"},
    {"table_name": "orders", "column_name": "customer_id", "data_type": "integer", "is_nullable": "YES"},
]
INDEX_ROWS = [{"table_name": "orders", "index_name": "orders_pkey", "idx_scan": 40,
               "idx_tup_read": 40, "idx_tup_fetch": 40}]
ACCESS_ROWS = [{"table_name": "orders", "access_count": 77, "last_accessed_at": None}]


class FakeConnector:
    SOURCE = "pg_stat_statements"

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.routes = []
        self.closed = False
        self.tunnel = None

    def _fetch(self, rows, via_tunnel):
        self.routes.append(via_tunnel)
        if self.fail_with is not None:
            raise self.fail_with
        return rows

    def fetch_query_stats(self, via_tunnel=False):
        return self._fetch(QUERY_ROWS, via_tunnel)

    def fetch_schema(self, via_tunnel=False):
        return self._fetch(SCHEMA_ROWS, via_tunnel)

    def fetch_index_usage(self, via_tunnel=False):
        return self._fetch(INDEX_ROWS, via_tunnel)

    def fetch_table_access_patterns(self, via_tunnel=False):
        return self._fetch(ACCESS_ROWS, via_tunnel)

    def close(self):
        self.closed = True


class FakeFactory:
    def __init__(self, connector):
        self.connector = connector
        self.calls = []

    def __call__(self, db_type, target, tunnel=None):
        self.calls.append((db_type, target))
        return self.connector


@pytest.fixture
def runs():
    return WorkflowRunStore()


@pytest.fixture
def store():
    return TelemetryStore()


def _orchestrator(runs, store, vault, connection_id, factory, run_id="sync-test", state=None, checkpoint=None):
    if runs.get(run_id) is None:
        runs.create(run_id, WorkflowKind.SYNC, connection_id, state or PENDING)
    return SyncOrchestrator(
        run_id,
        connection_id,
        runs,
        store=store,
        vault=vault,
        connector_factory=factory,
        state=state,
        checkpoint=checkpoint,
    )


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_completes_and_reconciles(self, runs, store, vault, make_connection):
        conn = make_connection(password="pg-pass")
        connector = FakeConnector()
        factory = FakeFactory(connector)

        outcome = await _orchestrator(runs, store, vault, conn.id, factory).run()

        assert outcome.success is True
        assert outcome.error is None
        assert connector.closed
        [(db_type, target)] = factory.calls
        assert db_type == "POSTGRES"
        assert target.password == "pg-pass"

        with get_session_context() as session:
            queries = session.exec(select(Query).where(Query.connection_id == conn.id)).all()
            [snapshot] = session.exec(select(SchemaSnapshot)).all()
        assert {q.query_hash for q in queries} == {"h1", "h2"}
        assert snapshot.batch_id == "sync-test"
        assert snapshot.table_count == 1

        refreshed = store.get_connection(conn.id)
        assert refreshed.status == ConnectionStatus.ACTIVE.value
        assert refreshed.last_synced_at is not None

        run = runs.get("sync-test")
        assert run.state == COMPLETED
        assert json.loads(run.result)["success"] is True
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_uses_recorded_route(self, runs, store, vault, make_connection):
        conn = make_connection(use_tunnel=True)
        connector = FakeConnector()

        await _orchestrator(runs, store, vault, conn.id, FakeFactory(connector)).run()

        assert connector.routes == [True, True, True, True]

    @pytest.mark.asyncio
    async def test_checkpoint_holds_batch(self, runs, store, vault, make_connection):
        conn = make_connection()
        await _orchestrator(runs, store, vault, conn.id, FakeFactory(FakeConnector())).run()

        checkpoint = json.loads(runs.get("sync-test").checkpoint)
        assert checkpoint["batch"]["batch_id"] == "sync-test"
        assert len(checkpoint["batch"]["query_stats"]) == 2


class TestFailures:

    @pytest.mark.asyncio
    async def test_not_active_leaves_status_alone(self, runs, store, vault, make_connection):
        conn = make_connection(status=ConnectionStatus.INACTIVE.value)
        factory = FakeFactory(FakeConnector())

        outcome = await _orchestrator(runs, store, vault, conn.id, factory).run()

        assert outcome.success is False
        assert outcome.error_code == "DBS-SYNC-001"
        assert factory.calls == []
        assert store.get_connection(conn.id).status == ConnectionStatus.INACTIVE.value
        run = runs.get("sync-test")
        assert run.state == FAILED
        assert json.loads(run.checkpoint)["failed_state"] == PENDING

    @pytest.mark.asyncio
    async def test_missing_connection(self, runs, store, vault):
        outcome = await _orchestrator(runs, store, vault, "no-such-id", FakeFactory(FakeConnector())).run()
        assert outcome.success is False
        assert outcome.error_code == "DBS-SYNC-001"

    @pytest.mark.asyncio
    async def test_unreachable_sets_error(self, runs, store, vault, make_connection):
        conn = make_connection()
        connector = FakeConnector(fail_with=ConnectivityError(detail="connection refused"))

        outcome = await _orchestrator(runs, store, vault, conn.id, FakeFactory(connector)).run()

        assert outcome.success is False
        assert outcome.error_code == "DBS-NET-001"
        assert "connection refused" in outcome.error
        assert connector.closed
        assert store.get_connection(conn.id).status == ConnectionStatus.ERROR.value
        assert json.loads(runs.get("sync-test").checkpoint)["failed_state"] == COLLECTING

    @pytest.mark.asyncio
    async def test_tampered_password_sets_error(self, runs, store, vault, make_connection):
        conn = make_connection(encrypted_password='{"v":1,"iv":"00","tag":"00","ct":"00"}')
        factory = FakeFactory(FakeConnector())

        outcome = await _orchestrator(runs, store, vault, conn.id, factory).run()

        assert outcome.error_code == "DBS-SEC-001"
        assert factory.calls == []
        assert store.get_connection(conn.id).status == ConnectionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, runs, store, vault, make_connection):
        conn = make_connection()
        connector = FakeConnector(fail_with=RuntimeError("driver bug"))

        outcome = await _orchestrator(runs, store, vault, conn.id, FakeFactory(connector)).run()

        assert outcome.success is False
        assert outcome.error_code is None
        assert outcome.error == "driver bug"
        assert store.get_connection(conn.id).status == ConnectionStatus.ERROR.value


class TestResume:

    def _checkpoint(self, run_id):
        batch = build_batch(
            source="pg_stat_statements",
            batch_id=run_id,
            collected_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            query_stats=QUERY_ROWS,
            schema_rows=SCHEMA_ROWS,
        )
        return {"batch": batch.model_dump(mode="json")}

    @pytest.mark.asyncio
    async def test_resume_from_reconciling_skips_collection(self, runs, store, vault, make_connection):
        conn = make_connection()
        factory = FakeFactory(FakeConnector())

        outcome = await _orchestrator(
            runs, store, vault, conn.id, factory,
            run_id="sync-resumed", state=RECONCILING, checkpoint=self._checkpoint("sync-resumed"),
        ).run()

        assert outcome.success is True
        assert factory.calls == []
        assert as_utc(store.get_connection(conn.id).last_synced_at) is not None

    @pytest.mark.asyncio
    async def test_reconciling_twice_does_not_duplicate(self, runs, store, vault, make_connection):
        conn = make_connection()
        checkpoint = self._checkpoint("sync-twice")

        for _ in range(2):
            await _orchestrator(
                runs, store, vault, conn.id, FakeFactory(FakeConnector()),
                run_id="sync-twice", state=RECONCILING, checkpoint=checkpoint,
            ).run()

        with get_session_context() as session:
            assert len(session.exec(select(Query)).all()) == 2
            assert len(session.exec(select(QueryStatSample)).all()) == 2
            assert len(session.exec(select(SchemaSnapshot)).all()) == 1
