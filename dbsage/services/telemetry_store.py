"""
Telemetry Store
===============

Reconciles normalized telemetry batches into the local store and serves the
reads the suggestion pipeline needs.

Reconciliation is one transaction per batch:
  1. deduplicate each list by natural key (last occurrence wins)
  2. upsert Query / IndexUsage / TableAccessPattern rows scoped to the connection
  3. append one SchemaSnapshot for the batch
  4. append one QueryStatSample per query for the batch

Steps 3 and 4 are skipped when the batch id is already recorded, so a
redelivered batch leaves the row set unchanged. Any failure rolls back all
four steps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy import delete
from sqlmodel import Session as DBSession, desc, select

from dbsage.core.database import get_session_context
from dbsage.core.errors import ConnectionNotFoundError
from dbsage.models.connection import Connection, ConnectionStatus
from dbsage.models.schemas import (
    GeneratedSuggestion,
    IndexUsageRecord,
    NormalizedBatch,
    QueryStatRecord,
    TableAccessRecord,
)
from dbsage.models.suggestion import Suggestion, SuggestionStatus
from dbsage.models.telemetry import (
    IndexUsage,
    Query,
    QueryStatSample,
    SchemaColumn,
    SchemaSnapshot,
    SchemaTable,
    TableAccessPattern,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CHUNK = 500


@dataclass
class ReconcileResult:
    queries_inserted: int = 0
    queries_updated: int = 0
    index_rows: int = 0
    table_rows: int = 0
    snapshot_created: bool = False
    samples_added: int = 0


def dedupe_last_wins(records: Iterable[T], key: Callable[[T], object]) -> List[T]:
    """Drop duplicate natural keys; the last occurrence in input order wins.

    The surviving record keeps the position of the key's first occurrence.
    """
    latest: Dict[object, T] = {}
    for record in records:
        latest[key(record)] = record
    return list(latest.values())


def _chunks(items: Sequence[T], size: int = _IN_CHUNK) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelemetryStore:
    """Reconciliation and reads over the local telemetry tables."""

    def __init__(self, session_factory: Callable[[], ContextManager[DBSession]] = get_session_context):
        self._session_factory = session_factory

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, connection_id: str, batch: NormalizedBatch) -> ReconcileResult:
        """Apply one normalized batch atomically."""
        queries = dedupe_last_wins(batch.query_stats, key=lambda r: r.query_hash)
        indexes = dedupe_last_wins(batch.index_usage, key=lambda r: (r.table_name, r.index_name))
        tables = dedupe_last_wins(batch.table_access, key=lambda r: r.table_name)

        result = ReconcileResult()
        with self._session_factory() as session:
            try:
                if session.get(Connection, connection_id) is None:
                    raise ConnectionNotFoundError(
                        detail=f"connection {connection_id} not found",
                        context={"connection_id": connection_id},
                    )
                query_rows = self._upsert_queries(session, connection_id, queries, result)
                result.index_rows = self._upsert_index_usage(session, connection_id, indexes)
                result.table_rows = self._upsert_table_access(session, connection_id, tables)
                result.snapshot_created = self._append_snapshot(session, connection_id, batch)
                result.samples_added = self._append_samples(session, query_rows, batch)
                session.commit()
            except Exception:
                session.rollback()
                logger.error("Reconcile of batch %s rolled back", batch.batch_id)
                raise

        logger.info(
            "Reconciled batch %s: %d new queries, %d updated, %d indexes, %d tables, "
            "snapshot=%s, %d samples",
            batch.batch_id,
            result.queries_inserted,
            result.queries_updated,
            result.index_rows,
            result.table_rows,
            result.snapshot_created,
            result.samples_added,
        )
        return result

    def _upsert_queries(
        self,
        session: DBSession,
        connection_id: str,
        records: List[QueryStatRecord],
        result: ReconcileResult,
    ) -> List[Query]:
        existing: Dict[str, Query] = {}
        hashes = [r.query_hash for r in records]
        for chunk in _chunks(hashes):
            rows = session.exec(
                select(Query).where(Query.connection_id == connection_id, Query.query_hash.in_(chunk))
            ).all()
            existing.update({row.query_hash: row for row in rows})

        touched: List[Query] = []
        for record in records:
            row = existing.get(record.query_hash)
            if row is None:
                row = Query(
                    connection_id=connection_id,
                    query_hash=record.query_hash,
                    query_text=record.query_text,
                    execution_count=record.execution_count,
                    avg_execution_time_ms=record.avg_execution_time_ms,
                    total_execution_time_ms=record.total_execution_time_ms,
                    first_seen_at=record.first_seen_at,
                    last_seen_at=record.last_seen_at,
                )
                result.queries_inserted += 1
            else:
                # first_seen_at is kept from the original insert
                if record.query_text:
                    row.query_text = record.query_text
                row.execution_count = record.execution_count
                row.avg_execution_time_ms = record.avg_execution_time_ms
                row.total_execution_time_ms = record.total_execution_time_ms
                row.last_seen_at = record.last_seen_at
                result.queries_updated += 1
            session.add(row)
            touched.append(row)

        session.flush()
        return touched

    def _upsert_index_usage(
        self, session: DBSession, connection_id: str, records: List[IndexUsageRecord]
    ) -> int:
        existing = {
            (row.table_name, row.index_name): row
            for row in session.exec(select(IndexUsage).where(IndexUsage.connection_id == connection_id)).all()
        }
        now = _utcnow()
        for record in records:
            row = existing.get((record.table_name, record.index_name))
            if row is None:
                row = IndexUsage(
                    connection_id=connection_id,
                    table_name=record.table_name,
                    index_name=record.index_name,
                )
            row.scans = record.scans
            row.tuples_read = record.tuples_read
            row.tuples_fetched = record.tuples_fetched
            row.updated_at = now
            session.add(row)
        return len(records)

    def _upsert_table_access(
        self, session: DBSession, connection_id: str, records: List[TableAccessRecord]
    ) -> int:
        existing = {
            row.table_name: row
            for row in session.exec(
                select(TableAccessPattern).where(TableAccessPattern.connection_id == connection_id)
            ).all()
        }
        now = _utcnow()
        for record in records:
            row = existing.get(record.table_name)
            if row is None:
                row = TableAccessPattern(connection_id=connection_id, table_name=record.table_name)
            row.access_count = record.access_count
            row.last_accessed_at = record.last_accessed_at
            row.updated_at = now
            session.add(row)
        return len(records)

    def _append_snapshot(self, session: DBSession, connection_id: str, batch: NormalizedBatch) -> bool:
        already = session.exec(
            select(SchemaSnapshot.id).where(
                SchemaSnapshot.connection_id == connection_id,
                SchemaSnapshot.batch_id == batch.batch_id,
            )
        ).first()
        if already is not None:
            logger.debug("Snapshot for batch %s already recorded", batch.batch_id)
            return False

        snapshot = SchemaSnapshot(
            connection_id=connection_id,
            batch_id=batch.batch_id,
            table_count=len(batch.schema_info.tables),
            captured_at=batch.collected_at,
        )
        session.add(snapshot)
        session.flush()

        for table in batch.schema_info.tables:
            table_row = SchemaTable(snapshot_id=snapshot.id, table_name=table.name)
            session.add(table_row)
            session.flush()
            for position, column in enumerate(table.columns, start=1):
                session.add(
                    SchemaColumn(
                        table_id=table_row.id,
                        column_name=column.name,
                        data_type=column.type,
                        is_nullable=column.nullable,
                        ordinal_position=position,
                    )
                )
        return True

    def _append_samples(self, session: DBSession, queries: List[Query], batch: NormalizedBatch) -> int:
        ids = [q.id for q in queries]
        recorded = set()
        for chunk in _chunks(ids):
            recorded.update(
                session.exec(
                    select(QueryStatSample.query_id).where(
                        QueryStatSample.batch_id == batch.batch_id,
                        QueryStatSample.query_id.in_(chunk),
                    )
                ).all()
            )

        added = 0
        for query in queries:
            if query.id in recorded:
                continue
            session.add(
                QueryStatSample(
                    query_id=query.id,
                    batch_id=batch.batch_id,
                    execution_count=query.execution_count,
                    avg_execution_time_ms=query.avg_execution_time_ms,
                    total_execution_time_ms=query.total_execution_time_ms,
                    captured_at=batch.collected_at,
                )
            )
            added += 1
        return added

    # =========================================================================
    # Connections
    # =========================================================================

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._session_factory() as session:
            return session.get(Connection, connection_id)

    def require_connection(self, connection_id: str) -> Connection:
        connection = self.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(
                detail=f"connection {connection_id} not found",
                context={"connection_id": connection_id},
            )
        return connection

    def set_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        use_tunnel: Optional[bool] = None,
    ) -> Connection:
        with self._session_factory() as session:
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(
                    detail=f"connection {connection_id} not found",
                    context={"connection_id": connection_id},
                )
            connection.status = ConnectionStatus(status).value
            if use_tunnel is not None:
                connection.use_tunnel = use_tunnel
            connection.updated_at = _utcnow()
            session.add(connection)
            session.commit()
            session.refresh(connection)
            return connection

    def mark_sync_completed(self, connection_id: str, synced_at: Optional[datetime] = None) -> Connection:
        """status=ACTIVE and last_synced_at=synced_at (now by default)."""
        synced_at = synced_at or _utcnow()
        with self._session_factory() as session:
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(
                    detail=f"connection {connection_id} not found",
                    context={"connection_id": connection_id},
                )
            connection.status = ConnectionStatus.ACTIVE.value
            connection.last_synced_at = synced_at
            connection.updated_at = _utcnow()
            session.add(connection)
            session.commit()
            session.refresh(connection)
            return connection

    def connections_due_for_sync(self, now: Optional[datetime] = None) -> List[Connection]:
        """ACTIVE connections never synced, or whose polling interval has elapsed."""
        now = as_utc(now) or _utcnow()
        with self._session_factory() as session:
            active = session.exec(
                select(Connection).where(Connection.status == ConnectionStatus.ACTIVE.value)
            ).all()

        due = []
        for connection in active:
            last = as_utc(connection.last_synced_at)
            if last is None or now - last >= timedelta(minutes=connection.polling_interval_minutes):
                due.append(connection)
        return due

    def delete_connection(self, connection_id: str) -> bool:
        """Delete a connection and everything recorded for it."""
        with self._session_factory() as session:
            try:
                connection = session.get(Connection, connection_id)
                if connection is None:
                    return False

                query_ids = select(Query.id).where(Query.connection_id == connection_id)
                snapshot_ids = select(SchemaSnapshot.id).where(SchemaSnapshot.connection_id == connection_id)
                table_ids = select(SchemaTable.id).where(SchemaTable.snapshot_id.in_(snapshot_ids))

                # Children first: the foreign keys carry no ON DELETE
                session.execute(delete(Suggestion).where(Suggestion.connection_id == connection_id))
                session.execute(delete(QueryStatSample).where(QueryStatSample.query_id.in_(query_ids)))
                session.execute(delete(Query).where(Query.connection_id == connection_id))
                session.execute(delete(SchemaColumn).where(SchemaColumn.table_id.in_(table_ids)))
                session.execute(delete(SchemaTable).where(SchemaTable.snapshot_id.in_(snapshot_ids)))
                session.execute(delete(SchemaSnapshot).where(SchemaSnapshot.connection_id == connection_id))
                session.execute(delete(IndexUsage).where(IndexUsage.connection_id == connection_id))
                session.execute(delete(TableAccessPattern).where(TableAccessPattern.connection_id == connection_id))
                session.delete(connection)
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info("Deleted connection %s and its telemetry", connection_id)
        return True

    # =========================================================================
    # Suggestion pipeline reads
    # =========================================================================

    def fetch_slow_queries(self, connection_id: str, threshold_ms: float, limit: int = 10) -> List[Query]:
        """Queries whose mean time exceeds threshold_ms, most recently seen first."""
        with self._session_factory() as session:
            statement = (
                select(Query)
                .where(Query.connection_id == connection_id, Query.avg_execution_time_ms > threshold_ms)
                .order_by(desc(Query.last_seen_at), Query.id)
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def fetch_index_usage(self, connection_id: str, limit: int = 10) -> List[IndexUsage]:
        with self._session_factory() as session:
            statement = (
                select(IndexUsage)
                .where(IndexUsage.connection_id == connection_id)
                .order_by(desc(IndexUsage.scans), IndexUsage.id)
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def fetch_table_access(self, connection_id: str, limit: int = 10) -> List[TableAccessPattern]:
        with self._session_factory() as session:
            statement = (
                select(TableAccessPattern)
                .where(TableAccessPattern.connection_id == connection_id)
                .order_by(desc(TableAccessPattern.access_count), TableAccessPattern.id)
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def query_ids_for(self, connection_id: str, candidate_ids: Iterable[int]) -> set:
        """The subset of candidate_ids that are queries of this connection."""
        ids = sorted({i for i in candidate_ids if i is not None})
        owned = set()
        with self._session_factory() as session:
            for chunk in _chunks(ids):
                owned.update(
                    session.exec(
                        select(Query.id).where(Query.connection_id == connection_id, Query.id.in_(chunk))
                    ).all()
                )
        return owned

    def latest_snapshot(self, connection_id: str) -> Optional[dict]:
        """Most recent schema snapshot as {batch_id, captured_at, tables: [{name, columns}]}."""
        with self._session_factory() as session:
            snapshot = session.exec(
                select(SchemaSnapshot)
                .where(SchemaSnapshot.connection_id == connection_id)
                .order_by(desc(SchemaSnapshot.captured_at), desc(SchemaSnapshot.id))
                .limit(1)
            ).first()
            if snapshot is None:
                return None

            tables = session.exec(
                select(SchemaTable).where(SchemaTable.snapshot_id == snapshot.id).order_by(SchemaTable.id)
            ).all()
            result_tables = []
            for table in tables:
                columns = session.exec(
                    select(SchemaColumn)
                    .where(SchemaColumn.table_id == table.id)
                    .order_by(SchemaColumn.ordinal_position)
                ).all()
                result_tables.append({
                    "name": table.table_name,
                    "columns": [
                        {"name": c.column_name, "type": c.data_type, "nullable": c.is_nullable}
                        for c in columns
                    ],
                })
            return {
                "batch_id": snapshot.batch_id,
                "captured_at": as_utc(snapshot.captured_at),
                "tables": result_tables,
            }

    # =========================================================================
    # Suggestions
    # =========================================================================

    def save_suggestions(
        self,
        connection_id: str,
        run_id: str,
        suggestions: Sequence[GeneratedSuggestion],
    ) -> List[Suggestion]:
        """Insert one NEW row per suggestion, once per run.

        A repeated call for a run that already saved returns the saved rows.
        """
        with self._session_factory() as session:
            try:
                saved = session.exec(
                    select(Suggestion).where(Suggestion.run_id == run_id).order_by(Suggestion.created_at)
                ).all()
                if saved:
                    logger.info("Suggestions for run %s already saved (%d)", run_id, len(saved))
                    return list(saved)

                rows = []
                now = _utcnow()
                for item in suggestions:
                    row = Suggestion(
                        connection_id=connection_id,
                        run_id=run_id,
                        query_id=item.query_id,
                        suggestion_type=item.suggestion_type.value,
                        priority=item.priority.value,
                        suggestion_text=item.suggestion_text,
                        status=SuggestionStatus.NEW.value,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    rows.append(row)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return rows

    def list_suggestions(
        self,
        connection_id: str,
        status: Optional[SuggestionStatus] = None,
    ) -> List[Suggestion]:
        with self._session_factory() as session:
            statement = select(Suggestion).where(Suggestion.connection_id == connection_id)
            if status is not None:
                statement = statement.where(Suggestion.status == SuggestionStatus(status).value)
            statement = statement.order_by(desc(Suggestion.created_at))
            return list(session.exec(statement).all())

    def update_suggestion_status(self, suggestion_id: str, status: SuggestionStatus) -> Optional[Suggestion]:
        """Tenant review action on a single suggestion."""
        with self._session_factory() as session:
            suggestion = session.get(Suggestion, suggestion_id)
            if suggestion is None:
                return None
            suggestion.status = SuggestionStatus(status).value
            suggestion.updated_at = _utcnow()
            session.add(suggestion)
            session.commit()
            session.refresh(suggestion)
            return suggestion


_store: Optional[TelemetryStore] = None


def get_telemetry_store() -> TelemetryStore:
    """Get the singleton TelemetryStore."""
    global _store
    if _store is None:
        _store = TelemetryStore()
    return _store
