"""
Telemetry Models
================

Reconciled telemetry for a monitored connection.

Upserted by natural key (one row per key, counters updated in place):
  - Query               (connection_id, query_hash)
  - TableAccessPattern  (connection_id, table_name)
  - IndexUsage          (connection_id, table_name, index_name)

Append-only, one set per sync batch:
  - QueryStatSample     (query_id, batch_id)
  - SchemaSnapshot      (connection_id, batch_id) -> SchemaTable -> SchemaColumn
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, UniqueConstraint
from sqlmodel import Column, Field, SQLModel, Text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _counter() -> Column:
    return Column(BigInteger, nullable=False, default=0)


class Query(SQLModel, table=True):
    """Latest known statistics for one normalized statement."""

    __tablename__ = "queries"
    __table_args__ = (
        UniqueConstraint("connection_id", "query_hash", name="uq_queries_connection_hash"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: str = Field(foreign_key="connections.id", index=True, max_length=36)
    query_hash: str = Field(max_length=128)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    execution_count: int = Field(default=0, sa_column=_counter())
    avg_execution_time_ms: float = Field(default=0.0)
    total_execution_time_ms: float = Field(default=0.0)
    first_seen_at: datetime = Field(default_factory=_utcnow)
    last_seen_at: datetime = Field(default_factory=_utcnow, index=True)


class QueryStatSample(SQLModel, table=True):
    """Point-in-time copy of a query's counters, one per sync batch."""

    __tablename__ = "query_stat_samples"
    __table_args__ = (
        UniqueConstraint("query_id", "batch_id", name="uq_query_samples_query_batch"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    query_id: int = Field(foreign_key="queries.id", index=True)
    batch_id: str = Field(max_length=64)
    execution_count: int = Field(default=0, sa_column=_counter())
    avg_execution_time_ms: float = Field(default=0.0)
    total_execution_time_ms: float = Field(default=0.0)
    captured_at: datetime = Field(default_factory=_utcnow)


class TableAccessPattern(SQLModel, table=True):
    __tablename__ = "table_access_patterns"
    __table_args__ = (
        UniqueConstraint("connection_id", "table_name", name="uq_table_access_connection_table"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: str = Field(foreign_key="connections.id", index=True, max_length=36)
    table_name: str = Field(max_length=255)
    access_count: int = Field(default=0, sa_column=_counter())
    last_accessed_at: Optional[datetime] = Field(default=None, nullable=True)
    updated_at: datetime = Field(default_factory=_utcnow)


class IndexUsage(SQLModel, table=True):
    __tablename__ = "index_usage"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "table_name", "index_name",
            name="uq_index_usage_connection_table_index",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: str = Field(foreign_key="connections.id", index=True, max_length=36)
    table_name: str = Field(max_length=255)
    index_name: str = Field(max_length=255)
    scans: int = Field(default=0, sa_column=_counter())
    tuples_read: int = Field(default=0, sa_column=_counter())
    tuples_fetched: int = Field(default=0, sa_column=_counter())
    updated_at: datetime = Field(default_factory=_utcnow)


class SchemaSnapshot(SQLModel, table=True):
    __tablename__ = "schema_snapshots"
    __table_args__ = (
        UniqueConstraint("connection_id", "batch_id", name="uq_schema_snapshots_connection_batch"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: str = Field(foreign_key="connections.id", index=True, max_length=36)
    batch_id: str = Field(max_length=64)
    table_count: int = Field(default=0)
    captured_at: datetime = Field(default_factory=_utcnow, index=True)


class SchemaTable(SQLModel, table=True):
    __tablename__ = "schema_tables"

    id: Optional[int] = Field(default=None, primary_key=True)
    snapshot_id: int = Field(foreign_key="schema_snapshots.id", index=True)
    table_name: str = Field(max_length=255)


class SchemaColumn(SQLModel, table=True):
    __tablename__ = "schema_columns"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="schema_tables.id", index=True)
    column_name: str = Field(max_length=255)
    data_type: str = Field(max_length=128)
    is_nullable: bool = Field(default=True)
    ordinal_position: int = Field(default=0)
