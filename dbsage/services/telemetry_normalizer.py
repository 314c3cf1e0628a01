"""
Telemetry Normalizer
====================

Maps connector-native rows into the canonical telemetry model.

Each monitoring source is described by a SourceFieldMap: which column holds
which canonical field, and what unit its timers use. The functions here are
pure: same rows in, same NormalizedBatch out.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dbsage.models.schemas import (
    ColumnInfo,
    IndexUsageRecord,
    NormalizedBatch,
    QueryStatRecord,
    SchemaInfo,
    TableAccessRecord,
    TableSchema,
)

logger = logging.getLogger(__name__)

INT64_MAX = 2**63 - 1

# Multipliers that turn a source's timer unit into milliseconds
MS_PER_UNIT = {
    "ms": 1.0,
    "us": 1e-3,
    "ns": 1e-6,
    "ps": 1e-9,
}


@dataclass(frozen=True)
class SourceFieldMap:
    """Column names and units for one monitoring source."""

    query_text: str
    query_hash: str
    execution_count: str
    avg_time: str
    total_time: Optional[str]
    first_seen: Optional[str]
    last_seen: Optional[str]
    time_unit: str

    index_table: str
    index_name: str
    index_scans: str
    index_tuples_read: str
    index_tuples_fetched: str

    access_table: str
    access_count: str
    access_last: Optional[str]


SOURCE_FIELD_MAPS: Dict[str, SourceFieldMap] = {
    "pg_stat_statements": SourceFieldMap(
        query_text="query",
        query_hash="query_hash",
        execution_count="calls",
        avg_time="mean_exec_time",
        total_time="total_exec_time",
        first_seen=None,
        last_seen=None,
        time_unit="ms",
        index_table="table_name",
        index_name="index_name",
        index_scans="idx_scan",
        index_tuples_read="idx_tup_read",
        index_tuples_fetched="idx_tup_fetch",
        access_table="table_name",
        access_count="access_count",
        access_last="last_accessed_at",
    ),
    "performance_schema": SourceFieldMap(
        query_text="DIGEST_TEXT",
        query_hash="DIGEST",
        execution_count="COUNT_STAR",
        avg_time="AVG_TIMER_WAIT",
        total_time="SUM_TIMER_WAIT",
        first_seen="FIRST_SEEN",
        last_seen="LAST_SEEN",
        time_unit="ps",
        index_table="OBJECT_NAME",
        index_name="INDEX_NAME",
        index_scans="COUNT_STAR",
        index_tuples_read="COUNT_READ",
        index_tuples_fetched="COUNT_FETCH",
        access_table="TABLE_NAME",
        access_count="COUNT_STAR",
        access_last="UPDATE_TIME",
    ),
}


def field_map_for(source: str) -> SourceFieldMap:
    try:
        return SOURCE_FIELD_MAPS[source]
    except KeyError:
        raise ValueError(f"Unknown telemetry source: {source!r}")


# =============================================================================
# Scalars
# =============================================================================

def clamp_count(value: Any) -> int:
    """Coerce a counter into [0, INT64_MAX]. None, junk and negatives become 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    if number < 0:
        return 0
    return min(number, INT64_MAX)


def to_milliseconds(value: Any, unit: str) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number < 0:  # NaN
        return 0.0
    return number * MS_PER_UNIT[unit]


def to_utc(value: Any) -> Optional[datetime]:
    """Datetimes come back naive from MySQL; treat naive values as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _nullable(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in ("YES", "Y", "TRUE", "1")
    return bool(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


# =============================================================================
# Row mappers
# =============================================================================

def normalize_query_stats(
    source: str,
    rows: Iterable[Mapping[str, Any]],
    collected_at: datetime,
) -> List[QueryStatRecord]:
    fmap = field_map_for(source)
    collected_at = to_utc(collected_at)
    records: List[QueryStatRecord] = []

    for row in rows:
        query_text = _text(row.get(fmap.query_text)).strip()
        query_hash = _text(row.get(fmap.query_hash)).strip()
        if not query_text and not query_hash:
            continue
        if not query_hash:
            query_hash = hashlib.md5(query_text.encode("utf-8")).hexdigest()

        count = clamp_count(row.get(fmap.execution_count))
        avg_ms = to_milliseconds(row.get(fmap.avg_time), fmap.time_unit)
        total_raw = row.get(fmap.total_time) if fmap.total_time else None
        if total_raw is None:
            total_ms = avg_ms * count
        else:
            total_ms = to_milliseconds(total_raw, fmap.time_unit)

        first_seen = to_utc(row.get(fmap.first_seen)) if fmap.first_seen else None
        last_seen = to_utc(row.get(fmap.last_seen)) if fmap.last_seen else None

        records.append(
            QueryStatRecord(
                query_hash=query_hash,
                query_text=query_text,
                execution_count=count,
                avg_execution_time_ms=avg_ms,
                total_execution_time_ms=total_ms,
                first_seen_at=first_seen or collected_at,
                last_seen_at=last_seen or collected_at,
            )
        )
    return records


def normalize_schema(rows: Iterable[Mapping[str, Any]]) -> SchemaInfo:
    """Group one-row-per-column results into tables, keeping input order."""
    tables: Dict[str, TableSchema] = {}
    for row in rows:
        table_name = _text(_get_ci(row, "table_name"))
        if not table_name:
            continue
        table = tables.get(table_name)
        if table is None:
            table = tables[table_name] = TableSchema(name=table_name)
        column_name = _text(_get_ci(row, "column_name"))
        if column_name:
            table.columns.append(
                ColumnInfo(
                    name=column_name,
                    type=_text(_get_ci(row, "data_type")),
                    nullable=_nullable(_get_ci(row, "is_nullable")),
                )
            )
    return SchemaInfo(tables=list(tables.values()))


def normalize_index_usage(source: str, rows: Iterable[Mapping[str, Any]]) -> List[IndexUsageRecord]:
    fmap = field_map_for(source)
    records = []
    for row in rows:
        table_name = _text(row.get(fmap.index_table))
        index_name = _text(row.get(fmap.index_name))
        if not table_name or not index_name:
            continue
        records.append(
            IndexUsageRecord(
                table_name=table_name,
                index_name=index_name,
                scans=clamp_count(row.get(fmap.index_scans)),
                tuples_read=clamp_count(row.get(fmap.index_tuples_read)),
                tuples_fetched=clamp_count(row.get(fmap.index_tuples_fetched)),
            )
        )
    return records


def normalize_table_access(source: str, rows: Iterable[Mapping[str, Any]]) -> List[TableAccessRecord]:
    fmap = field_map_for(source)
    records = []
    for row in rows:
        table_name = _text(row.get(fmap.access_table))
        if not table_name:
            continue
        records.append(
            TableAccessRecord(
                table_name=table_name,
                access_count=clamp_count(row.get(fmap.access_count)),
                last_accessed_at=to_utc(row.get(fmap.access_last)) if fmap.access_last else None,
            )
        )
    return records


def _get_ci(row: Mapping[str, Any], key: str) -> Any:
    """Column lookup tolerant of the upper-case names MySQL returns."""
    if key in row:
        return row[key]
    return row.get(key.upper())


def build_batch(
    source: str,
    batch_id: str,
    collected_at: datetime,
    query_stats: Iterable[Mapping[str, Any]] = (),
    schema_rows: Iterable[Mapping[str, Any]] = (),
    index_usage: Iterable[Mapping[str, Any]] = (),
    table_access: Iterable[Mapping[str, Any]] = (),
) -> NormalizedBatch:
    """Normalize everything one collection pass fetched."""
    batch = NormalizedBatch(
        batch_id=batch_id,
        collected_at=to_utc(collected_at),
        query_stats=normalize_query_stats(source, query_stats, collected_at),
        schema_info=normalize_schema(schema_rows),
        index_usage=normalize_index_usage(source, index_usage),
        table_access=normalize_table_access(source, table_access),
    )
    logger.debug(
        "Normalized batch %s: %d queries, %d tables, %d indexes, %d access rows",
        batch_id,
        len(batch.query_stats),
        len(batch.schema_info.tables),
        len(batch.index_usage),
        len(batch.table_access),
    )
    return batch
