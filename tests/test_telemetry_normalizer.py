"""
Tests for the telemetry normalizer: unit conversion, counter clamping,
field maps for both monitoring sources, and schema grouping.
"""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from dbsage.services.telemetry_normalizer import (
    INT64_MAX,
    build_batch,
    clamp_count,
    field_map_for,
    normalize_index_usage,
    normalize_query_stats,
    normalize_schema,
    normalize_table_access,
    to_milliseconds,
    to_utc,
)

COLLECTED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestScalars:

    def test_clamp_count(self):
        assert clamp_count(42) == 42
        assert clamp_count("17") == 17
        assert clamp_count(None) == 0
        assert clamp_count(-5) == 0
        assert clamp_count("junk") == 0
        assert clamp_count(True) == 0
        assert clamp_count(2**70) == INT64_MAX

    def test_picoseconds_to_ms(self):
        assert to_milliseconds(1_500_000_000, "ps") == pytest.approx(1.5)

    def test_ms_passthrough(self):
        assert to_milliseconds(12.5, "ms") == 12.5

    def test_bad_durations_are_zero(self):
        assert to_milliseconds(None, "ms") == 0.0
        assert to_milliseconds(-3, "ms") == 0.0
        assert to_milliseconds(float("nan"), "ms") == 0.0
        assert to_milliseconds("abc", "ps") == 0.0

    def test_to_utc(self):
        naive = datetime(2026, 1, 1, 8, 30)
        assert to_utc(naive) == datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc)

        offset = datetime(2026, 1, 1, 10, 30, tzinfo=timezone(timedelta(hours=2)))
        assert to_utc(offset) == datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc)

        assert to_utc("2026-01-01T08:30:00") == datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc)
        assert to_utc("yesterday") is None
        assert to_utc(None) is None

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            field_map_for("sqlite_stat1")


class TestQueryStats:

    def test_postgres_rows(self):
        rows = [{
            "query": "SELECT * FROM orders WHERE id = $1",
            "query_hash": "abc123",
            "calls": 10,
            "mean_exec_time": 2.5,
            "total_exec_time": 25.0,
        }]
        [record] = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        assert record.query_hash == "abc123"
        assert record.execution_count == 10
        assert record.avg_execution_time_ms == 2.5
        assert record.total_execution_time_ms == 25.0
        # pg_stat_statements has no first/last seen columns
        assert record.first_seen_at == COLLECTED_AT
        assert record.last_seen_at == COLLECTED_AT

    def test_mysql_rows_convert_picoseconds(self):
        first = datetime(2026, 2, 1, 0, 0)
        last = datetime(2026, 2, 28, 23, 0)
        rows = [{
            "DIGEST_TEXT": "SELECT * FROM `orders` WHERE `id` = ?",
            "DIGEST": "d1g3st",
            "COUNT_STAR": 4,
            "AVG_TIMER_WAIT": 2_000_000_000,
            "SUM_TIMER_WAIT": 8_000_000_000,
            "FIRST_SEEN": first,
            "LAST_SEEN": last,
        }]
        [record] = normalize_query_stats("performance_schema", rows, COLLECTED_AT)
        assert record.query_hash == "d1g3st"
        assert record.avg_execution_time_ms == pytest.approx(2.0)
        assert record.total_execution_time_ms == pytest.approx(8.0)
        assert record.first_seen_at == first.replace(tzinfo=timezone.utc)
        assert record.last_seen_at == last.replace(tzinfo=timezone.utc)

    def test_missing_hash_uses_md5_of_text(self):
        rows = [{"query": "SELECT 1", "calls": 1, "mean_exec_time": 1.0, "total_exec_time": 1.0}]
        [record] = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        assert record.query_hash == hashlib.md5(b"SELECT 1").hexdigest()

    def test_missing_total_derived_from_avg(self):
        rows = [{"query": "SELECT 1", "query_hash": "h", "calls": 3, "mean_exec_time": 2.0}]
        [record] = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        assert record.total_execution_time_ms == pytest.approx(6.0)

    def test_rows_without_text_or_hash_are_dropped(self):
        rows = [{"query": None, "query_hash": None, "calls": 3}, {"query": "   "}]
        assert normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT) == []

    def test_huge_and_negative_counters(self):
        rows = [
            {"query": "SELECT 1", "query_hash": "a", "calls": 2**64, "mean_exec_time": 1.0},
            {"query": "SELECT 2", "query_hash": "b", "calls": -1, "mean_exec_time": 1.0},
        ]
        big, negative = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        assert big.execution_count == INT64_MAX
        assert negative.execution_count == 0

    def test_deterministic(self):
        rows = [{"query": "SELECT 1", "query_hash": "h", "calls": 3, "mean_exec_time": 2.0}]
        first = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        second = normalize_query_stats("pg_stat_statements", rows, COLLECTED_AT)
        assert first == second


class TestSchema:

    def test_groups_columns_by_table_in_order(self):
        rows = [
            {"table_name": "orders", "column_name": "id", "data_type": "integer", "is_nullable": "NO"},
            {"table_name": "orders", "column_name": "note", "data_type": "text", "is_nullable": "YES"},
            {"table_name": "customers", "column_name": "id", "data_type": "bigint", "is_nullable": "NO"},
        ]
        schema = normalize_schema(rows)
        assert [t.name for t in schema.tables] == ["orders", "customers"]
        orders = schema.tables[0]
        assert [(c.name, c.type, c.nullable) for c in orders.columns] == [
            ("id", "integer", False),
            ("note", "text", True),
        ]

    def test_uppercase_keys(self):
        rows = [{"TABLE_NAME": "t", "COLUMN_NAME": "c", "DATA_TYPE": "int", "IS_NULLABLE": "YES"}]
        schema = normalize_schema(rows)
        assert schema.tables[0].columns[0].name == "c"

    def test_empty(self):
        assert normalize_schema([]).tables == []


class TestIndexAndAccess:

    def test_postgres_index_usage(self):
        rows = [{"table_name": "orders", "index_name": "orders_pkey", "idx_scan": 9,
                 "idx_tup_read": 20, "idx_tup_fetch": None}]
        [record] = normalize_index_usage("pg_stat_statements", rows)
        assert (record.table_name, record.index_name, record.scans) == ("orders", "orders_pkey", 9)
        assert record.tuples_read == 20
        assert record.tuples_fetched == 0

    def test_mysql_index_usage_skips_unnamed(self):
        rows = [
            {"OBJECT_NAME": "orders", "INDEX_NAME": "PRIMARY", "COUNT_STAR": 5, "COUNT_READ": 5, "COUNT_FETCH": 5},
            {"OBJECT_NAME": "orders", "INDEX_NAME": None, "COUNT_STAR": 100},
        ]
        records = normalize_index_usage("performance_schema", rows)
        assert [r.index_name for r in records] == ["PRIMARY"]

    def test_table_access(self):
        rows = [{"TABLE_NAME": "orders", "COUNT_STAR": 12, "UPDATE_TIME": datetime(2026, 1, 2)}]
        [record] = normalize_table_access("performance_schema", rows)
        assert record.access_count == 12
        assert record.last_accessed_at == datetime(2026, 1, 2, tzinfo=timezone.utc)

    def test_table_access_without_timestamp(self):
        rows = [{"table_name": "orders", "access_count": 3, "last_accessed_at": None}]
        [record] = normalize_table_access("pg_stat_statements", rows)
        assert record.last_accessed_at is None


class TestBuildBatch:

    def test_batch_carries_id_and_all_lists(self):
        batch = build_batch(
            source="pg_stat_statements",
            batch_id="sync-1",
            collected_at=COLLECTED_AT,
            query_stats=[{"query": "SELECT 1", "query_hash": "h", "calls": 1, "mean_exec_time": 1.0}],
            schema_rows=[{"table_name": "t", "column_name": "c", "data_type": "int", "is_nullable": "NO"}],
            index_usage=[{"table_name": "t", "index_name": "t_pkey", "idx_scan": 1}],
            table_access=[{"table_name": "t", "access_count": 1}],
        )
        assert batch.batch_id == "sync-1"
        assert batch.collected_at == COLLECTED_AT
        assert len(batch.query_stats) == 1
        assert len(batch.schema_info.tables) == 1
        assert len(batch.index_usage) == 1
        assert len(batch.table_access) == 1

    def test_empty_inputs(self):
        batch = build_batch(source="performance_schema", batch_id="b", collected_at=COLLECTED_AT)
        assert batch.query_stats == []
        assert batch.schema_info.tables == []
