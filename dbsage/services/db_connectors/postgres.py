"""
PostgreSQL Connector
====================

Reads the pg_stat_statements extension and the pg_stat_user_* views over
pg8000. Timings from pg_stat_statements are already in milliseconds.
"""

import logging
import re
from typing import Any, Dict, List, Tuple

import pg8000.dbapi
from sqlalchemy import text
from sqlalchemy.engine import Connection as SAConnection

from dbsage.config import settings
from dbsage.core.errors import PartialCapabilityError
from dbsage.models.schemas import QueryPlan
from dbsage.services.db_connectors.base import (
    BaseDbConnector,
    expanding_hashes,
    load_plan_document,
)

logger = logging.getLogger(__name__)

# Normalized statements carry $1, $2 ... in place of literals
_PARAM_MARKER = re.compile(r"\$\d+")

_EXTENSION_SQL = "SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements'"

_QUERY_STATS_SQL = """
    SELECT
        query,
        md5(query) AS query_hash,
        calls,
        mean_exec_time,
        total_exec_time
    FROM pg_stat_statements
    WHERE dbid = (SELECT oid FROM pg_database WHERE datname = current_database())
      AND query NOT LIKE '%pg_stat_statements%'
    ORDER BY total_exec_time DESC
    LIMIT 1000
"""

_SCHEMA_SQL = """
    SELECT
        c.table_name,
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.ordinal_position
    FROM information_schema.columns c
    JOIN information_schema.tables t
      ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema = 'public'
      AND t.table_type = 'BASE TABLE'
    ORDER BY c.table_name, c.ordinal_position
"""

_INDEX_USAGE_SQL = """
    SELECT
        relname AS table_name,
        indexrelname AS index_name,
        idx_scan,
        idx_tup_read,
        idx_tup_fetch
    FROM pg_stat_user_indexes
    WHERE schemaname = 'public'
    ORDER BY idx_scan DESC
"""

_TABLE_ACCESS_SQL = """
    SELECT
        relname AS table_name,
        seq_scan + COALESCE(idx_scan, 0) AS access_count,
        GREATEST(last_analyze, last_autoanalyze) AS last_accessed_at
    FROM pg_stat_user_tables
    WHERE schemaname = 'public'
    ORDER BY access_count DESC
"""

_PLAN_LOOKUP_SQL = """
    SELECT md5(query) AS query_hash, query
    FROM pg_stat_statements
    WHERE md5(query) IN :hashes
    LIMIT 50
"""


class PostgresConnector(BaseDbConnector):
    SOURCE = "pg_stat_statements"
    DIALECT = "postgres"
    DRIVER_URL = "postgresql+pg8000://"
    POOL_SIZE = 5

    def _dbapi_connect(self, sock):
        return pg8000.dbapi.connect(
            user=self.target.username,
            password=self.target.password,
            database=self.target.database,
            host=self.target.host,
            port=self.target.port,
            sock=sock,
            timeout=settings.connector_connect_timeout_s,
            application_name="dbsage",
        )

    def _session_setup_statements(self) -> List[str]:
        return [
            "SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY",
            f"SET statement_timeout = {int(settings.connector_statement_timeout_ms)}",
        ]

    def _require_monitoring(self, conn: SAConnection) -> None:
        if conn.execute(text(_EXTENSION_SQL)).first() is None:
            raise PartialCapabilityError(detail="pg_stat_statements extension is not installed")

    def fetch_query_stats(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        return self._fetch_monitoring("query stats", _QUERY_STATS_SQL, None, via_tunnel)

    def fetch_schema(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        with self._session(via_tunnel) as conn:
            return self._rows(conn, _SCHEMA_SQL)

    def fetch_index_usage(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        # pg_stat_user_indexes is built in; only permissions can hide it
        return self._fetch_monitoring("index usage", _INDEX_USAGE_SQL, None, via_tunnel, check_source=False)

    def fetch_table_access_patterns(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        return self._fetch_monitoring("table access", _TABLE_ACCESS_SQL, None, via_tunnel, check_source=False)

    def _lookup_statements(self, conn: SAConnection, hashes: List[str]) -> List[Tuple[str, str]]:
        rows = conn.execute(expanding_hashes(_PLAN_LOOKUP_SQL), {"hashes": hashes}).mappings()
        return [(row["query_hash"], row["query"]) for row in rows]

    def _explain(self, conn: SAConnection, sql: str) -> QueryPlan:
        if _PARAM_MARKER.search(sql):
            prefix = "EXPLAIN (GENERIC_PLAN, FORMAT JSON) "
        else:
            prefix = "EXPLAIN (FORMAT JSON) "
        raw = conn.exec_driver_sql(prefix + sql).scalar()
        document = load_plan_document(raw)
        return QueryPlan(plan=document, cost_estimate=extract_cost(document))


def extract_cost(document: Any):
    """Total Cost of the top plan node, or None."""
    if isinstance(document, list) and document:
        top = document[0]
        if isinstance(top, dict):
            cost = (top.get("Plan") or {}).get("Total Cost")
            if cost is not None:
                return float(cost)
    return None
