"""
MySQL Connector
===============

Reads performance_schema over PyMySQL. Timer columns there are in
picoseconds; they are passed through unconverted for the normalizer.
"""

import logging
from typing import Any, Dict, List, Tuple

import pymysql
from sqlalchemy import text
from sqlalchemy.engine import Connection as SAConnection
from sqlalchemy.exc import DBAPIError, OperationalError

from dbsage.config import settings
from dbsage.core.errors import PartialCapabilityError
from dbsage.models.schemas import QueryPlan
from dbsage.services.db_connectors.base import (
    BaseDbConnector,
    expanding_hashes,
    load_plan_document,
)

logger = logging.getLogger(__name__)

# ER_TABLEACCESS_DENIED_ERROR, ER_COLUMNACCESS_DENIED_ERROR, ER_SPECIFIC_ACCESS_DENIED_ERROR
_ACCESS_DENIED_CODES = frozenset({1142, 1143, 1227})

_QUERY_STATS_SQL = """
    SELECT
        DIGEST_TEXT,
        DIGEST,
        COUNT_STAR,
        AVG_TIMER_WAIT,
        SUM_TIMER_WAIT,
        FIRST_SEEN,
        LAST_SEEN
    FROM performance_schema.events_statements_summary_by_digest
    WHERE SCHEMA_NAME = :db
      AND DIGEST_TEXT IS NOT NULL
      AND DIGEST_TEXT NOT LIKE '%performance_schema%'
    ORDER BY SUM_TIMER_WAIT DESC
    LIMIT 1000
"""

_SCHEMA_SQL = """
    SELECT
        c.TABLE_NAME AS table_name,
        c.COLUMN_NAME AS column_name,
        c.DATA_TYPE AS data_type,
        c.IS_NULLABLE AS is_nullable,
        c.ORDINAL_POSITION AS ordinal_position
    FROM information_schema.COLUMNS c
    JOIN information_schema.TABLES t
      ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
    WHERE c.TABLE_SCHEMA = :db
      AND t.TABLE_TYPE = 'BASE TABLE'
    ORDER BY c.TABLE_NAME, c.ORDINAL_POSITION
"""

_INDEX_USAGE_SQL = """
    SELECT
        OBJECT_NAME,
        INDEX_NAME,
        COUNT_STAR,
        COUNT_READ,
        COUNT_FETCH
    FROM performance_schema.table_io_waits_summary_by_index_usage
    WHERE OBJECT_SCHEMA = :db
      AND INDEX_NAME IS NOT NULL
    ORDER BY COUNT_STAR DESC
"""

_TABLE_ACCESS_SQL = """
    SELECT
        t.TABLE_NAME,
        COALESCE(io.COUNT_STAR, 0) AS COUNT_STAR,
        t.UPDATE_TIME
    FROM information_schema.TABLES t
    LEFT JOIN performance_schema.table_io_waits_summary_by_table io
      ON io.OBJECT_SCHEMA = t.TABLE_SCHEMA AND io.OBJECT_NAME = t.TABLE_NAME
    WHERE t.TABLE_SCHEMA = :db
      AND t.TABLE_TYPE = 'BASE TABLE'
    ORDER BY COUNT_STAR DESC
"""

# DIGEST_TEXT has ? in place of literals; the sample text is explainable
_PLAN_LOOKUP_SQL = """
    SELECT DIGEST, QUERY_SAMPLE_TEXT
    FROM performance_schema.events_statements_summary_by_digest
    WHERE DIGEST IN :hashes
      AND SCHEMA_NAME = :db
      AND QUERY_SAMPLE_TEXT IS NOT NULL
    LIMIT 50
"""


class MySQLConnector(BaseDbConnector):
    SOURCE = "performance_schema"
    DIALECT = "mysql"
    DRIVER_URL = "mysql+pymysql://"
    POOL_SIZE = 10

    def _dbapi_connect(self, sock):
        conn = pymysql.connect(
            host=self.target.host,
            port=self.target.port,
            user=self.target.username,
            password=self.target.password,
            database=self.target.database,
            connect_timeout=settings.connector_connect_timeout_s,
            charset="utf8mb4",
            defer_connect=True,
        )
        conn.connect(sock)
        return conn

    def _session_setup_statements(self) -> List[str]:
        return ["SET SESSION TRANSACTION READ ONLY"]

    def _require_monitoring(self, conn: SAConnection) -> None:
        enabled = conn.execute(text("SELECT @@performance_schema")).scalar()
        if not enabled:
            raise PartialCapabilityError(detail="performance_schema is disabled")

    def _is_capability_error(self, exc: DBAPIError) -> bool:
        if super()._is_capability_error(exc):
            return True
        if isinstance(exc, OperationalError) and exc.orig is not None and exc.orig.args:
            return exc.orig.args[0] in _ACCESS_DENIED_CODES
        return False

    @property
    def _db_params(self) -> Dict[str, Any]:
        return {"db": self.target.database}

    def fetch_query_stats(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        return self._fetch_monitoring("query stats", _QUERY_STATS_SQL, self._db_params, via_tunnel)

    def fetch_schema(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        with self._session(via_tunnel) as conn:
            return self._rows(conn, _SCHEMA_SQL, self._db_params)

    def fetch_index_usage(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        return self._fetch_monitoring("index usage", _INDEX_USAGE_SQL, self._db_params, via_tunnel)

    def fetch_table_access_patterns(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        # information_schema still lists the tables when the io summary is empty
        return self._fetch_monitoring(
            "table access", _TABLE_ACCESS_SQL, self._db_params, via_tunnel, check_source=False
        )

    def _lookup_statements(self, conn: SAConnection, hashes: List[str]) -> List[Tuple[str, str]]:
        rows = conn.execute(
            expanding_hashes(_PLAN_LOOKUP_SQL), {"hashes": hashes, **self._db_params}
        ).mappings()
        return [(row["DIGEST"], row["QUERY_SAMPLE_TEXT"]) for row in rows]

    def _explain(self, conn: SAConnection, sql: str) -> QueryPlan:
        raw = conn.exec_driver_sql("EXPLAIN FORMAT=JSON " + sql).scalar()
        document = load_plan_document(raw)
        return QueryPlan(plan=document, cost_estimate=extract_cost(document))


def extract_cost(document: Any):
    """query_block.cost_info.query_cost, or None."""
    if not isinstance(document, dict):
        return None
    cost = ((document.get("query_block") or {}).get("cost_info") or {}).get("query_cost")
    return float(cost) if cost is not None else None
