"""
Database Connector Base
=======================

Common machinery for the monitored-database connectors: one SQLAlchemy
engine per network route (direct or SOCKS5 tunnel), each with a small
bounded pool, read-only sessions, and the degradation rules shared by every
variant.

Connectors return connector-native row dicts. Mapping them into the
canonical telemetry model is the normalizer's job.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import sqlglot
from sqlalchemy import bindparam, create_engine, event, text
from sqlalchemy.engine import Connection as SAConnection
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, ProgrammingError, SQLAlchemyError
from sqlalchemy.pool import QueuePool
from sqlglot import exp

from dbsage.config import settings
from dbsage.core.errors import ConfigurationError, ConnectivityError, PartialCapabilityError
from dbsage.models.schemas import QueryPlan
from dbsage.services.db_connectors.tunnel import TunnelEndpoint, open_socket

logger = logging.getLogger(__name__)

MAX_PLAN_LOOKUPS = 50
MAX_PLANS_PER_QUERY = 3
POOL_TIMEOUT_S = 30
POOL_RECYCLE_S = 300

ROUTE_DIRECT = "direct"
ROUTE_TUNNEL = "tunnel"

# Statement nodes that must not appear anywhere in an explained query
_WRITE_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Merge,
    exp.Create,
    exp.Drop,
    exp.Alter,
    exp.Command,
    exp.Into,
)


@dataclass
class ConnectionTarget:
    """Where a connector points and who it logs in as."""

    host: str
    port: int
    database: str
    username: str
    password: str = field(repr=False)

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}/{self.database}"


def is_read_only_select(sql: str, dialect: Optional[str] = None) -> bool:
    """True when sql parses as exactly one SELECT with no write clauses."""
    if not sql or not sql.strip():
        return False
    try:
        statements = sqlglot.parse(sql, read=dialect)
    except sqlglot.errors.SqlglotError:
        return False

    statements = [s for s in statements if s is not None]
    if len(statements) != 1:
        return False

    statement = statements[0]
    if not isinstance(statement, exp.Query):
        return False
    return statement.find(*_WRITE_NODES) is None


class BaseDbConnector(ABC):
    """Capability set shared by the Postgres and MySQL connectors.

    Every operation takes ``via_tunnel``: the route is chosen per call, so a
    caller can retry a failed direct attempt through the tunnel without
    building a new connector.
    """

    #: discriminator handed to the normalizer alongside fetched rows
    SOURCE: str = ""
    #: sqlglot dialect used for the read-only check
    DIALECT: str = ""
    DRIVER_URL: str = ""
    POOL_SIZE: int = 5

    def __init__(self, target: ConnectionTarget, tunnel: Optional[TunnelEndpoint] = None):
        self.target = target
        self.tunnel = tunnel
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _dbapi_connect(self, sock):
        """Open a DB-API connection over an already connected socket."""

    @abstractmethod
    def _session_setup_statements(self) -> List[str]:
        """Statements run once on every new pooled connection."""

    @abstractmethod
    def _require_monitoring(self, conn: SAConnection) -> None:
        """Raise PartialCapabilityError when the stats source is unavailable."""

    @abstractmethod
    def _lookup_statements(self, conn: SAConnection, hashes: List[str]) -> List[Tuple[str, str]]:
        """Return (query_hash, statement text) pairs for the given hashes."""

    @abstractmethod
    def _explain(self, conn: SAConnection, sql: str) -> QueryPlan:
        """EXPLAIN one statement and extract its cost estimate."""

    def _is_capability_error(self, exc: DBAPIError) -> bool:
        """Whether a driver error means a view is missing or not permitted."""
        return isinstance(exc, ProgrammingError)

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------

    def _creator(self, via_tunnel: bool):
        tunnel = self.tunnel if via_tunnel else None
        timeout = settings.connector_connect_timeout_s

        def connect():
            sock = open_socket(self.target.host, self.target.port, tunnel=tunnel, timeout=timeout)
            try:
                return self._dbapi_connect(sock)
            except BaseException:
                sock.close()
                raise

        return connect

    def _build_engine(self, via_tunnel: bool) -> Engine:
        engine = create_engine(
            self.DRIVER_URL,
            creator=self._creator(via_tunnel),
            poolclass=QueuePool,
            pool_size=self.POOL_SIZE,
            max_overflow=0,
            pool_timeout=POOL_TIMEOUT_S,
            pool_recycle=POOL_RECYCLE_S,
            pool_pre_ping=True,
        )

        setup = self._session_setup_statements()

        # Read-only enforcement at the session level
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            try:
                for statement in setup:
                    cursor.execute(statement)
            finally:
                cursor.close()
            dbapi_conn.commit()

        return engine

    def _get_engine(self, via_tunnel: bool = False) -> Engine:
        if via_tunnel and self.tunnel is None:
            raise ConfigurationError(detail="tunnel requested but no SOCKS proxy is configured")
        route = ROUTE_TUNNEL if via_tunnel else ROUTE_DIRECT
        with self._lock:
            engine = self._engines.get(route)
            if engine is None:
                engine = self._build_engine(via_tunnel)
                self._engines[route] = engine
            return engine

    @contextmanager
    def _session(self, via_tunnel: bool = False) -> Iterator[SAConnection]:
        """Borrow a pooled connection; it goes back to the pool on every exit path."""
        engine = self._get_engine(via_tunnel)
        route = ROUTE_TUNNEL if via_tunnel else ROUTE_DIRECT
        try:
            conn = engine.connect()
        except (SQLAlchemyError, OSError) as e:
            raise ConnectivityError(
                detail=f"could not reach {self.target.host}:{self.target.port} ({route}): {e}",
                context={"host": self.target.host, "port": self.target.port, "route": route},
            ) from e
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _rows(conn: SAConnection, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        result = conn.execute(text(sql), params or {})
        return [dict(row) for row in result.mappings()]

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    def test_connection(self, via_tunnel: bool = False) -> bool:
        """SELECT 1 on the given route. Never raises."""
        try:
            with self._session(via_tunnel) as conn:
                conn.execute(text("SELECT 1")).scalar()
            return True
        except Exception as e:
            logger.info(
                "Connection test failed for %s (%s): %s",
                self.target.describe(),
                ROUTE_TUNNEL if via_tunnel else ROUTE_DIRECT,
                e,
            )
            self._dispose_route(via_tunnel)
            return False

    def _fetch_monitoring(
        self,
        what: str,
        sql: str,
        params: Optional[Dict[str, Any]],
        via_tunnel: bool,
        check_source: bool = True,
    ) -> List[Dict[str, Any]]:
        """Run a stats query, degrading to [] when the source is unavailable."""
        with self._session(via_tunnel) as conn:
            try:
                if check_source:
                    self._require_monitoring(conn)
                return self._rows(conn, sql, params)
            except PartialCapabilityError as e:
                logger.warning("Skipping %s for %s: %s", what, self.target.describe(), e.detail)
                return []
            except DBAPIError as e:
                if not self._is_capability_error(e):
                    raise
                logger.warning("Skipping %s for %s: %s", what, self.target.describe(), e.orig)
                conn.rollback()
                return []

    @abstractmethod
    def fetch_query_stats(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_schema(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        """One row per column: table_name, column_name, data_type, is_nullable."""

    @abstractmethod
    def fetch_index_usage(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_table_access_patterns(self, via_tunnel: bool = False) -> List[Dict[str, Any]]:
        ...

    def fetch_query_plans(
        self,
        hashes: Optional[Sequence[str]] = None,
        via_tunnel: bool = False,
    ) -> Dict[str, List[QueryPlan]]:
        """Explain up to MAX_PLAN_LOOKUPS statements by hash.

        A statement that is not a read-only SELECT is never explained, and a
        failure to explain one statement only drops that statement.
        """
        if not hashes:
            return {}

        wanted = list(dict.fromkeys(hashes))
        plans: Dict[str, List[QueryPlan]] = {}

        with self._session(via_tunnel) as conn:
            try:
                statements = self._lookup_statements(conn, wanted)[:MAX_PLAN_LOOKUPS]
            except DBAPIError as e:
                if not self._is_capability_error(e):
                    raise
                logger.warning("Plan lookup unavailable for %s: %s", self.target.describe(), e.orig)
                conn.rollback()
                return {}

            for query_hash, sql in statements:
                if len(plans.get(query_hash, [])) >= MAX_PLANS_PER_QUERY:
                    continue
                if not is_read_only_select(sql, dialect=self.DIALECT):
                    logger.debug("Not explaining non-SELECT statement %s", query_hash)
                    continue
                try:
                    plan = self._explain(conn, sql)
                except (DBAPIError, ValueError, KeyError, TypeError, IndexError) as e:
                    logger.debug("EXPLAIN failed for %s: %s", query_hash, e)
                    conn.rollback()
                    continue
                plans.setdefault(query_hash, []).append(plan)

        return plans

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _dispose_route(self, via_tunnel: bool) -> None:
        route = ROUTE_TUNNEL if via_tunnel else ROUTE_DIRECT
        with self._lock:
            engine = self._engines.pop(route, None)
        if engine is not None:
            engine.dispose()

    def close(self) -> None:
        """Dispose every pool this connector opened."""
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


def load_plan_document(raw: Any) -> Any:
    """EXPLAIN ... FORMAT JSON comes back parsed or as text depending on driver."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def expanding_hashes(sql: str):
    """text() clause with an expanding :hashes IN-list parameter."""
    return text(sql).bindparams(bindparam("hashes", expanding=True))
