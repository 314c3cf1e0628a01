"""
Connection Service
==================

Tenant-driven lifecycle of monitored connections: create, test, edit and
delete.

A connection is only saved after a live test succeeds with the submitted
password. Tests try the direct route first and fall back to the SOCKS5
tunnel when one is configured; the route that worked is remembered on the
connection (use_tunnel) and used by later syncs.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, ContextManager, Optional, Tuple

from sqlmodel import Session as DBSession

from dbsage.config import settings
from dbsage.core.database import get_session_context
from dbsage.core.errors import ConnectionNotFoundError, ConnectivityError
from dbsage.models.connection import Connection, ConnectionStatus
from dbsage.models.schemas import ConnectionCreate, ConnectionUpdate
from dbsage.services.credential_vault import CredentialVault, get_credential_vault
from dbsage.services.db_connectors import (
    BaseDbConnector,
    ConnectionTarget,
    build_connector,
    tunnel_from_settings,
)
from dbsage.services.sync_orchestrator import ConnectorFactory, connector_for
from dbsage.services.telemetry_store import TelemetryStore, get_telemetry_store

logger = logging.getLogger(__name__)


def probe_routes(connector: BaseDbConnector) -> Tuple[bool, bool]:
    """Try direct, then the tunnel if there is one.

    Returns (reachable, via_tunnel). Closes the connector.
    """
    try:
        if connector.test_connection(via_tunnel=False):
            return True, False
        if connector.tunnel is not None and connector.test_connection(via_tunnel=True):
            logger.info("%s reachable only through the tunnel", connector.target.host)
            return True, True
        return False, False
    finally:
        connector.close()


class ConnectionService:
    """Create, test, edit and delete monitored connections."""

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[DBSession]] = get_session_context,
        store: Optional[TelemetryStore] = None,
        vault: Optional[CredentialVault] = None,
        connector_factory: ConnectorFactory = build_connector,
    ):
        self._session_factory = session_factory
        self.store = store or get_telemetry_store()
        self._vault = vault
        self.connector_factory = connector_factory

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    def _connector(self, db_type, host: str, port: int, database: str, username: str, password: str):
        target = ConnectionTarget(
            host=host, port=port, database=database, username=username, password=password,
        )
        return self.connector_factory(db_type, target, tunnel=tunnel_from_settings(settings.socks_proxy_url))

    def test_credentials(self, data: ConnectionCreate) -> Tuple[bool, bool]:
        """Test submitted credentials without saving anything."""
        connector = self._connector(
            data.db_type, data.host, data.port, data.database, data.username, data.password,
        )
        return probe_routes(connector)

    def create(self, data: ConnectionCreate) -> Connection:
        """Test, encrypt and save a new connection as ACTIVE.

        Raises:
            ConnectivityError: the database could not be reached on any route.
        """
        reachable, via_tunnel = self.test_credentials(data)
        if not reachable:
            logger.warning("Connection test failed for %s:%s (%s)", data.host, data.port, data.db_type.value)
            raise ConnectivityError(
                detail=f"could not connect to {data.host}:{data.port}",
                context={"host": data.host, "port": data.port},
            )

        secret = self.vault.encrypt(data.password)
        connection = Connection(
            name=data.name,
            db_type=data.db_type.value,
            host=data.host,
            port=data.port,
            database=data.database,
            username=data.username,
            encrypted_password=secret.ciphertext,
            encryption_key_id=secret.key_id,
            polling_interval_minutes=data.polling_interval_minutes,
            status=ConnectionStatus.ACTIVE.value,
            use_tunnel=via_tunnel,
        )
        with self._session_factory() as session:
            session.add(connection)
            session.commit()
            session.refresh(connection)

        logger.info("Created connection %s (%s)", connection.id, connection.db_type)
        return connection

    def test_connection(self, connection_id: str) -> bool:
        """Re-test a saved connection and record the result as ACTIVE or ERROR."""
        connection = self.store.require_connection(connection_id)
        self.store.set_connection_status(connection_id, ConnectionStatus.TESTING)
        try:
            connector = connector_for(connection, self.vault, self.connector_factory)
            reachable, via_tunnel = probe_routes(connector)
        except Exception:
            self.store.set_connection_status(connection_id, ConnectionStatus.ERROR)
            raise

        if reachable:
            self.store.set_connection_status(connection_id, ConnectionStatus.ACTIVE, use_tunnel=via_tunnel)
            logger.info("Connection test successful for %s", connection_id)
        else:
            self.store.set_connection_status(connection_id, ConnectionStatus.ERROR)
            logger.warning("Connection test failed for %s", connection_id)
        return reachable

    def update(self, connection_id: str, data: ConnectionUpdate) -> Connection:
        """Edit connection fields; a new password is encrypted under the active key."""
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        password = changes.pop("password", None)

        with self._session_factory() as session:
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(
                    detail=f"connection {connection_id} not found",
                    context={"connection_id": connection_id},
                )
            for field_name, value in changes.items():
                setattr(connection, field_name, value)
            if password is not None:
                secret = self.vault.encrypt(password)
                connection.encrypted_password = secret.ciphertext
                connection.encryption_key_id = secret.key_id
            connection.updated_at = datetime.now(timezone.utc)
            session.add(connection)
            session.commit()
            session.refresh(connection)

        logger.info("Updated connection %s (%s)", connection_id, ", ".join(sorted(changes)) or "password")
        return connection

    def delete(self, connection_id: str) -> bool:
        """Delete a connection and all of its telemetry and suggestions."""
        return self.store.delete_connection(connection_id)
