"""
Sync Orchestrator
=================

PENDING -> COLLECTING -> RECONCILING -> COMPLETED, FAILED from any of the
first three.

PENDING      the connection must exist and be ACTIVE (NotActiveError)
COLLECTING   decrypt the password, pull stats/schema/index usage/access
             patterns on the connection's recorded route, normalize, and
             checkpoint the batch
RECONCILING  reconcile the checkpointed batch, then status=ACTIVE and
             last_synced_at=now

The batch id is the run id, so re-running RECONCILING after a restart
reconciles the same batch again without duplicating snapshots or samples.
On failure the connection goes to ERROR, except when the precondition
failed: a connection that is not ACTIVE keeps whatever status it has.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from dbsage.config import settings
from dbsage.core.async_utils import run_sync
from dbsage.core.errors import NotActiveError
from dbsage.models.connection import Connection, ConnectionStatus
from dbsage.models.schemas import NormalizedBatch
from dbsage.models.workflow import WorkflowKind
from dbsage.services.credential_vault import CredentialVault, get_credential_vault
from dbsage.services.db_connectors import (
    BaseDbConnector,
    ConnectionTarget,
    build_connector,
    tunnel_from_settings,
)
from dbsage.services.telemetry_normalizer import build_batch
from dbsage.services.telemetry_store import TelemetryStore, get_telemetry_store
from dbsage.services.workflow_engine import (
    COMPLETED,
    RunOutcome,
    StepHandler,
    Workflow,
    WorkflowRunStore,
)

logger = logging.getLogger(__name__)

PENDING = "PENDING"
COLLECTING = "COLLECTING"
RECONCILING = "RECONCILING"

ConnectorFactory = Callable[..., BaseDbConnector]


def connector_for(
    connection: Connection,
    vault: CredentialVault,
    connector_factory: ConnectorFactory = build_connector,
) -> BaseDbConnector:
    """Decrypt the stored password and build the matching connector variant."""
    password = vault.decrypt(connection.encrypted_password, connection.encryption_key_id)
    target = ConnectionTarget(
        host=connection.host,
        port=connection.port,
        database=connection.database,
        username=connection.username,
        password=password,
    )
    return connector_factory(
        connection.db_type,
        target,
        tunnel=tunnel_from_settings(settings.socks_proxy_url),
    )


class SyncOrchestrator(Workflow):
    kind = WorkflowKind.SYNC
    initial_state = PENDING

    def __init__(
        self,
        run_id: str,
        connection_id: str,
        runs: WorkflowRunStore,
        store: Optional[TelemetryStore] = None,
        vault: Optional[CredentialVault] = None,
        connector_factory: ConnectorFactory = build_connector,
        state: Optional[str] = None,
        checkpoint: Optional[dict] = None,
    ):
        super().__init__(run_id, connection_id, runs, state=state, checkpoint=checkpoint)
        self.store = store or get_telemetry_store()
        self._vault = vault
        self.connector_factory = connector_factory

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    def steps(self) -> Dict[str, StepHandler]:
        return {
            PENDING: self._check_active,
            COLLECTING: self._collect,
            RECONCILING: self._reconcile,
        }

    async def _load_active_connection(self) -> Connection:
        connection = await run_sync(self.store.get_connection, self.connection_id)
        if connection is None:
            raise NotActiveError(
                detail=f"connection {self.connection_id} not found",
                context={"connection_id": self.connection_id},
            )
        if connection.status != ConnectionStatus.ACTIVE.value:
            raise NotActiveError(
                detail=f"connection {self.connection_id} is {connection.status}, not ACTIVE",
                context={"connection_id": self.connection_id, "status": connection.status},
            )
        return connection

    async def _check_active(self) -> str:
        await self._load_active_connection()
        return COLLECTING

    async def _collect(self) -> str:
        connection = await run_sync(self.store.require_connection, self.connection_id)
        via_tunnel = bool(connection.use_tunnel)
        connector = connector_for(connection, self.vault, self.connector_factory)
        timeout = settings.connector_call_timeout_s

        logger.info(
            "Collecting telemetry from %s (%s%s)",
            connection.host, connection.db_type, ", via tunnel" if via_tunnel else "",
        )
        try:
            collected_at = datetime.now(timezone.utc)
            query_stats = await run_sync(connector.fetch_query_stats, via_tunnel=via_tunnel, timeout=timeout)
            schema_rows = await run_sync(connector.fetch_schema, via_tunnel=via_tunnel, timeout=timeout)
            index_usage = await run_sync(connector.fetch_index_usage, via_tunnel=via_tunnel, timeout=timeout)
            table_access = await run_sync(
                connector.fetch_table_access_patterns, via_tunnel=via_tunnel, timeout=timeout
            )
        finally:
            await run_sync(connector.close, timeout=timeout)

        batch = build_batch(
            source=connector.SOURCE,
            batch_id=self.run_id,
            collected_at=collected_at,
            query_stats=query_stats,
            schema_rows=schema_rows,
            index_usage=index_usage,
            table_access=table_access,
        )
        self.checkpoint["batch"] = batch.model_dump(mode="json")
        return RECONCILING

    async def _reconcile(self) -> str:
        batch = NormalizedBatch.model_validate(self.checkpoint["batch"])
        await run_sync(self.store.reconcile, self.connection_id, batch)
        await run_sync(self.store.mark_sync_completed, self.connection_id)
        self.outcome = RunOutcome(success=True)
        return COMPLETED

    async def on_failure(self, failed_state: str, error: Exception) -> None:
        if isinstance(error, NotActiveError):
            return
        await run_sync(self.store.set_connection_status, self.connection_id, ConnectionStatus.ERROR)
