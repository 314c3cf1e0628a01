"""
Monitored-database connectors.

Variants are picked from the connection's stored ``db_type`` through
CONNECTOR_REGISTRY.
"""

from typing import Dict, Optional, Type

from dbsage.core.errors import ConfigurationError
from dbsage.models.connection import DbType

from .base import BaseDbConnector, ConnectionTarget, is_read_only_select
from .mysql import MySQLConnector
from .postgres import PostgresConnector
from .tunnel import TunnelEndpoint, open_socket, tunnel_from_settings

CONNECTOR_REGISTRY: Dict[DbType, Type[BaseDbConnector]] = {
    DbType.POSTGRES: PostgresConnector,
    DbType.MYSQL: MySQLConnector,
}


def build_connector(
    db_type,
    target: ConnectionTarget,
    tunnel: Optional[TunnelEndpoint] = None,
) -> BaseDbConnector:
    """Instantiate the connector variant registered for db_type."""
    try:
        connector_cls = CONNECTOR_REGISTRY[DbType(db_type)]
    except (KeyError, ValueError):
        raise ConfigurationError(
            detail=f"unsupported database type {db_type!r}",
            context={"db_type": str(db_type)},
        )
    return connector_cls(target, tunnel=tunnel)


__all__ = [
    "BaseDbConnector",
    "CONNECTOR_REGISTRY",
    "ConnectionTarget",
    "MySQLConnector",
    "PostgresConnector",
    "TunnelEndpoint",
    "build_connector",
    "is_read_only_select",
    "open_socket",
    "tunnel_from_settings",
]
