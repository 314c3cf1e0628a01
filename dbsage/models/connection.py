"""
Database Connection Model
=========================

SQLModel table for monitored (customer-hosted) database connections.
The password is stored only as an AES-GCM envelope plus the id of the key
that sealed it.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text


class DbType(str, Enum):
    """Engine discriminator; selects the connector variant."""
    POSTGRES = "POSTGRES"
    MYSQL = "MYSQL"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    INACTIVE = "INACTIVE"
    TESTING = "TESTING"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Connection(SQLModel, table=True):
    """Persistent record of a monitored database."""

    __tablename__ = "connections"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    name: str = Field(max_length=255)
    db_type: str = Field(max_length=16)  # DbType value
    host: str = Field(max_length=512)
    port: int
    database: str = Field(max_length=255)
    username: str = Field(max_length=255)
    encrypted_password: str = Field(sa_column=Column(Text, nullable=False))
    encryption_key_id: str = Field(max_length=64)

    polling_interval_minutes: int = Field(default=1440)
    status: str = Field(default=ConnectionStatus.ACTIVE.value, max_length=16, index=True)
    # Set when the last successful test only got through via the SOCKS tunnel
    use_tunnel: bool = Field(default=False)

    last_synced_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
