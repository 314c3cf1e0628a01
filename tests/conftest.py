"""
Pytest configuration for dbsage tests.
Points the telemetry store at a throwaway SQLite file and installs a test
encryption key before anything imports dbsage.config.
"""

import os
import tempfile

# Must be set before any dbsage imports
_test_data_dir = tempfile.mkdtemp(prefix="dbsage_test_")
os.environ["DBSAGE_DATABASE_URL"] = f"sqlite:///{_test_data_dir}/test.db"
os.environ["DBSAGE_ENCRYPTION_KEY"] = "a1" * 32
os.environ["DBSAGE_ENCRYPTION_KEY_ID"] = "test-key"
os.environ["DBSAGE_LOG_DIR"] = os.path.join(_test_data_dir, "logs")
os.environ.pop("DBSAGE_SOCKS_PROXY_URL", None)
for _var in ("DBSAGE_RETIRED_ENCRYPTION_KEYS", "DBSAGE_OPENAI_API_KEY", "DBSAGE_ANTHROPIC_API_KEY",
             "DBSAGE_LLM_PROVIDER", "DBSAGE_LLM_MODEL"):
    os.environ.pop(_var, None)

import pytest
from sqlmodel import SQLModel

from dbsage.core.database import get_engine, get_session_context, init_db
from dbsage.models.connection import Connection, ConnectionStatus, DbType
from dbsage.services.credential_vault import CredentialVault, reset_credential_vault

init_db()

TEST_KEY = "a1" * 32
TEST_KEY_ID = "test-key"


@pytest.fixture(autouse=True)
def clean_store():
    """Empty every table and forget the cached vault between tests."""
    yield
    with get_engine().begin() as conn:
        for table in reversed(SQLModel.metadata.sorted_tables):
            conn.execute(table.delete())
    reset_credential_vault()


@pytest.fixture
def vault():
    return CredentialVault(active_key=TEST_KEY, active_key_id=TEST_KEY_ID)


@pytest.fixture
def make_connection(vault):
    """Insert a Connection row; keyword arguments override the defaults."""

    def _make(**overrides):
        password = overrides.pop("password", "s3cret")
        secret = vault.encrypt(password)
        values = dict(
            name="orders-db",
            db_type=DbType.POSTGRES.value,
            host="db.example.com",
            port=5432,
            database="orders",
            username="monitor",
            encrypted_password=secret.ciphertext,
            encryption_key_id=secret.key_id,
            status=ConnectionStatus.ACTIVE.value,
        )
        values.update(overrides)
        connection = Connection(**values)
        with get_session_context() as session:
            session.add(connection)
            session.commit()
            session.refresh(connection)
        return connection

    return _make
