"""
Tests for the key-rotation script.
"""

import sys

import pytest

from dbsage.core.database import get_session_context
from dbsage.models.connection import Connection
from dbsage.scripts.reencrypt_credentials import main
from dbsage.services.credential_vault import CredentialVault

ACTIVE_KEY = "a1" * 32
OLD_KEY = "c3" * 32


@pytest.fixture
def old_vault():
    return CredentialVault(active_key=OLD_KEY, active_key_id="old")


@pytest.fixture
def rotating_vault():
    return CredentialVault(active_key=ACTIVE_KEY, active_key_id="test-key", retired_keys={"old": OLD_KEY})


def _under_old_key(make_connection, old_vault, name, password):
    secret = old_vault.encrypt(password)
    return make_connection(name=name, encrypted_password=secret.ciphertext, encryption_key_id=secret.key_id)


def _reload(connection_id):
    with get_session_context() as session:
        return session.get(Connection, connection_id)


def test_nothing_to_do(make_connection, rotating_vault, capsys):
    make_connection()
    assert main([], vault=rotating_vault) == 0
    assert "Nothing to re-encrypt" in capsys.readouterr().out


def test_moves_rows_to_active_key(make_connection, old_vault, rotating_vault, capsys):
    first = _under_old_key(make_connection, old_vault, "a", "pass-a")
    second = _under_old_key(make_connection, old_vault, "b", "pass-b")
    current = make_connection(name="c", password="pass-c")

    assert main([], vault=rotating_vault) == 0
    assert "Done. 2 password(s) re-encrypted" in capsys.readouterr().out

    active_only = CredentialVault(active_key=ACTIVE_KEY, active_key_id="test-key")
    for conn, password in ((first, "pass-a"), (second, "pass-b"), (current, "pass-c")):
        row = _reload(conn.id)
        assert row.encryption_key_id == "test-key"
        assert active_only.decrypt(row.encrypted_password, row.encryption_key_id) == password


def test_dry_run_writes_nothing(make_connection, old_vault, rotating_vault, capsys):
    conn = _under_old_key(make_connection, old_vault, "a", "pass-a")

    assert main(["--dry-run"], vault=rotating_vault) == 0

    row = _reload(conn.id)
    assert row.encryption_key_id == "old"
    assert row.encrypted_password == conn.encrypted_password
    assert "Dry run. 1 password(s) would be re-encrypted" in capsys.readouterr().out


def test_any_failure_aborts_everything(make_connection, old_vault, rotating_vault, capsys):
    good = _under_old_key(make_connection, old_vault, "good", "pass-good")
    make_connection(name="orphan", encryption_key_id="lost-key")

    with pytest.raises(SystemExit) as exc_info:
        main([], vault=rotating_vault)

    assert exc_info.value.code == 1
    assert _reload(good.id).encryption_key_id == "old"
    assert "Aborted" in capsys.readouterr().err


def test_successful_rotation_exits_zero(make_connection, old_vault, rotating_vault):
    _under_old_key(make_connection, old_vault, "a", "pass-a")
    _under_old_key(make_connection, old_vault, "b", "pass-b")

    with pytest.raises(SystemExit) as exc_info:
        sys.exit(main([], vault=rotating_vault))

    assert exc_info.value.code == 0
