"""
Re-encrypt Connection Passwords
===============================

CLI script for encryption key rotation.
Decrypts every stored password that is not under the active key (using the
retired key ring) and re-encrypts it under DBSAGE_ENCRYPTION_KEY.

All or nothing: if any row fails, nothing is written.

Usage:
    DBSAGE_RETIRED_ENCRYPTION_KEYS='{"old": "<hex>"}' \
        python -m dbsage.scripts.reencrypt_credentials [--dry-run]
"""

import argparse
import sys
from typing import List, Optional

from sqlmodel import select

from dbsage.core.database import get_session_context
from dbsage.core.errors import DbSageError
from dbsage.models.connection import Connection
from dbsage.services.credential_vault import CredentialVault


def main(argv: Optional[List[str]] = None, vault: Optional[CredentialVault] = None) -> int:
    parser = argparse.ArgumentParser(description="Re-encrypt stored passwords under the active key")
    parser.add_argument("--dry-run", action="store_true", help="Decrypt and re-encrypt, but write nothing")
    args = parser.parse_args(argv)

    try:
        vault = vault or CredentialVault.from_settings()
    except DbSageError as e:
        print(f"Key configuration invalid: {e}", file=sys.stderr)
        sys.exit(1)

    with get_session_context() as session:
        rows = [
            row for row in session.exec(select(Connection)).all()
            if vault.needs_rotation(row.encryption_key_id)
        ]

        if not rows:
            print(f"All passwords already use key {vault.active_key_id!r}. Nothing to re-encrypt.")
            return 0

        success = 0
        failed = 0

        for row in rows:
            old_key_id = row.encryption_key_id
            try:
                secret = vault.reencrypt(row.encrypted_password, old_key_id)
            except DbSageError as e:
                failed += 1
                print(f"  FAIL: {row.name} (id={row.id}): {e}", file=sys.stderr)
                continue

            row.encrypted_password = secret.ciphertext
            row.encryption_key_id = secret.key_id
            session.add(row)
            success += 1
            print(f"  OK: {row.name} (id={row.id}) {old_key_id} -> {secret.key_id}")

        if failed:
            session.rollback()
            print(
                f"\nAborted. {failed} failure(s), {success} would have succeeded. "
                "No changes written (transaction rolled back).",
                file=sys.stderr,
            )
            sys.exit(1)

        if args.dry_run:
            session.rollback()
            print(f"\nDry run. {success} password(s) would be re-encrypted.")
            return 0

        session.commit()
        print(f"\nDone. {success} password(s) re-encrypted successfully.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
