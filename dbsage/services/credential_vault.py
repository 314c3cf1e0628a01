"""
Credential Vault
================

AES-256-GCM encryption for stored database passwords.

Each call draws a fresh 96-bit nonce. The stored ciphertext is a small JSON
envelope carrying the nonce, the authentication tag and the encrypted bytes,
so decrypting needs nothing but the key named by the record's key id. The key
id is bound as associated data: an envelope moved under another key id fails
authentication instead of decrypting.

Key rotation: the active key encrypts; retired keys are kept for decrypt only
until ``reencrypt`` (or the reencrypt_credentials script) has moved every
stored password under the active key.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dbsage.config import settings
from dbsage.core.errors import ConfigurationError, IntegrityError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
_NONCE_BYTES = 12
_TAG_BYTES = 16
_KEY_HEX_LENGTH = 64  # 32 bytes


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    key_id: str


def _parse_key(key_id: str, hex_key: Optional[str]) -> bytes:
    if not hex_key:
        raise ConfigurationError(detail=f"encryption key {key_id!r} is not set")
    hex_key = hex_key.strip()
    if len(hex_key) != _KEY_HEX_LENGTH:
        raise ConfigurationError(
            detail=f"encryption key {key_id!r} must be {_KEY_HEX_LENGTH} hex characters"
        )
    try:
        return bytes.fromhex(hex_key)
    except ValueError:
        raise ConfigurationError(detail=f"encryption key {key_id!r} is not valid hex")


def _build_aad(key_id: str) -> bytes:
    return f"dbsage-credential:{key_id}".encode()


class CredentialVault:
    """Encrypts and decrypts connection passwords under a key ring."""

    def __init__(
        self,
        active_key: Optional[str],
        active_key_id: str,
        retired_keys: Optional[Mapping[str, str]] = None,
    ):
        if not active_key_id:
            raise ConfigurationError(detail="encryption key id is empty")
        self.active_key_id = active_key_id
        self._keys: Dict[str, bytes] = {}
        for key_id, hex_key in (retired_keys or {}).items():
            self._keys[key_id] = _parse_key(key_id, hex_key)
        # The active key wins if a retired entry reuses its id
        self._keys[active_key_id] = _parse_key(active_key_id, active_key)

    @classmethod
    def from_settings(cls) -> "CredentialVault":
        return cls(
            active_key=settings.encryption_key,
            active_key_id=settings.encryption_key_id,
            retired_keys=settings.retired_encryption_keys,
        )

    def _key_for(self, key_id: str) -> bytes:
        key = self._keys.get(key_id)
        if key is None:
            raise ConfigurationError(
                detail=f"no key configured for key id {key_id!r}",
                context={"key_id": key_id},
            )
        return key

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a password under the active key."""
        aesgcm = AESGCM(self._key_for(self.active_key_id))
        iv = os.urandom(_NONCE_BYTES)
        ct_with_tag = aesgcm.encrypt(iv, plaintext.encode("utf-8"), _build_aad(self.active_key_id))
        envelope = {
            "v": ENVELOPE_VERSION,
            "iv": iv.hex(),
            "tag": ct_with_tag[-_TAG_BYTES:].hex(),
            "ct": ct_with_tag[:-_TAG_BYTES].hex(),
        }
        return EncryptedSecret(
            ciphertext=json.dumps(envelope, separators=(",", ":")),
            key_id=self.active_key_id,
        )

    def decrypt(self, ciphertext: str, key_id: str) -> str:
        """Decrypt an envelope produced by encrypt().

        Raises:
            ConfigurationError: key_id names no configured key.
            IntegrityError: the envelope is malformed or fails authentication.
        """
        key = self._key_for(key_id)
        try:
            envelope = json.loads(ciphertext)
            iv = bytes.fromhex(envelope["iv"])
            tag = bytes.fromhex(envelope["tag"])
            ct = bytes.fromhex(envelope["ct"])
        except (ValueError, TypeError, KeyError):
            raise IntegrityError(detail="credential envelope is malformed", context={"key_id": key_id})

        if len(iv) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise IntegrityError(detail="credential envelope is malformed", context={"key_id": key_id})

        try:
            plaintext = AESGCM(key).decrypt(iv, ct + tag, _build_aad(key_id))
        except InvalidTag:
            logger.error("Credential authentication failed (key_id=%s)", key_id)
            raise IntegrityError(
                detail="credential failed authentication (tampered or wrong key)",
                context={"key_id": key_id},
            )
        return plaintext.decode("utf-8")

    def needs_rotation(self, key_id: str) -> bool:
        return key_id != self.active_key_id

    def reencrypt(self, ciphertext: str, key_id: str) -> EncryptedSecret:
        """Move a stored password under the active key."""
        return self.encrypt(self.decrypt(ciphertext, key_id))


# Singleton
_vault: Optional[CredentialVault] = None


def get_credential_vault() -> CredentialVault:
    """Get the process-wide CredentialVault, built from settings on first use."""
    global _vault
    if _vault is None:
        _vault = CredentialVault.from_settings()
    return _vault


def reset_credential_vault() -> None:
    """Drop the cached vault (key rotation, tests)."""
    global _vault
    _vault = None
