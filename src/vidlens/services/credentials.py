from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from typing import Any, Iterable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import NoCredentials
from ..models import Credential
from ..utils import log_event, utc_now_iso

MASTER_KEY_ENV = "VIDLENS_MASTER_KEY"

_CREDENTIAL_COLUMNS = "id, fingerprint, key_id, api_key, key_last4, usage_count, last_used"
_NONCE_BYTES = 12


class KeySealer:
    """Seals API keys at rest with AES-GCM.

    Each sealed key is bound to its own fingerprint, so a blob copied onto
    another row fails to open.
    """

    key_id = "v1"

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != 32:
            raise ValueError(f"{MASTER_KEY_ENV} must decode to 32 bytes")
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=b"vidlens:api_keys:v1")
        self._aead = AESGCM(hkdf.derive(master_key))

    @classmethod
    def from_env(cls) -> KeySealer | None:
        encoded = os.environ.get(MASTER_KEY_ENV, "").strip()
        if not encoded:
            return None
        try:
            master_key = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"{MASTER_KEY_ENV} is not valid base64url") from exc
        return cls(master_key)

    def seal(self, key: str, fingerprint: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, key.encode("utf-8"), _aad(fingerprint))
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def unseal(self, blob: str, fingerprint: str) -> str:
        data = base64.urlsafe_b64decode(blob)
        plain = self._aead.decrypt(data[:_NONCE_BYTES], data[_NONCE_BYTES:], _aad(fingerprint))
        return plain.decode("utf-8")


class CredentialRotator:
    """Least-recently-used rotation over the configured analysis API keys.

    Usage state lives in the ``api_keys`` table so rotation stays fair across
    restarts. Only keys passed to :meth:`register` are eligible for selection.
    Keys are sealed before they are stored when a master key is configured.
    """

    def __init__(
        self,
        conn: Any,
        logger: logging.Logger | None = None,
        sealer: KeySealer | None = None,
    ) -> None:
        self._conn = conn
        self._logger = logger or logging.getLogger("vidlens.credentials")
        self._sealer = sealer if sealer is not None else KeySealer.from_env()
        self._fingerprints: list[str] = []

    @property
    def count(self) -> int:
        return len(self._fingerprints)

    def register(self, keys: Iterable[str]) -> int:
        fingerprints: list[str] = []
        now = utc_now_iso()
        for raw in keys:
            key = raw.strip()
            if not key:
                continue
            fingerprint = _fingerprint(key)
            if fingerprint in fingerprints:
                continue
            fingerprints.append(fingerprint)
            key_id, stored = self._seal(key, fingerprint)
            self._conn.execute(
                """
                INSERT OR IGNORE INTO api_keys
                    (fingerprint, key_id, api_key, key_last4, usage_count, last_used, created_at)
                VALUES (?, ?, ?, ?, 0, NULL, ?)
                """,
                (fingerprint, key_id, stored, key[-4:], now),
            )
        self._conn.commit()
        self._fingerprints = fingerprints
        if fingerprints:
            log_event(self._logger, logging.INFO, "credentials_registered", count=len(fingerprints))
        else:
            log_event(self._logger, logging.WARNING, "credentials_missing")
        return len(fingerprints)

    def select(self) -> Credential:
        if not self._fingerprints:
            raise NoCredentials()
        placeholders = ",".join(["?"] * len(self._fingerprints))
        cursor = self._conn.execute(
            f"""
            UPDATE api_keys
            SET usage_count = usage_count + 1, last_used = ?
            WHERE id = (
                SELECT id FROM api_keys
                WHERE fingerprint IN ({placeholders})
                ORDER BY last_used IS NULL DESC, last_used ASC, usage_count ASC, id ASC
                LIMIT 1
            )
            RETURNING {_CREDENTIAL_COLUMNS}
            """,
            (utc_now_iso(), *self._fingerprints),
        )
        row = cursor.fetchone()
        self._conn.commit()
        if not row:
            raise NoCredentials("no_credential_rows")
        credential = self._row_to_credential(row)
        log_event(
            self._logger,
            logging.INFO,
            "credential_selected",
            key_last4=credential.key_last4,
            usage_count=credential.usage_count,
        )
        return credential

    def list_credentials(self) -> list[Credential]:
        if not self._fingerprints:
            return []
        placeholders = ",".join(["?"] * len(self._fingerprints))
        cursor = self._conn.execute(
            f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM api_keys
            WHERE fingerprint IN ({placeholders})
            ORDER BY id ASC
            """,
            tuple(self._fingerprints),
        )
        return [self._row_to_credential(row) for row in cursor.fetchall()]

    def _seal(self, key: str, fingerprint: str) -> tuple[str | None, str]:
        if self._sealer is None:
            return None, key
        return self._sealer.key_id, self._sealer.seal(key, fingerprint)

    def _row_to_credential(self, row: tuple) -> Credential:
        credential_id, fingerprint, key_id, stored, key_last4, usage_count, last_used = row
        key = stored
        if key_id:
            if self._sealer is None:
                raise NoCredentials(f"sealed_key_without_master_key key_last4={key_last4}")
            key = self._sealer.unseal(stored, fingerprint)
        return Credential(
            id=int(credential_id),
            key=key,
            key_last4=key_last4,
            usage_count=int(usage_count),
            last_used=last_used,
        )


def _fingerprint(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _aad(fingerprint: str) -> bytes:
    return f"api_key:{fingerprint}".encode("utf-8")
