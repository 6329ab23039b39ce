"""SQLite-backed storage for token records and legacy identity links."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from federated_tokens.models.tokens import LegacyIdentityLink, TokenRecord

if TYPE_CHECKING:  # pragma: no cover
    from federated_tokens.services.token_cipher import TokenCipherService


class StoreError(Exception):
    """Raised when the storage backend fails."""


class RecordNotFoundError(StoreError):
    """Raised when no token record matches a lookup."""


class MultipleRecordsFoundError(StoreError):
    """Raised when a lookup that must be unique matches several records."""


class SQLiteTokenStore:
    """Token records keyed by (uid, provider_id) plus the legacy identifier table."""

    def __init__(self, db_path: str, cipher: Optional[TokenCipherService] = None) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not open token database: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uid TEXT NOT NULL,
                    provider_type TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    has_failed INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (uid, provider_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS legacy_identity_links (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uid TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    UNIQUE (uid, identifier)
                )
                """
            )

    def _encode(self, value: str) -> str:
        if self._cipher is None:
            return value
        return self._cipher.encrypt(value)

    def _decode(self, value: str) -> str:
        if self._cipher is None:
            return value
        try:
            return self._cipher.decrypt(value)
        except ValueError as exc:
            raise StoreError(str(exc)) from exc

    def _to_record(self, row: sqlite3.Row) -> TokenRecord:
        return TokenRecord(
            id=row["id"],
            uid=row["uid"],
            provider_type=row["provider_type"],
            provider_id=row["provider_id"],
            access_token=self._decode(row["access_token"]),
            refresh_token=self._decode(row["refresh_token"]),
            expires_at=datetime.fromtimestamp(row["expires_at"], tz=timezone.utc),
            has_failed=bool(row["has_failed"]),
        )

    def _to_params(self, record: TokenRecord) -> dict:
        return {
            "uid": record.uid,
            "provider_type": record.provider_type,
            "provider_id": record.provider_id,
            "access_token": self._encode(record.access_token),
            "refresh_token": self._encode(record.refresh_token),
            "expires_at": int(record.expires_at.timestamp()),
            "has_failed": int(record.has_failed),
        }

    def find(self, uid: str, provider_id: str) -> TokenRecord:
        """Return the single record for ``(uid, provider_id)``."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM token_records WHERE uid = ? AND provider_id = ?",
                (uid, provider_id),
            ).fetchall()
        if not rows:
            raise RecordNotFoundError(f"No token record for {uid}/{provider_id}.")
        if len(rows) > 1:
            raise MultipleRecordsFoundError(
                f"Found {len(rows)} token records for {uid}/{provider_id}."
            )
        return self._to_record(rows[0])

    def find_all(self) -> list[TokenRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM token_records ORDER BY id").fetchall()
        return [self._to_record(row) for row in rows]

    def insert(self, record: TokenRecord) -> TokenRecord:
        """Persist a new record; duplicates of (uid, provider_id) are rejected."""
        params = self._to_params(record)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO token_records (
                    uid, provider_type, provider_id, access_token,
                    refresh_token, expires_at, has_failed
                )
                VALUES (
                    :uid, :provider_type, :provider_id, :access_token,
                    :refresh_token, :expires_at, :has_failed
                )
                """,
                params,
            )
            row_id = cursor.lastrowid
        return record.model_copy(update={"id": row_id})

    def update(self, record: TokenRecord) -> TokenRecord:
        if record.id is None:
            raise StoreError("Cannot update a token record that was never stored.")
        params = self._to_params(record)
        params["id"] = record.id
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE token_records
                SET uid = :uid,
                    provider_type = :provider_type,
                    provider_id = :provider_id,
                    access_token = :access_token,
                    refresh_token = :refresh_token,
                    expires_at = :expires_at,
                    has_failed = :has_failed
                WHERE id = :id
                """,
                params,
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Token record {record.id} no longer exists.")
        return record

    def delete(self, record: TokenRecord) -> None:
        if record.id is None:
            raise StoreError("Cannot delete a token record that was never stored.")
        with self._transaction() as conn:
            conn.execute("DELETE FROM token_records WHERE id = ?", (record.id,))

    def get_legacy_identifiers(self, uid: str) -> list[str]:
        """Identifiers previously linked to ``uid``, in insertion order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT identifier FROM legacy_identity_links WHERE uid = ? ORDER BY id",
                (uid,),
            ).fetchall()
        return [row["identifier"] for row in rows]

    def add_legacy_identifier(self, uid: str, identifier: str) -> LegacyIdentityLink:
        """Link a previously used identifier to ``uid``; repeated links are ignored."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO legacy_identity_links (uid, identifier)
                VALUES (?, ?)
                ON CONFLICT(uid, identifier) DO NOTHING
                """,
                (uid, identifier),
            )
        return LegacyIdentityLink(uid=uid, identifier=identifier)


__all__ = [
    "MultipleRecordsFoundError",
    "RecordNotFoundError",
    "SQLiteTokenStore",
    "StoreError",
]
