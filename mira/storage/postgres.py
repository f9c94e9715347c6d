from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from mira.logging import get_logger
from mira.storage.errors import PersistenceError
from mira.storage.models import (
    ConversationSummary,
    CredentialRecord,
    Message,
    conversation_label,
    normalize_role,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_message (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        seq BIGSERIAL NOT NULL,
        feedback TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS chat_message_owner_conversation_idx
        ON chat_message (user_id, conversation_id, created_at, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_credential (
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        ciphertext TEXT NOT NULL,
        nonce TEXT NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, provider)
    )
    """,
)


class PostgresStore:
    """Postgres-backed conversation and credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _fail(self, operation: str, exc: Exception) -> PersistenceError:
        self.logger.error(
            "postgres_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return PersistenceError(f"failed to {operation}", {"operation": operation})

    @staticmethod
    def _row_to_message(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=normalize_role(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
            seq=int(row["seq"]),
            feedback=row.get("feedback"),
        )

    # messages
    def append_message(
        self, user_id: str, conversation_id: str, role: str, content: str
    ) -> Message:
        msg_id = str(uuid.uuid4())
        now = datetime.utcnow()
        role = normalize_role(role)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "INSERT INTO chat_message (id, user_id, conversation_id, role, content, created_at)"
                        " VALUES (%s, %s, %s, %s, %s, %s) RETURNING seq",
                        (msg_id, user_id, conversation_id, role, content, now),
                    ).fetchone()
        except psycopg.Error as exc:
            raise self._fail("append message", exc) from exc
        if not row:
            raise PersistenceError("failed to append message", {"operation": "append message"})
        return Message(
            id=msg_id,
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            content=content,
            created_at=now,
            seq=int(row["seq"]),
        )

    def list_messages(
        self, user_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        query = (
            "SELECT * FROM chat_message WHERE user_id = %s AND conversation_id = %s"
            " ORDER BY created_at DESC, seq DESC"
        )
        params: list[Any] = [user_id, conversation_id]
        if limit is not None:
            if limit <= 0:
                return []
            query += " LIMIT %s"
            params.append(limit)
        try:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except psycopg.Error as exc:
            raise self._fail("read messages", exc) from exc
        # newest-first from the query so LIMIT keeps the tail; flip back to ascending
        return [self._row_to_message(row) for row in reversed(rows)]

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    WITH ranked AS (
                        SELECT conversation_id, content, created_at,
                               row_number() OVER (
                                   PARTITION BY conversation_id ORDER BY created_at, seq
                               ) AS rn,
                               count(*) OVER (PARTITION BY conversation_id) AS message_count,
                               max(created_at) OVER (PARTITION BY conversation_id) AS last_activity
                        FROM chat_message
                        WHERE user_id = %s
                    )
                    SELECT conversation_id, content, created_at, message_count, last_activity
                    FROM ranked
                    WHERE rn = 1
                    ORDER BY last_activity DESC
                    """,
                    (user_id,),
                ).fetchall()
        except psycopg.Error as exc:
            raise self._fail("list conversations", exc) from exc
        return [
            ConversationSummary(
                conversation_id=row["conversation_id"],
                label=conversation_label(row["content"]),
                first_timestamp=row["created_at"],
                last_activity=row["last_activity"],
                message_count=int(row["message_count"]),
            )
            for row in rows
        ]

    def delete_conversation(self, user_id: str, conversation_id: str) -> int:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(
                        "DELETE FROM chat_message WHERE user_id = %s AND conversation_id = %s",
                        (user_id, conversation_id),
                    )
                    deleted = cur.rowcount
        except psycopg.Error as exc:
            raise self._fail("delete conversation", exc) from exc
        return max(0, deleted or 0)

    def set_feedback(self, user_id: str, message_id: str, rating: str) -> bool:
        try:
            uuid.UUID(message_id)
        except ValueError:
            return False
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(
                        "UPDATE chat_message SET feedback = %s WHERE id = %s AND user_id = %s",
                        (rating, message_id, user_id),
                    )
                    updated = cur.rowcount
        except psycopg.Error as exc:
            raise self._fail("save feedback", exc) from exc
        return bool(updated)

    # credentials
    def save_credential(self, record: CredentialRecord) -> CredentialRecord:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO provider_credential (user_id, provider, ciphertext, nonce, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (user_id, provider) DO UPDATE
                        SET ciphertext = EXCLUDED.ciphertext,
                            nonce = EXCLUDED.nonce,
                            updated_at = EXCLUDED.updated_at
                        """,
                        (
                            record.user_id,
                            record.provider,
                            record.ciphertext,
                            record.nonce,
                            record.updated_at,
                        ),
                    )
        except psycopg.Error as exc:
            raise self._fail("save credential", exc) from exc
        return record

    def get_credential(self, user_id: str, provider: str) -> Optional[CredentialRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM provider_credential WHERE user_id = %s AND provider = %s",
                    (user_id, provider),
                ).fetchone()
        except psycopg.Error as exc:
            raise self._fail("read credential", exc) from exc
        if not row:
            return None
        return CredentialRecord(
            user_id=row["user_id"],
            provider=row["provider"],
            ciphertext=row["ciphertext"],
            nonce=row["nonce"],
            updated_at=row["updated_at"],
        )

    def list_credentials(self, user_id: str) -> List[CredentialRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM provider_credential WHERE user_id = %s ORDER BY provider",
                    (user_id,),
                ).fetchall()
        except psycopg.Error as exc:
            raise self._fail("list credentials", exc) from exc
        return [
            CredentialRecord(
                user_id=row["user_id"],
                provider=row["provider"],
                ciphertext=row["ciphertext"],
                nonce=row["nonce"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def delete_credential(self, user_id: str, provider: str) -> bool:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(
                        "DELETE FROM provider_credential WHERE user_id = %s AND provider = %s",
                        (user_id, provider),
                    )
                    deleted = cur.rowcount
        except psycopg.Error as exc:
            raise self._fail("delete credential", exc) from exc
        return bool(deleted)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
        except psycopg.Error:
            return False
        return True

    def close(self) -> None:
        self.pool.close()
