from __future__ import annotations

import json
from typing import Any, NamedTuple

from flowsync.db import INTEGRITY_ERRORS, DBConn, utc_now
from flowsync.errors import DuplicateKeyError


class LedgerEntry(NamedTuple):
    user_id: int
    idempotency_key: str
    operation_type: str
    request_payload: Any
    response_payload: Any
    created_at: str

    @property
    def server_id(self) -> str | None:
        if isinstance(self.response_payload, dict):
            return self.response_payload.get("id")
        return None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class IdempotencyLedger:
    """Durable `(user, idempotency key) -> response` record.

    Must share the connection (and so the transaction) of the mutation it
    records.
    """

    def __init__(self, conn: DBConn):
        self.conn = conn

    def lookup(self, user_id: int, idempotency_key: str) -> LedgerEntry | None:
        row = self.conn.execute(
            """
            SELECT user_id, idempotency_key, operation_type, request_payload,
                   response_payload, created_at
            FROM sync_log
            WHERE user_id = ? AND idempotency_key = ?
            """,
            (user_id, idempotency_key),
        ).fetchone()
        if row is None:
            return None
        return LedgerEntry(
            user_id=row["user_id"],
            idempotency_key=row["idempotency_key"],
            operation_type=row["operation_type"],
            request_payload=_loads(row["request_payload"]),
            response_payload=_loads(row["response_payload"]),
            created_at=row["created_at"],
        )

    def record(
        self,
        user_id: int,
        idempotency_key: str,
        op_type: str,
        request_payload: Any,
        response_payload: Any,
    ) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO sync_log (user_id, idempotency_key, operation_type,
                                      request_payload, response_payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    idempotency_key,
                    op_type,
                    json.dumps(request_payload),
                    json.dumps(response_payload),
                    utc_now(),
                ),
            )
        except INTEGRITY_ERRORS as exc:
            raise DuplicateKeyError(user_id, idempotency_key) from exc

    def recent(self, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT idempotency_key, operation_type, created_at
            FROM sync_log
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
        return [
            {
                "idempotencyKey": row["idempotency_key"],
                "operationType": row["operation_type"],
                "createdAt": row["created_at"],
            }
            for row in rows
        ]
