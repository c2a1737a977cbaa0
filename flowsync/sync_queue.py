"""Durable queue for operations a client hands over for deferred sync.

Queued items are drained by `process_pending`, which routes them through
the BatchCoordinator so they share the ledger and its idempotency
guarantees. Failed items are retried on later runs, with exponential
backoff, until `max_retries`. Items a crashed run left in `processing` are
returned to the queue once they go stale.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Callable
import uuid

from flowsync import config
from flowsync.coordinator import BatchCoordinator
from flowsync.db import DBConn
from flowsync.entities import SCHEMAS
from flowsync.errors import BatchTransactionError, ValidationError
from flowsync.operations import OpType, Operation, StoragePreference

logger = logging.getLogger(__name__)

QUEUE_OPERATIONS = ("CREATE", "UPDATE", "DELETE")
QUEUE_STATUSES = ("pending", "processing", "completed", "failed")

OP_TYPES = {
    ("flow", "CREATE"): OpType.CREATE_FLOW,
    ("flow", "UPDATE"): OpType.UPDATE_FLOW,
    ("flow", "DELETE"): OpType.DELETE_FLOW,
    ("flow_entry", "CREATE"): OpType.CREATE_ENTRY,
    ("flow_entry", "UPDATE"): OpType.UPDATE_ENTRY,
    ("flow_entry", "DELETE"): OpType.DELETE_ENTRY,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _shifted(seconds: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(
        timespec="microseconds"
    )


def _serialize_item(row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "entityType": row["entity_type"],
        "entityId": row["entity_id"],
        "operation": row["operation"],
        "payload": json.loads(row["payload"]),
        "metadata": json.loads(row["metadata"]),
        "status": row["status"],
        "retryCount": row["retry_count"],
        "result": json.loads(row["result"]) if row["result"] else None,
        "nextAttemptAt": row["next_attempt_at"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def to_operation(item: dict[str, Any]) -> Operation:
    """Translate a queue item into a batch operation keyed by the item id."""
    op_type = OP_TYPES[(item["entityType"], item["operation"])]
    payload = dict(item["payload"])
    temp_id = None
    if item["operation"] == "CREATE":
        temp_id = item["entityId"]
    else:
        payload["id"] = item["entityId"]
    preference = item["metadata"].get("storagePreference")
    return Operation(
        idempotency_key=f"queue:{item['id']}",
        op_type=op_type,
        payload=payload,
        temp_id=temp_id,
        storage_preference=StoragePreference(preference) if preference in ("local", "cloud") else None,
    )


class SyncQueue:
    def __init__(
        self,
        connect: Callable[[], DBConn],
        coordinator: BatchCoordinator | None = None,
        max_retries: int = config.SYNC_MAX_RETRIES,
        retry_delay: float = config.SYNC_RETRY_DELAY_SECONDS,
        max_retry_delay: float = config.SYNC_MAX_RETRY_DELAY_SECONDS,
        stale_after: float = config.SYNC_QUEUE_STALE_SECONDS,
    ):
        self.connect = connect
        self.coordinator = coordinator or BatchCoordinator(connect)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.stale_after = stale_after

    def enqueue(
        self,
        user_id: int,
        entity_type: Any,
        entity_id: Any,
        operation: Any,
        payload: Any,
        metadata: Any = None,
    ) -> dict[str, Any]:
        if entity_type not in SCHEMAS:
            raise ValidationError(f"entityType must be one of {', '.join(SCHEMAS)}")
        if not isinstance(entity_id, str) or not entity_id:
            raise ValidationError("entityId is required")
        if operation not in QUEUE_OPERATIONS:
            raise ValidationError(f"operation must be one of {', '.join(QUEUE_OPERATIONS)}")
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        item_id = str(uuid.uuid4())
        now = _now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_queue (id, user_id, entity_type, entity_id, operation,
                                        payload, metadata, status, retry_count,
                                        created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                """,
                (
                    item_id,
                    user_id,
                    entity_type,
                    entity_id,
                    operation,
                    json.dumps(payload),
                    json.dumps(metadata),
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        logger.info("Queued %s %s:%s for user %s", operation, entity_type, entity_id, user_id)
        return _serialize_item(row)

    def pending(self, user_id: int, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_queue
                WHERE user_id = ? AND status = 'pending'
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_serialize_item(row) for row in rows]

    def status_counts(self, user_id: int | None = None) -> dict[str, int]:
        counts = {status: 0 for status in QUEUE_STATUSES}
        query = "SELECT status, COUNT(*) AS count FROM sync_queue"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        with self.connect() as conn:
            for row in conn.execute(query + " GROUP BY status", params).fetchall():
                counts[row["status"]] = row["count"]
        counts["total"] = sum(counts.values())
        return counts

    def stats(self) -> dict[str, Any]:
        counts = self.status_counts()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT MAX(updated_at) AS last_sync_at FROM sync_queue WHERE status = 'completed'"
            ).fetchone()
        return {
            "totalOperations": counts["total"],
            "pendingOperations": counts["pending"],
            "processingOperations": counts["processing"],
            "completedOperations": counts["completed"],
            "failedOperations": counts["failed"],
            "lastSyncAt": row["last_sync_at"],
        }

    def _reclaim_stale(self, conn: DBConn) -> int:
        """Return items stuck in `processing` by a run that never settled them."""
        cutoff = _shifted(-self.stale_after)
        cur = conn.execute(
            """
            UPDATE sync_queue SET status = 'pending', updated_at = ?
            WHERE status = 'processing' AND updated_at < ?
            """,
            (_now(), cutoff),
        )
        if cur.rowcount:
            logger.warning("Reclaimed %s stale sync operations", cur.rowcount)
        return cur.rowcount

    def _claim(self, batch_size: int) -> list[dict[str, Any]]:
        claimed = []
        with self.connect() as conn:
            conn.begin()
            self._reclaim_stale(conn)
            rows = conn.execute(
                """
                SELECT * FROM sync_queue
                WHERE status = 'pending'
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (_now(), batch_size),
            ).fetchall()
            for row in rows:
                cur = conn.execute(
                    """
                    UPDATE sync_queue SET status = 'processing', updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (_now(), row["id"]),
                )
                if cur.rowcount == 1:
                    claimed.append(_serialize_item(row))
        return claimed

    def process_pending(self, batch_size: int = config.SYNC_QUEUE_BATCH_SIZE) -> dict[str, int]:
        """Drain up to `batch_size` due items, one batch per user."""
        items = self._claim(batch_size)
        summary = {"processed": len(items), "completed": 0, "retried": 0, "failed": 0}
        if not items:
            return summary

        logger.info("Processing %s queued sync operations", len(items))
        by_user: dict[int, list[dict[str, Any]]] = {}
        for item in items:
            by_user.setdefault(item["userId"], []).append(item)

        for user_id, user_items in by_user.items():
            operations = [to_operation(item) for item in user_items]
            try:
                results = self.coordinator.process_batch(operations, user_id)
            except BatchTransactionError as exc:
                logger.error("Queued batch for user %s failed: %s", user_id, exc)
                results = [
                    {"tempId": op.temp_id, "serverId": None, "status": "error", "error": str(exc)}
                    for op in operations
                ]
            for item, result in zip(user_items, results):
                summary[self._settle(item, result)] += 1
        return summary

    def retry_delay_for(self, retry_count: int) -> float:
        """Exponential backoff: base, 2x base, 4x base ... capped."""
        return min(self.retry_delay * 2 ** (retry_count - 1), self.max_retry_delay)

    def _settle(self, item: dict[str, Any], result: dict[str, Any]) -> str:
        next_attempt_at = None
        if result["status"] in ("success", "duplicate"):
            status, retry_count, outcome = "completed", item["retryCount"], "completed"
        else:
            retry_count = item["retryCount"] + 1
            if retry_count >= self.max_retries:
                status, outcome = "failed", "failed"
                logger.warning(
                    "Queued operation %s failed after %s attempts", item["id"], retry_count
                )
            else:
                status, outcome = "pending", "retried"
                delay = self.retry_delay_for(retry_count)
                next_attempt_at = _shifted(delay)
                logger.info(
                    "Retrying queued operation %s in %ss (attempt %s/%s)",
                    item["id"],
                    delay,
                    retry_count,
                    self.max_retries,
                )
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, retry_count = ?, result = ?, next_attempt_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (status, retry_count, json.dumps(result), next_attempt_at, _now(), item["id"]),
            )
        return outcome

    def clear_old(self, days_old: int = 7) -> dict[str, int]:
        """Delete settled queue items. The idempotency ledger is never touched."""
        cutoff = _shifted(-days_old * 86400)
        with self.connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM sync_queue
                WHERE status IN ('completed', 'failed') AND updated_at < ?
                """,
                (cutoff,),
            )
            cleared = cur.rowcount
        logger.info("Cleared %s old sync operations", cleared)
        return {"clearedCount": cleared, "daysOld": days_old}
