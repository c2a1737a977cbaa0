from __future__ import annotations

import logging
import uuid

from flowsync.db import DATABASE_ERRORS, DBConn, utc_now
from flowsync.entities import FLOW, FLOW_ENTRY, SCHEMAS, find_owned, to_columns, update_row
from flowsync.errors import ApplyError, NotFoundError
from flowsync.operations import EntityRef, Operation, StoragePreference

logger = logging.getLogger(__name__)


class OperationApplier:
    """Executes one validated operation against the entity tables.

    Knows nothing about batching or the ledger. Runs on the caller's
    connection and never commits.
    """

    def __init__(self, conn: DBConn):
        self.conn = conn

    def apply(self, op: Operation, user_id: int) -> EntityRef:
        if op.storage_preference is StoragePreference.LOCAL:
            return self._keep_local(op)

        handler = getattr(self, f"_{op.action}")
        try:
            return handler(op, user_id)
        except DATABASE_ERRORS as exc:
            raise ApplyError(f"{op.op_type.value} failed: {exc}") from exc

    def _keep_local(self, op: Operation) -> EntityRef:
        local_id = op.temp_id or op.payload.get("id")
        if not local_id:
            raise ApplyError(f"{op.op_type.value} with local storage needs a tempId")
        return EntityRef(local_id, StoragePreference.LOCAL.value)

    def _create(self, op: Operation, user_id: int) -> EntityRef:
        schema = SCHEMAS[op.entity]
        if schema is FLOW_ENTRY:
            flow = find_owned(self.conn, FLOW, op.payload["flowId"], user_id)
            if flow["deleted_at"] is not None:
                raise NotFoundError(f"Flow {op.payload['flowId']} not found")

        entity_id = str(uuid.uuid4())
        now = utc_now()
        values = {
            "id": entity_id,
            "user_id": user_id,
            **to_columns(schema, op.payload),
            "created_at": now,
            "updated_at": now,
        }
        if schema is FLOW:
            values["storage_preference"] = StoragePreference.CLOUD.value
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self.conn.execute(
            f"INSERT INTO {schema.table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        logger.debug("Created %s %s for user %s", op.entity, entity_id, user_id)
        return EntityRef(entity_id)

    def _update(self, op: Operation, user_id: int) -> EntityRef:
        schema = SCHEMAS[op.entity]
        entity_id = op.payload["id"]
        row = find_owned(self.conn, schema, entity_id, user_id)
        if row["deleted_at"] is not None:
            raise NotFoundError(f"{schema.label} {entity_id} not found")

        values = to_columns(schema, {k: v for k, v in op.payload.items() if k != "id"})
        values["updated_at"] = utc_now()
        update_row(self.conn, schema, entity_id, user_id, values)
        return EntityRef(entity_id)

    def _delete(self, op: Operation, user_id: int) -> EntityRef:
        schema = SCHEMAS[op.entity]
        entity_id = op.payload["id"]
        row = find_owned(self.conn, schema, entity_id, user_id)
        if row["deleted_at"] is not None:
            return EntityRef(entity_id)

        now = utc_now()
        update_row(self.conn, schema, entity_id, user_id, {"deleted_at": now, "updated_at": now})
        if schema is FLOW:
            self.conn.execute(
                """
                UPDATE flow_entries
                SET deleted_at = ?, updated_at = ?
                WHERE flow_id = ? AND user_id = ? AND deleted_at IS NULL
                """,
                (now, now, entity_id, user_id),
            )
        return EntityRef(entity_id)
