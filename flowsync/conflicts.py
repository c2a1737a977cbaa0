"""Resolution of client-detected sync conflicts.

Policies:

* ``timestamp_conflict`` - last writer wins on ``updatedAt``; the server
  keeps ties and cases where either timestamp is missing.
* ``data_conflict`` - field-level merge, server value wins on collisions.
* ``deletion_conflict`` - tombstones win; if neither side is deleted the
  last writer wins.

The winning state is written back to the entity row. Conflicts themselves
are not stored.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, NamedTuple

from flowsync.db import DATABASE_ERRORS, DBConn, utc_now
from flowsync.entities import SCHEMAS, find_owned, serialize, to_columns, update_row
from flowsync.errors import ApplyError, NotFoundError, ValidationError
from flowsync.operations import FIELD_CHECKS

logger = logging.getLogger(__name__)

CONFLICT_TYPES = ("timestamp_conflict", "data_conflict", "deletion_conflict")


@dataclass(frozen=True)
class Conflict:
    entity_type: str
    entity_id: str
    local_data: dict[str, Any]
    server_data: dict[str, Any]
    conflict_type: str

    @classmethod
    def from_dict(cls, raw: Any, index: int = 0) -> "Conflict":
        where = f"conflicts[{index}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{where} must be an object")
        if raw.get("entityType") not in SCHEMAS:
            raise ValidationError(f"{where}.entityType must be one of {', '.join(SCHEMAS)}")
        if not isinstance(raw.get("entityId"), str) or not raw["entityId"]:
            raise ValidationError(f"{where}.entityId is required")
        for name in ("localData", "serverData"):
            if not isinstance(raw.get(name), dict):
                raise ValidationError(f"{where}.{name} must be an object")
        if raw.get("conflictType") not in CONFLICT_TYPES:
            raise ValidationError(f"{where}.conflictType must be one of {', '.join(CONFLICT_TYPES)}")
        return cls(
            entity_type=raw["entityType"],
            entity_id=raw["entityId"],
            local_data=raw["localData"],
            server_data=raw["serverData"],
            conflict_type=raw["conflictType"],
        )


def parse_conflicts(body: Any) -> list[Any]:
    """Check the request envelope only; items are checked one by one when resolved."""
    if not isinstance(body, dict) or not isinstance(body.get("conflicts"), list):
        raise ValidationError("conflicts array is required")
    return body["conflicts"]


def _describe(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raw = {}
    return {
        "entityType": raw.get("entityType"),
        "entityId": raw.get("entityId"),
        "conflictType": raw.get("conflictType"),
    }


class Resolution(NamedTuple):
    winner: str  # local | server | merge
    data: dict[str, Any]
    deleted: bool


def _field(data: dict[str, Any], camel: str, snake: str) -> Any:
    value = data.get(camel)
    return data.get(snake) if value is None else value


def _timestamp(data: dict[str, Any]) -> datetime | None:
    value = _field(data, "updatedAt", "updated_at")
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_deleted(data: dict[str, Any]) -> bool:
    return _field(data, "deletedAt", "deleted_at") is not None


def _last_writer_wins(conflict: Conflict) -> Resolution:
    local_ts = _timestamp(conflict.local_data)
    server_ts = _timestamp(conflict.server_data)
    if local_ts is not None and server_ts is not None and local_ts > server_ts:
        return Resolution("local", dict(conflict.local_data), is_deleted(conflict.local_data))
    return Resolution("server", dict(conflict.server_data), is_deleted(conflict.server_data))


def _merge(conflict: Conflict) -> Resolution:
    merged = {**conflict.local_data, **conflict.server_data}
    return Resolution("merge", merged, is_deleted(merged))


def _tombstone_wins(conflict: Conflict) -> Resolution:
    if is_deleted(conflict.server_data):
        return Resolution("server", dict(conflict.server_data), True)
    if is_deleted(conflict.local_data):
        return Resolution("local", dict(conflict.local_data), True)
    return _last_writer_wins(conflict)


POLICIES: dict[str, Callable[[Conflict], Resolution]] = {
    "timestamp_conflict": _last_writer_wins,
    "data_conflict": _merge,
    "deletion_conflict": _tombstone_wins,
}


def resolve_conflict(conflict: Conflict) -> Resolution:
    return POLICIES[conflict.conflict_type](conflict)


class ConflictResolver:
    """Resolves conflicts for one user and persists each outcome.

    All conflicts share one transaction; each runs in its own savepoint so
    a failing item is reported without undoing the others.
    """

    def __init__(self, connect: Callable[[], DBConn]):
        self.connect = connect

    def resolve(self, conflicts: list[Any], user_id: int) -> list[dict[str, Any]]:
        """Resolve raw conflict mappings (or Conflict instances) in order."""
        results = []
        with self.connect() as conn:
            conn.begin()
            for index, raw in enumerate(conflicts):
                results.append(self._resolve_one(conn, raw, user_id, index))
        return results

    def _resolve_one(self, conn: DBConn, raw: Any, user_id: int, index: int) -> dict[str, Any]:
        try:
            conflict = raw if isinstance(raw, Conflict) else Conflict.from_dict(raw, index)
        except ValidationError as exc:
            logger.warning("Skipping malformed conflict: %s", exc)
            return {**_describe(raw), "status": "error", "error": str(exc)}

        item = {
            "entityType": conflict.entity_type,
            "entityId": conflict.entity_id,
            "conflictType": conflict.conflict_type,
        }
        resolution = resolve_conflict(conflict)
        try:
            with conn.savepoint(f"conflict_{index}"):
                resolved = self._persist(conn, conflict, resolution, user_id)
        except (ValidationError, NotFoundError, ApplyError) as exc:
            logger.warning(
                "Could not resolve %s %s: %s", conflict.entity_type, conflict.entity_id, exc
            )
            return {**item, "status": "error", "error": str(exc)}

        return {
            **item,
            "status": "resolved",
            "resolution": resolution.winner,
            "deleted": resolution.deleted,
            "resolvedData": resolved,
        }

    def _persist(self, conn: DBConn, conflict: Conflict, resolution: Resolution, user_id: int):
        schema = SCHEMAS[conflict.entity_type]
        find_owned(conn, schema, conflict.entity_id, user_id)

        fields = {}
        for name in schema.columns:
            if name == "flowId" or name not in resolution.data:
                continue
            try:
                fields[name] = FIELD_CHECKS[name](resolution.data[name])
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Resolved field '{name}' {exc}") from None

        now = utc_now()
        values = to_columns(schema, fields)
        # The row carries the winner's modification time, not the time of resolution.
        winner_updated_at = _field(resolution.data, "updatedAt", "updated_at")
        values["updated_at"] = winner_updated_at if _timestamp(resolution.data) else now
        if resolution.deleted:
            deleted_at = _field(resolution.data, "deletedAt", "deleted_at")
            values["deleted_at"] = deleted_at if isinstance(deleted_at, str) else now
        else:
            values["deleted_at"] = None
        try:
            update_row(conn, schema, conflict.entity_id, user_id, values)
        except DATABASE_ERRORS as exc:
            raise ApplyError(str(exc)) from exc
        return serialize(schema, find_owned(conn, schema, conflict.entity_id, user_id))
