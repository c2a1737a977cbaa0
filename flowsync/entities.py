"""Row mapping for the syncable entities (flows and flow entries)."""
from __future__ import annotations

import json
from typing import Any, NamedTuple

from flowsync.db import DBConn
from flowsync.errors import NotFoundError


class EntitySchema(NamedTuple):
    table: str
    label: str
    # client field name -> column name
    columns: dict[str, str]
    json_fields: tuple[str, ...]
    flag_fields: tuple[str, ...]


FLOW = EntitySchema(
    table="flows",
    label="Flow",
    columns={
        "title": "title",
        "description": "description",
        "trackingType": "tracking_type",
        "frequency": "frequency",
        "daysOfWeek": "days_of_week",
        "archived": "archived",
    },
    json_fields=("daysOfWeek",),
    flag_fields=("archived",),
)

FLOW_ENTRY = EntitySchema(
    table="flow_entries",
    label="Flow entry",
    columns={
        "flowId": "flow_id",
        "date": "entry_date",
        "symbol": "symbol",
        "moodScore": "mood_score",
        "note": "note",
        "quantitative": "quantitative",
    },
    json_fields=("quantitative",),
    flag_fields=(),
)

SCHEMAS = {"flow": FLOW, "flow_entry": FLOW_ENTRY}


def to_columns(schema: EntitySchema, fields: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for name, value in fields.items():
        column = schema.columns.get(name)
        if column is None:
            continue
        if name in schema.json_fields and value is not None:
            value = json.dumps(value)
        elif name in schema.flag_fields:
            value = 1 if value else 0
        values[column] = value
    return values


def serialize(schema: EntitySchema, row) -> dict[str, Any]:
    data: dict[str, Any] = {"id": row["id"]}
    for name, column in schema.columns.items():
        value = row[column]
        if name in schema.json_fields and value is not None:
            value = json.loads(value)
        elif name in schema.flag_fields:
            value = bool(value)
        data[name] = value
    data["createdAt"] = row["created_at"]
    data["updatedAt"] = row["updated_at"]
    data["deletedAt"] = row["deleted_at"]
    return data


def find_owned(conn: DBConn, schema: EntitySchema, entity_id: str, user_id: int):
    """Fetch a row owned by `user_id`, soft-deleted rows included."""
    row = conn.execute(
        f"SELECT * FROM {schema.table} WHERE id = ? AND user_id = ?",
        (entity_id, user_id),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"{schema.label} {entity_id} not found")
    return row


def update_row(conn: DBConn, schema: EntitySchema, entity_id: str, user_id: int, values: dict) -> None:
    assignments = ", ".join(f"{column} = ?" for column in values)
    conn.execute(
        f"UPDATE {schema.table} SET {assignments} WHERE id = ? AND user_id = ?",
        (*values.values(), entity_id, user_id),
    )
