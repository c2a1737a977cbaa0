"""Client operation model and boundary validation.

An operation arrives as an envelope (`idempotencyKey`, `opType`, `payload`,
optional `tempId` and `storagePreference`). The envelope is checked when the
request is parsed; the payload is checked against the rule for its `opType`
just before the operation is applied, so a bad payload only fails its own
operation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, NamedTuple, TypedDict

from flowsync.errors import ValidationError


class OpType(str, Enum):
    CREATE_FLOW = "CREATE_FLOW"
    UPDATE_FLOW = "UPDATE_FLOW"
    DELETE_FLOW = "DELETE_FLOW"
    CREATE_ENTRY = "CREATE_ENTRY"
    UPDATE_ENTRY = "UPDATE_ENTRY"
    DELETE_ENTRY = "DELETE_ENTRY"


class StoragePreference(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


TRACKING_TYPES = ("Binary", "Quantitative", "Time-based")
FREQUENCIES = ("Daily", "Weekly", "Monthly")
SYMBOLS = ("+", "-", "*", "/")


class _BatchResultBase(TypedDict):
    tempId: str | None
    serverId: str | None
    status: str


class BatchResult(_BatchResultBase, total=False):
    error: str


class EntityRef(NamedTuple):
    id: str
    storage_preference: str = StoragePreference.CLOUD.value

    def as_response(self) -> dict[str, str]:
        return {"id": self.id, "storagePreference": self.storage_preference}


@dataclass(frozen=True)
class Operation:
    idempotency_key: str
    op_type: OpType
    payload: dict[str, Any] = field(default_factory=dict)
    temp_id: str | None = None
    storage_preference: StoragePreference | None = None

    @property
    def entity(self) -> str:
        return PAYLOAD_RULES[self.op_type].entity

    @property
    def action(self) -> str:
        return PAYLOAD_RULES[self.op_type].action

    @classmethod
    def from_dict(cls, raw: Any, index: int = 0) -> "Operation":
        where = f"operations[{index}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{where} must be an object")

        key = raw.get("idempotencyKey")
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"{where}.idempotencyKey is required")
        if len(key) > 256:
            raise ValidationError(f"{where}.idempotencyKey is longer than 256 characters")

        try:
            op_type = OpType(raw.get("opType"))
        except ValueError:
            raise ValidationError(f"{where}.opType {raw.get('opType')!r} is not supported") from None

        payload = raw.get("payload")
        if not isinstance(payload, dict):
            raise ValidationError(f"{where}.payload must be an object")

        temp_id = raw.get("tempId")
        if temp_id is not None and not isinstance(temp_id, str):
            raise ValidationError(f"{where}.tempId must be a string")

        preference = raw.get("storagePreference")
        if preference is not None:
            try:
                preference = StoragePreference(preference)
            except ValueError:
                raise ValidationError(
                    f"{where}.storagePreference must be 'local' or 'cloud'"
                ) from None

        return cls(
            idempotency_key=key,
            op_type=op_type,
            payload=payload,
            temp_id=temp_id,
            storage_preference=preference,
        )


def parse_operations(body: Any, max_size: int) -> list[Operation]:
    if not isinstance(body, dict) or not isinstance(body.get("operations"), list):
        raise ValidationError("operations array is required")
    raw_ops = body["operations"]
    if len(raw_ops) > max_size:
        raise ValidationError(f"A batch may hold at most {max_size} operations")
    return [Operation.from_dict(raw, index) for index, raw in enumerate(raw_ops)]


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value


def _identifier(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _title(value: Any) -> str:
    title = _text(value).strip()
    if not title:
        raise ValueError("must not be blank")
    if len(title) > 100:
        raise ValueError("must be at most 100 characters")
    return title


def _choice(options: tuple[str, ...]) -> Callable[[Any], str]:
    def check(value: Any) -> str:
        if value not in options:
            raise ValueError(f"must be one of {', '.join(options)}")
        return value

    return check


def _flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("must be a boolean")
    return value


def _days_of_week(value: Any) -> list[int]:
    if not isinstance(value, list) or not all(
        isinstance(day, int) and not isinstance(day, bool) and 0 <= day <= 6 for day in value
    ):
        raise ValueError("must be a list of weekday numbers 0-6")
    return sorted(set(value))


def _iso_date(value: Any) -> str:
    return date.fromisoformat(_text(value)).isoformat()


def _mood_score(value: Any) -> int | None:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 10:
        raise ValueError("must be an integer from 1 to 10")
    return value


def _object(value: Any) -> dict | None:
    if value is not None and not isinstance(value, dict):
        raise ValueError("must be an object")
    return value


FIELD_CHECKS: dict[str, Callable[[Any], Any]] = {
    "id": _identifier,
    "title": _title,
    "description": _text,
    "trackingType": _choice(TRACKING_TYPES),
    "frequency": _choice(FREQUENCIES),
    "daysOfWeek": _days_of_week,
    "archived": _flag,
    "flowId": _identifier,
    "date": _iso_date,
    "symbol": _choice(SYMBOLS),
    "moodScore": _mood_score,
    "note": _text,
    "quantitative": _object,
}

FLOW_FIELDS = ("title", "description", "trackingType", "frequency", "daysOfWeek", "archived")
ENTRY_FIELDS = ("date", "symbol", "moodScore", "note", "quantitative")


class PayloadRule(NamedTuple):
    entity: str
    action: str
    required: tuple[str, ...]
    allowed: tuple[str, ...]


PAYLOAD_RULES: dict[OpType, PayloadRule] = {
    OpType.CREATE_FLOW: PayloadRule("flow", "create", ("title",), FLOW_FIELDS),
    OpType.UPDATE_FLOW: PayloadRule("flow", "update", ("id",), ("id",) + FLOW_FIELDS),
    OpType.DELETE_FLOW: PayloadRule("flow", "delete", ("id",), ("id",)),
    OpType.CREATE_ENTRY: PayloadRule(
        "flow_entry", "create", ("flowId", "date", "symbol"), ("flowId",) + ENTRY_FIELDS
    ),
    OpType.UPDATE_ENTRY: PayloadRule("flow_entry", "update", ("id",), ("id",) + ENTRY_FIELDS),
    OpType.DELETE_ENTRY: PayloadRule("flow_entry", "delete", ("id",), ("id",)),
}


def validate_payload(op: Operation) -> dict[str, Any]:
    """Return the payload reduced to the fields its opType allows.

    Unknown fields are dropped. Raises ValidationError naming the first
    missing or malformed field.
    """
    rule = PAYLOAD_RULES[op.op_type]
    for name in rule.required:
        if op.payload.get(name) is None:
            raise ValidationError(f"{op.op_type.value} payload requires '{name}'")

    cleaned: dict[str, Any] = {}
    for name in rule.allowed:
        if name not in op.payload:
            continue
        try:
            cleaned[name] = FIELD_CHECKS[name](op.payload[name])
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{op.op_type.value} payload field '{name}' {exc}") from None
    return cleaned


def validated(op: Operation) -> Operation:
    """Copy of `op` whose payload has passed its opType rule."""
    return Operation(
        idempotency_key=op.idempotency_key,
        op_type=op.op_type,
        payload=validate_payload(op),
        temp_id=op.temp_id,
        storage_preference=op.storage_preference,
    )
