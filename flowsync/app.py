from __future__ import annotations

from functools import wraps
import logging

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import Forbidden, HTTPException, Unauthorized

from flowsync import config
from flowsync.conflicts import ConflictResolver, parse_conflicts
from flowsync.coordinator import BatchCoordinator
from flowsync.db import DATABASE_ERRORS, ensure_db, get_conn, init_db
from flowsync.entities import FLOW, find_owned, serialize
from flowsync.errors import BatchTransactionError, NotFoundError, ValidationError
from flowsync.ledger import IdempotencyLedger
from flowsync.operations import parse_operations
from flowsync.stats import compute_flow_streak
from flowsync.sync_queue import SyncQueue

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.SECRET_KEY


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if g.user is None:
            raise Unauthorized("Authentication required")
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    @login_required
    def wrapped(*args, **kwargs):
        if not g.user["is_admin"]:
            raise Forbidden("Admin access required")
        return view(*args, **kwargs)

    return wrapped


@app.before_request
def load_user() -> None:
    ensure_db()
    user_id = session.get("user_id")
    if user_id is None:
        g.user = None
        return

    with get_conn() as conn:
        g.user = conn.execute(
            "SELECT id, username, is_admin FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()


@app.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return jsonify({"success": False, "error": str(error)}), 400


@app.errorhandler(NotFoundError)
def handle_not_found(error: NotFoundError):
    return jsonify({"success": False, "error": str(error)}), 404


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"success": False, "error": error.description}), error.code


def handle_database_error(error: Exception):
    logger.exception("Database error on %s %s", request.method, request.path)
    return jsonify({"success": False, "error": "Database error"}), 500


for _error_type in DATABASE_ERRORS:
    app.register_error_handler(_error_type, handle_database_error)


def json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def optional_json_body() -> dict:
    if not request.get_data():
        return {}
    return json_body()


def bounded_int(value, default: int, low: int, high: int, name: str) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if not low <= number <= high:
        raise ValidationError(f"{name} must be between {low} and {high}")
    return number


def sync_queue() -> SyncQueue:
    return SyncQueue(get_conn, BatchCoordinator(get_conn, timeout=config.SYNC_BATCH_TIMEOUT_SECONDS))


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"success": True, "data": {"status": "ok"}, "message": "Service healthy"})


@app.route("/sync/batch", methods=["POST"])
@login_required
def sync_batch():
    user_id = g.user["id"]
    operations = parse_operations(json_body(), config.SYNC_MAX_BATCH_SIZE)
    coordinator = BatchCoordinator(get_conn, timeout=config.SYNC_BATCH_TIMEOUT_SECONDS)
    try:
        results = coordinator.process_batch(operations, user_id)
    except BatchTransactionError as exc:
        return (
            jsonify({"success": False, "error": str(exc), "data": {"results": exc.results}}),
            500,
        )
    return jsonify(
        {
            "success": True,
            "data": {"results": results},
            "message": f"Processed {len(results)} operations",
        }
    )


@app.route("/sync/resolve-conflicts", methods=["POST"])
@login_required
def resolve_conflicts():
    conflicts = parse_conflicts(json_body())
    results = ConflictResolver(get_conn).resolve(conflicts, g.user["id"])
    resolved = sum(1 for item in results if item["status"] == "resolved")
    return jsonify(
        {
            "success": True,
            "data": {"results": results},
            "message": f"Resolved {resolved} of {len(results)} conflicts",
        }
    )


@app.route("/sync/queue", methods=["POST"])
@login_required
def queue_operation():
    body = json_body()
    item = sync_queue().enqueue(
        g.user["id"],
        body.get("entityType"),
        body.get("entityId"),
        body.get("operation"),
        body.get("payload"),
        body.get("metadata"),
    )
    return jsonify({"success": True, "data": item, "message": "Sync operation queued successfully"})


@app.route("/sync/pending", methods=["GET"])
@login_required
def pending_operations():
    limit = bounded_int(request.args.get("limit"), 100, 1, 1000, "limit")
    items = sync_queue().pending(g.user["id"], limit)
    return jsonify(
        {"success": True, "data": items, "message": "Pending operations retrieved successfully"}
    )


@app.route("/sync/status", methods=["GET"])
@login_required
def sync_status():
    user_id = g.user["id"]
    counts = sync_queue().status_counts(user_id)
    with get_conn() as conn:
        recent = IdempotencyLedger(conn).recent(user_id, 10)
    return jsonify(
        {
            "success": True,
            "data": {
                "pendingOperations": counts["pending"],
                "queue": counts,
                "recentSyncs": recent,
            },
            "message": "Sync status retrieved",
        }
    )


@app.route("/flows", methods=["GET"])
@login_required
def list_flows():
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM flows
            WHERE user_id = ? AND deleted_at IS NULL
            ORDER BY created_at ASC
            """,
            (g.user["id"],),
        ).fetchall()
    flows = [serialize(FLOW, row) for row in rows]
    return jsonify({"success": True, "data": flows, "message": f"Found {len(flows)} flows"})


@app.route("/flows/<flow_id>/stats", methods=["GET"])
@login_required
def flow_stats(flow_id: str):
    user_id = g.user["id"]
    with get_conn() as conn:
        flow = find_owned(conn, FLOW, flow_id, user_id)
        if flow["deleted_at"] is not None:
            raise NotFoundError(f"Flow {flow_id} not found")
        entries = conn.execute(
            """
            SELECT entry_date, symbol FROM flow_entries
            WHERE flow_id = ? AND user_id = ? AND deleted_at IS NULL
            """,
            (flow_id, user_id),
        ).fetchall()
    stats = compute_flow_streak(entries)
    stats["flowId"] = flow_id
    return jsonify({"success": True, "data": stats, "message": "Flow stats retrieved"})


@app.route("/admin/sync/run", methods=["POST"])
@admin_required
def run_sync_queue():
    body = optional_json_body()
    batch_size = bounded_int(
        body.get("batchSize"), config.SYNC_QUEUE_BATCH_SIZE, 1, 1000, "batchSize"
    )
    summary = sync_queue().process_pending(batch_size)
    return jsonify({"success": True, "data": summary, "message": "Sync queue processed"})


@app.route("/admin/sync/clear", methods=["POST"])
@admin_required
def clear_old_operations():
    body = optional_json_body()
    days_old = bounded_int(body.get("daysOld"), 7, 1, 365, "daysOld")
    cleared = sync_queue().clear_old(days_old)
    return jsonify(
        {
            "success": True,
            "data": cleared,
            "message": f"Cleared {cleared['clearedCount']} old operations",
        }
    )


@app.route("/admin/sync/stats", methods=["GET"])
@admin_required
def sync_stats():
    return jsonify(
        {"success": True, "data": sync_queue().stats(), "message": "Sync stats retrieved successfully"}
    )


if __name__ == "__main__":
    init_db()
    app.run(debug=True)
