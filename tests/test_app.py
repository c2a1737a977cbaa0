from datetime import date


def create_flow_op(key, title, temp_id=None, **extra):
    return {
        "idempotencyKey": key,
        "opType": "CREATE_FLOW",
        "payload": {"title": title},
        "tempId": temp_id,
        **extra,
    }


def test_health(client):
    assert client.get("/health").get_json()["data"] == {"status": "ok"}


def test_sync_requires_authentication(client):
    response = client.post("/sync/batch", json={"operations": []})
    assert response.status_code == 401
    assert response.get_json()["success"] is False


def test_batch_sync_returns_results_envelope(login, user_id):
    client = login(user_id)
    response = client.post(
        "/sync/batch",
        json={
            "operations": [
                create_flow_op("k1", "Read", "t1"),
                {"idempotencyKey": "k2", "opType": "DELETE_FLOW", "payload": {"id": "nope"}},
                create_flow_op("k3", "Local", "abc", storagePreference="local"),
            ]
        },
    )
    body = response.get_json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Processed 3 operations"
    results = body["data"]["results"]
    assert [r["status"] for r in results] == ["success", "error", "success"]
    assert results[2] == {"tempId": "abc", "serverId": "abc", "status": "success"}


def test_batch_replay_over_http_reports_duplicates(login, user_id):
    client = login(user_id)
    payload = {"operations": [create_flow_op("same", "Walk", "t")]}
    first = client.post("/sync/batch", json=payload).get_json()["data"]["results"][0]
    second = client.post("/sync/batch", json=payload).get_json()["data"]["results"][0]

    assert second["status"] == "duplicate"
    assert second["serverId"] == first["serverId"]


def test_malformed_batch_is_rejected(login, user_id):
    client = login(user_id)
    response = client.post(
        "/sync/batch", json={"operations": [{"opType": "CREATE_FLOW", "payload": {}}]}
    )
    assert response.status_code == 400
    assert "idempotencyKey" in response.get_json()["error"]

    assert client.post("/sync/batch", data="not json").status_code == 400


def test_batch_size_limit(login, user_id, monkeypatch):
    from flowsync import config

    monkeypatch.setattr(config, "SYNC_MAX_BATCH_SIZE", 1)
    client = login(user_id)
    response = client.post(
        "/sync/batch", json={"operations": [create_flow_op("a", "A"), create_flow_op("b", "B")]}
    )
    assert response.status_code == 400


def test_batch_transaction_failure_returns_500(login, user_id, monkeypatch):
    from flowsync.coordinator import BatchCoordinator
    from flowsync.errors import BatchTransactionError

    def explode(self, operations, user_id):
        raise BatchTransactionError("could not commit", [{"tempId": "t", "serverId": "s", "status": "success"}])

    monkeypatch.setattr(BatchCoordinator, "process_batch", explode)
    client = login(user_id)
    response = client.post("/sync/batch", json={"operations": [create_flow_op("a", "A", "t")]})
    body = response.get_json()

    assert response.status_code == 500
    assert body == {
        "success": False,
        "error": "could not commit",
        "data": {"results": [{"tempId": "t", "serverId": "s", "status": "success"}]},
    }


def test_resolve_conflicts_endpoint(login, user_id):
    client = login(user_id)
    flow_id = client.post("/sync/batch", json={"operations": [create_flow_op("c", "Tea")]}).get_json()[
        "data"
    ]["results"][0]["serverId"]

    response = client.post(
        "/sync/resolve-conflicts",
        json={
            "conflicts": [
                {
                    "entityType": "flow",
                    "entityId": flow_id,
                    "localData": {"title": "Tea", "deletedAt": None},
                    "serverData": {"title": "Tea", "deletedAt": "2024-06-01T00:00:00+00:00"},
                    "conflictType": "deletion_conflict",
                }
            ]
        },
    )
    body = response.get_json()

    assert response.status_code == 200
    assert body["data"]["results"][0]["deleted"] is True
    assert client.get("/flows").get_json()["data"] == []


def test_resolve_conflicts_rejects_bad_body(login, user_id):
    client = login(user_id)
    assert client.post("/sync/resolve-conflicts", json={"conflicts": "x"}).status_code == 400


def test_flows_listing_and_stats(login, user_id):
    client = login(user_id)
    flow_id = client.post("/sync/batch", json={"operations": [create_flow_op("c", "Run")]}).get_json()[
        "data"
    ]["results"][0]["serverId"]
    client.post(
        "/sync/batch",
        json={
            "operations": [
                {
                    "idempotencyKey": "e",
                    "opType": "CREATE_ENTRY",
                    "payload": {"flowId": flow_id, "date": date.today().isoformat(), "symbol": "+"},
                }
            ]
        },
    )

    flows = client.get("/flows").get_json()["data"]
    assert [f["title"] for f in flows] == ["Run"]

    stats = client.get(f"/flows/{flow_id}/stats").get_json()["data"]
    assert stats["flowId"] == flow_id
    assert stats["currentStreak"] == 1

    assert client.get("/flows/unknown/stats").status_code == 404


def test_queue_pending_and_status(login, user_id):
    client = login(user_id)
    queued = client.post(
        "/sync/queue",
        json={"entityType": "flow", "entityId": "tmp", "operation": "CREATE", "payload": {"title": "Q"}},
    )
    assert queued.status_code == 200

    pending = client.get("/sync/pending?limit=5").get_json()["data"]
    assert len(pending) == 1
    assert client.get("/sync/pending?limit=0").status_code == 400

    client.post("/sync/batch", json={"operations": [create_flow_op("k", "Logged")]})
    status = client.get("/sync/status").get_json()["data"]
    assert status["pendingOperations"] == 1
    assert status["recentSyncs"][0]["idempotencyKey"] == "k"


def test_admin_routes_require_admin(login, user_id):
    client = login(user_id)
    assert client.get("/admin/sync/stats").status_code == 403


def test_admin_can_run_and_clear_queue(login, user_id, admin_id):
    client = login(user_id)
    client.post(
        "/sync/queue",
        json={"entityType": "flow", "entityId": "tmp", "operation": "CREATE", "payload": {"title": "Q"}},
    )

    client = login(admin_id)
    run = client.post("/admin/sync/run").get_json()["data"]
    assert run["completed"] == 1

    stats = client.get("/admin/sync/stats").get_json()["data"]
    assert stats["completedOperations"] == 1

    cleared = client.post("/admin/sync/clear", json={"daysOld": 1}).get_json()
    assert cleared["data"]["clearedCount"] == 0
    assert client.post("/admin/sync/clear", json={"daysOld": 0}).status_code == 400


def test_resolve_conflicts_reports_unsupported_item_per_item(login, user_id):
    client = login(user_id)
    flow_id = client.post("/sync/batch", json={"operations": [create_flow_op("m", "Tea")]}).get_json()[
        "data"
    ]["results"][0]["serverId"]

    response = client.post(
        "/sync/resolve-conflicts",
        json={
            "conflicts": [
                {
                    "entityType": "flow",
                    "entityId": flow_id,
                    "localData": {"title": "Green tea"},
                    "serverData": {"description": "Loose leaf"},
                    "conflictType": "data_conflict",
                },
                {
                    "entityType": "user_settings",
                    "entityId": "settings-1",
                    "localData": {"theme": "dark"},
                    "serverData": {"theme": "light"},
                    "conflictType": "data_conflict",
                },
            ]
        },
    )
    body = response.get_json()

    assert response.status_code == 200
    assert [r["status"] for r in body["data"]["results"]] == ["resolved", "error"]
    assert body["data"]["results"][1]["entityId"] == "settings-1"
    assert body["message"] == "Resolved 1 of 2 conflicts"


def test_database_error_returns_json_envelope(login, user_id, monkeypatch):
    import sqlite3

    from flowsync.conflicts import ConflictResolver

    def explode(self, conflicts, user_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ConflictResolver, "resolve", explode)
    client = login(user_id)
    response = client.post("/sync/resolve-conflicts", json={"conflicts": []})

    assert response.status_code == 500
    assert response.is_json
    assert response.get_json() == {"success": False, "error": "Database error"}
