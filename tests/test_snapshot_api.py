import asyncio

import pytest
from fastapi.testclient import TestClient

from rolewatch_system.activity.activity_store import ActivityStore
from rolewatch_system.api.snapshot_api import create_app
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager

API_KEY = "test-api-key"
HEADERS = {"x-api-key": API_KEY}


@pytest.fixture
def api_client(database, clock):
    store = ActivityStore(database, clock=clock)
    manager = SnapshotManager(database, clock=clock)

    async def seed():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await store.record_message("1", "alice", "Prover", "c2", "art")
        await store.record_message("2", "bob", "Proofer", "c1", "general")
        for _ in range(2):
            clock.advance(hours=4)
            await manager.create()

    asyncio.run(seed())
    with TestClient(create_app(manager, API_KEY)) as client:
        yield client


def test_root_and_health_need_no_key(api_client):
    assert api_client.get("/").json() == {"status": "Discord Bot API is running"}
    assert api_client.get("/health").json()["status"] == "healthy"


def test_missing_or_wrong_key_is_rejected(api_client):
    assert api_client.get("/api/snapshots").status_code == 401
    assert api_client.get("/api/snapshots", headers={"x-api-key": "nope"}).status_code == 401
    assert api_client.delete("/api/snapshots/1").status_code == 401


def test_list_snapshots(api_client):
    response = api_client.get("/api/snapshots", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert [s["id"] for s in body] == [2, 1]
    assert all(s["record_count"] == 3 for s in body)
    assert set(body[0]) == {"id", "name", "created_at", "record_count"}


def test_get_snapshot_detail(api_client):
    response = api_client.get("/api/snapshots/1", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["snapshot"]["id"] == 1
    alice = body["users"][0]
    assert alice["user_id"] == "1"
    assert alice["total_messages"] == 2
    assert {c["channel_id"] for c in alice["channels"]} == {"c1", "c2"}


def test_get_unknown_snapshot_is_404(api_client):
    assert api_client.get("/api/snapshots/42", headers=HEADERS).status_code == 404


def test_delete_snapshot(api_client):
    response = api_client.delete("/api/snapshots/2", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"deleted": True, "sequence_reset": True}
    assert api_client.get("/api/snapshots/2", headers=HEADERS).status_code == 404
    assert api_client.delete("/api/snapshots/2", headers=HEADERS).status_code == 404
