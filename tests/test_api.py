import asyncio
import logging
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeMatrix, FakeTeams
from matrix_teams.api import create_app
from matrix_teams.bridge import Bridge, BridgeError


@pytest.fixture
def client(settings, bridge):
    return TestClient(create_app(settings, bridge=bridge))


@pytest.fixture
def secured_client(settings, bridge):
    settings = settings.with_overrides(hs_token="hs-secret")
    bridge.settings = settings
    return TestClient(create_app(settings, bridge=bridge))


@pytest.mark.parametrize("prefix", ["", "/_matrix/app/v1"])
def test_room_alias_creates_room(client, fake_matrix, prefix):
    response = client.get(f"{prefix}/rooms/%23teams_19abc:example.org")
    assert response.status_code == 200
    assert response.json() == {}
    assert fake_matrix.created[0].room_alias_name == "teams_19abc"


def test_room_alias_invalid(client):
    response = client.get("/rooms/%23")
    assert response.status_code == 400
    assert response.json() == {"msg": "invalid request"}


def test_room_alias_create_failure(settings, caplog):
    bridge = Bridge(settings, matrix=FakeMatrix(existing_aliases={"taken"}), teams=FakeTeams())
    client = TestClient(create_app(settings, bridge=bridge))

    with caplog.at_level(logging.ERROR):
        response = client.get("/rooms/%23taken:example.org")

    assert response.status_code == 500
    assert response.json() == {"msg": "unable to create room"}
    assert "unable to create room #taken:example.org" in caplog.text


@pytest.mark.parametrize("prefix", ["", "/_matrix/app/v1"])
def test_transaction_is_accepted(client, prefix, caplog):
    payload = {"events": [{"type": "m.room.message", "content": {"body": "hi"}}]}
    with caplog.at_level(logging.DEBUG, logger="matrix_teams.bridge"):
        response = client.put(f"{prefix}/transactions/17", json=payload)

    assert response.status_code == 200
    assert response.json() == {}
    assert "transaction 17:" in caplog.text
    assert "1 events (m.room.message=1)" in caplog.text


@pytest.mark.parametrize("odd_type", [None, 5, ["x"]])
def test_transaction_with_odd_event_type_is_accepted(client, odd_type):
    payload = {"events": [{"type": odd_type}, {"type": "m.room.message"}]}
    response = client.put("/transactions/1", json=payload)
    assert response.status_code == 200
    assert response.json() == {}


def test_transaction_with_non_json_body(client):
    response = client.put("/transactions/3", content=b"raw bytes")
    assert response.status_code == 200
    assert response.json() == {}


def test_transaction_invalid_id(client):
    response = client.put("/transactions/abc", json={"events": []})
    assert response.status_code == 400
    assert response.json() == {"error": "invalid ID"}


def test_open_when_no_hs_token_configured(client):
    assert client.put("/transactions/1", json={"events": []}).status_code == 200


def test_hs_token_required_when_configured(secured_client):
    response = secured_client.put("/transactions/1", json={"events": []})
    assert response.status_code == 403
    assert response.json() == {"detail": "invalid homeserver token"}


def test_hs_token_wrong_value(secured_client):
    response = secured_client.put("/transactions/1?access_token=nope", json={"events": []})
    assert response.status_code == 403


def test_hs_token_bearer_accepted_despite_wrong_query_token(secured_client):
    response = secured_client.put(
        "/transactions/1?access_token=stale",
        json={"events": []},
        headers={"Authorization": "Bearer hs-secret"},
    )
    assert response.status_code == 200


def test_hs_token_as_query_parameter(secured_client):
    response = secured_client.put("/transactions/1?access_token=hs-secret", json={"events": []})
    assert response.status_code == 200


def test_hs_token_as_bearer_header(secured_client, fake_matrix):
    response = secured_client.get(
        "/_matrix/app/v1/rooms/%23teams_x:example.org",
        headers={"Authorization": "Bearer hs-secret"},
    )
    assert response.status_code == 200
    assert fake_matrix.created[0].room_alias_name == "teams_x"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["matrix_url"] == "http://localhost:8008"
    assert data["teams_connected"] is True
    assert "timestamp" in data


def test_health_does_not_need_hs_token(secured_client):
    assert secured_client.get("/health").status_code == 200


def test_startup_sync_runs_in_background(settings, fake_matrix):
    settings = settings.with_overrides(sync_on_startup=True)
    teams = FakeTeams({"teams": [{"id": "t", "displayName": "Team", "channels": [{"id": "19:c@thread.tacv2", "displayName": "C"}]}]})
    bridge = Bridge(settings, matrix=fake_matrix, teams=teams)

    with TestClient(create_app(settings, bridge=bridge)) as client:
        # the health call gives the scheduled sync a chance to run
        assert client.get("/health").status_code == 200

    assert [c.room_alias_name for c in fake_matrix.created] == ["teams_19c"]


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def test_startup_sync_failure_is_logged_and_server_keeps_running(settings, fake_matrix, caplog):
    settings = settings.with_overrides(sync_on_startup=True)
    bridge = Bridge(settings, matrix=fake_matrix, teams=FakeTeams())

    async def failing_sync():
        raise BridgeError("unable to get conversations: 503")

    bridge.sync_teams = failing_sync

    with caplog.at_level(logging.ERROR, logger="matrix_teams.api"):
        with TestClient(create_app(settings, bridge=bridge)) as client:
            assert wait_for(lambda: "startup sync failed" in caplog.text)
            assert client.get("/health").status_code == 200
            assert client.put("/transactions/5", json={"events": []}).status_code == 200

    assert "unable to get conversations: 503" in caplog.text


def test_startup_sync_unexpected_error_is_logged(settings, fake_matrix, caplog):
    settings = settings.with_overrides(sync_on_startup=True)
    bridge = Bridge(settings, matrix=fake_matrix, teams=FakeTeams())

    async def broken_sync():
        raise RuntimeError("boom")

    bridge.sync_teams = broken_sync

    with caplog.at_level(logging.ERROR, logger="matrix_teams.api"):
        with TestClient(create_app(settings, bridge=bridge)) as client:
            assert wait_for(lambda: "startup sync crashed" in caplog.text)
            assert client.get("/health").status_code == 200

    assert "RuntimeError: boom" in caplog.text


def test_pending_startup_sync_is_cancelled_on_shutdown(settings, fake_matrix):
    settings = settings.with_overrides(sync_on_startup=True)
    bridge = Bridge(settings, matrix=fake_matrix, teams=FakeTeams())
    state = {"started": False, "cancelled": False}

    async def slow_sync():
        state["started"] = True
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise

    bridge.sync_teams = slow_sync

    started = time.monotonic()
    with TestClient(create_app(settings, bridge=bridge)):
        assert wait_for(lambda: state["started"])

    assert state["cancelled"] is True
    assert time.monotonic() - started < 30
