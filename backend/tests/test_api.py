from __future__ import annotations

import random

from fastapi.testclient import TestClient

from conftest import make_questions
from quiz_arena.application import create_app, status_for_error
from quiz_arena.change_feed import LocalChangeFeed
from quiz_arena.errors import InsufficientBalance, RoomFull, RoomNotFound, SettlementError
from quiz_arena.runtime import ArenaRuntime, RuntimeOptions
from quiz_arena.runtime_types import Question
from quiz_arena.store import InMemoryRoomStore

OPTIONS = RuntimeOptions(
    total_questions=2,
    time_unit=0.01,
    question_time_units=3,
    intro_delay_units=1,
    reveal_delay_units=1,
    ready_grace_units=500,
    countdown_units=500,
    poll_interval=0.05,
    starting_balance=100,
    bot_count_min=1,
    bot_count_max=1,
)


async def _questions(count: int) -> list[Question]:
    return make_questions(count)


def _client() -> TestClient:
    runtime = ArenaRuntime(
        InMemoryRoomStore(LocalChangeFeed()),
        question_source=_questions,
        options=OPTIONS,
        rng=random.Random(3),
    )
    return TestClient(create_app(runtime))


def test_error_status_mapping() -> None:
    assert status_for_error(RoomNotFound("x")) == 404
    assert status_for_error(RoomFull("x", 2)) == 409
    assert status_for_error(InsufficientBalance("u", 10, 0)) == 402
    assert status_for_error(SettlementError("u", [], "down")) == 502


def test_health() -> None:
    with _client() as client:
        response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "store": "up",
        "changeFeed": "up",
        "activeSessions": 0,
    }


def test_profile_lifecycle() -> None:
    with _client() as client:
        created = client.post("/api/profiles", json={"userId": "alice", "username": "  Alice  "})
        fetched = client.get("/api/profiles/alice")
        history = client.get("/api/profiles/alice/history")
        missing = client.get("/api/profiles/nobody")

    assert created.status_code == 200
    assert created.json()["profile"]["username"] == "Alice"
    assert fetched.json()["profile"]["balance"] == 100
    assert history.json() == {"ok": True, "history": []}
    assert missing.status_code == 404
    assert missing.json()["error"] == "ProfileNotFound"


def test_matchmaking_and_room_state() -> None:
    with _client() as client:
        client.post("/api/profiles", json={"userId": "alice"})
        client.post("/api/profiles", json={"userId": "bob"})

        first = client.post("/api/rooms/find", json={"userId": "alice", "mode": "random"}).json()
        second = client.post("/api/rooms/find", json={"userId": "bob", "mode": "random"}).json()
        room_id = first["session"]["roomId"]
        state = client.get(f"/api/rooms/{room_id}").json()

        not_host = client.post(f"/api/sessions/{second['session']['sessionId']}/force-start")
        unknown = client.get("/api/sessions/nope")

    assert second["session"]["roomId"] == room_id
    assert state["room"]["playerCount"] == 2
    assert [player["id"] for player in state["players"]] == ["alice", "bob"]
    assert not_host.status_code == 403
    assert unknown.status_code == 404


def test_insufficient_balance_is_payment_required() -> None:
    with _client() as client:
        client.post("/api/profiles", json={"userId": "alice"})
        client.app.state.runtime.store.profiles["alice"].balance = 0
        response = client.post("/api/rooms/find", json={"userId": "alice", "mode": "random"})

    assert response.status_code == 402
    assert response.json()["error"] == "InsufficientBalance"


def test_answer_validation() -> None:
    with _client() as client:
        client.post("/api/profiles", json={"userId": "alice"})
        session = client.post("/api/rooms/find", json={"userId": "alice", "mode": "bot"}).json()["session"]
        response = client.post(f"/api/sessions/{session['sessionId']}/answer", json={"answerIndex": 7})

    assert session["mode"] == "bot"
    assert session["round"]["phase"] == "countdown_intro"
    assert response.status_code == 422


def test_invite_flow() -> None:
    with _client() as client:
        client.post("/api/profiles", json={"userId": "host"})
        client.post("/api/profiles", json={"userId": "friend"})
        hosted = client.post("/api/rooms/friends", json={"userId": "host", "invitees": ["friend"]}).json()
        invites = client.get("/api/profiles/friend/invites").json()["invites"]
        accepted = client.post(
            f"/api/invites/{invites[0]['id']}/respond",
            json={"userId": "friend", "accept": True},
        ).json()
        again = client.post(
            f"/api/invites/{invites[0]['id']}/respond",
            json={"userId": "friend", "accept": True},
        )

    assert accepted["session"]["roomId"] == hosted["session"]["roomId"]
    assert again.status_code == 409


def test_websocket_streams_state_and_answers() -> None:
    with _client() as client:
        client.post("/api/profiles", json={"userId": "alice"})
        session = client.post("/api/rooms/find", json={"userId": "alice", "mode": "bot"}).json()["session"]

        with client.websocket_connect(f"/api/ws/{session['sessionId']}") as ws:
            first = ws.receive_json()
            assert first["type"] == "state"
            assert first["state"]["sessionId"] == session["sessionId"]

            ws.send_json({"type": "ping"})
            message = ws.receive_json()
            while message["type"] != "pong":
                message = ws.receive_json()

            ws.send_json({"type": "nonsense"})
            message = ws.receive_json()
            while message["type"] != "error":
                message = ws.receive_json()
            assert message["code"] == "UNKNOWN_MESSAGE"


def test_websocket_rejects_unknown_session() -> None:
    with _client() as client:
        with client.websocket_connect("/api/ws/missing") as ws:
            message = ws.receive_json()

    assert message["code"] == "SESSION_NOT_FOUND"
