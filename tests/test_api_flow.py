from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

from app import create_app
from backend.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str = "api_flow.db"):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def _setup_room(client: TestClient) -> str:
    for user_id in ("owner", "m1", "m2"):
        assert client.post("/users", json={"user_id": user_id}).status_code == 201

    blocks = {
        "owner": ("09:00", "12:00"),
        "m1": ("09:00", "10:00"),
        "m2": ("10:00", "12:00"),
    }
    for user_id, (start, end) in blocks.items():
        response = client.put(
            f"/users/{user_id}/preferred_blocks",
            json={"blocks": [{"start_time": start, "end_time": end, "day_of_week": 1}]},
            headers=_as(user_id),
        )
        assert response.status_code == 200, response.text

    created = client.post(
        "/rooms",
        json={"name": "Studio", "min_minutes_per_week": 60},
        headers=_as("owner"),
    )
    assert created.status_code == 201, created.text
    room_id = created.json()["room_id"]
    for user_id in ("m1", "m2"):
        joined = client.post(f"/rooms/{room_id}/members", json={}, headers=_as(user_id))
        assert joined.status_code == 200, joined.text
    return room_id


def test_schedule_then_exchange_end_to_end(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path))
    with TestClient(app) as client:
        room_id = _setup_room(client)

        forbidden = client.post(
            f"/rooms/{room_id}/auto_schedule",
            json={"start_date": "2026-03-02"},
            headers=_as("m1"),
        )
        assert forbidden.status_code == 403

        scheduled = client.post(
            f"/rooms/{room_id}/auto_schedule",
            json={"start_date": "2026-03-02"},
            headers=_as("owner"),
        )
        assert scheduled.status_code == 200, scheduled.text
        body = scheduled.json()
        assert body["run_number"] == 1
        assert sorted((slot["user_id"], slot["start_time"], slot["end_time"]) for slot in body["slots"]) == [
            ("m1", "09:00", "10:00"),
            ("m2", "10:00", "11:00"),
        ]

        filed = client.post(
            f"/rooms/{room_id}/requests",
            json={
                "type": "time_request",
                "time_slot": {"date": "2026-03-02", "start_time": "10:00", "end_time": "11:00"},
                "message": "Could I have the slot after mine?",
            },
            headers=_as("m1"),
        )
        assert filed.status_code == 201, filed.text
        request = filed.json()
        assert request["target_user"] == "m2"
        assert request["status"] == "pending"

        not_yours = client.post(
            f"/rooms/{room_id}/requests/{request['request_id']}/respond",
            json={"action": "approved"},
            headers=_as("m1"),
        )
        assert not_yours.status_code == 403

        answered = client.post(
            f"/rooms/{room_id}/requests/{request['request_id']}/respond",
            json={"action": "approved"},
            headers=_as("m2"),
        )
        assert answered.status_code == 200, answered.text
        assert answered.json()["status"] == "approved"

        again = client.post(
            f"/rooms/{room_id}/requests/{request['request_id']}/respond",
            json={"action": "rejected"},
            headers=_as("m2"),
        )
        assert again.status_code == 409

        slots = client.get(f"/rooms/{room_id}/slots", params={"start_date": "2026-03-02"}).json()["slots"]
        assert sorted((slot["user_id"], slot["start_time"]) for slot in slots) == [
            ("m1", "09:00"),
            ("m1", "10:00"),
            ("m2", "11:00"),
        ]

        activities = client.get(f"/rooms/{room_id}/activities").json()
        assert activities[0]["action"] == "change_approve"
        assert {item["action"] for item in activities} >= {"auto_assign", "slot_request"}


def test_guards_map_to_http_statuses(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_guards.db"))
    with TestClient(app) as client:
        room_id = _setup_room(client)
        client.post(
            f"/rooms/{room_id}/auto_schedule",
            json={"start_date": "2026-03-02"},
            headers=_as("owner"),
        )

        missing_actor = client.post(
            f"/rooms/{room_id}/requests",
            json={
                "type": "time_request",
                "time_slot": {"date": "2026-03-02", "start_time": "10:00", "end_time": "11:00"},
            },
        )
        assert missing_actor.status_code == 401

        weekend = client.post(
            f"/rooms/{room_id}/slots/move",
            json={"source_date": "2026-03-02", "target_date": "2026-03-07"},
            headers=_as("m1"),
        )
        assert weekend.status_code == 400
        assert weekend.json()["detail"] == "Target date must be a weekday"

        others_blocks = client.put(
            "/users/m2/preferred_blocks",
            json={"blocks": [{"start_time": "09:00", "end_time": "10:00", "day_of_week": 2}]},
            headers=_as("m1"),
        )
        assert others_blocks.status_code == 403

        bad_block = client.put(
            "/users/m1/preferred_blocks",
            json={"blocks": [{"start_time": "11:00", "end_time": "10:00", "day_of_week": 2}]},
            headers=_as("m1"),
        )
        assert bad_block.status_code == 422

        assert client.get("/rooms/missing").status_code == 404
        assert client.post(
            f"/rooms/{room_id}/requests/missing/cancel", headers=_as("m1")
        ).status_code == 404
        assert client.post(
            f"/rooms/{room_id}/auto_schedule",
            json={"start_date": "2026-03-02", "min_minutes_per_week": 900},
            headers=_as("owner"),
        ).status_code == 400
