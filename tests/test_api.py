import asyncio
import itertools
import json

import config
import services
from errors import StoreUnavailableError
from frontdesk import desk_for
from main import event_stream
from tests.helpers import ScriptedSubscription
from viewers import ViewerSync, read_patient_view

PIN = "1234"


def register(client, name, phone=None):
    response = client.post("/patients", json={"name": name, "phone": phone})
    assert response.status_code == 201, response.text
    return response.json()


def action(client, name, **fields):
    return client.post("/admin/action", json={"passcode": PIN, "action": name, **fields})


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["redis"] == "not_configured"


def test_register_hands_out_tickets(client):
    first = register(client, "Amina", "0612345678")
    second = register(client, "Youssef")
    assert (first["position"], first["estimated_wait_time"]) == (1, 0)
    assert (second["position"], second["estimated_wait_time"]) == (2, 15)
    assert first["status"] == "waiting"


def test_register_validation_errors(client):
    response = client.post("/patients", json={"name": "  "})
    assert response.status_code == 400
    assert response.json()["detail"] == "Patient name is required"

    response = client.post("/patients", json={"name": "Amina", "phone": "123456"})
    assert response.status_code == 400
    assert "Invalid phone number" in response.json()["detail"]


def test_register_is_rate_limited(client, fake_redis, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT", 2)
    register(client, "A", "0612345678")
    register(client, "A", "06 12 34 56 78")
    response = client.post("/patients", json={"name": "A", "phone": "0612345678"})
    assert response.status_code == 429


def test_patient_view(client):
    ticket = register(client, "Amina")
    view = client.get(f"/queue/{ticket['patient_id']}").json()
    assert view["screen"] == "waiting"
    assert view["position"] == 1
    assert client.get("/queue/unknown").status_code == 404


def test_admin_requires_pin(client):
    assert client.get("/admin/board", params={"passcode": "0000"}).status_code == 401
    response = client.post("/admin/action", json={"passcode": "0000", "action": "call_next"})
    assert response.status_code == 401
    assert client.get("/admin/events", params={"passcode": "0000"}).status_code == 401


def test_front_desk_flow(client):
    a = register(client, "A")
    b = register(client, "B")
    c = register(client, "C")

    called = action(client, "call_next").json()
    assert called["entry"]["patient_id"] == a["patient_id"]
    assert client.get(f"/queue/{a['patient_id']}").json()["screen"] == "your_turn"

    response = action(client, "complete", entry_id=a["entry_id"], patient_id=a["patient_id"])
    assert response.status_code == 200
    assert response.json()["already_resolved"] is False

    board = client.get("/admin/board", params={"passcode": PIN}).json()
    assert [(row["name"], row["position"], row["estimated_wait_time"]) for row in board["entries"]] == [
        ("B", 1, 0),
        ("C", 2, 15),
    ]
    assert client.get(f"/queue/{b['patient_id']}").json()["screen"] == "waiting"
    assert client.get(f"/queue/{a['patient_id']}").json()["screen"] == "thank_you"

    again = action(client, "complete", entry_id=a["entry_id"], patient_id=a["patient_id"])
    assert again.status_code == 200
    assert again.json()["already_resolved"] is True

    response = action(client, "cancel", entry_id=c["entry_id"], patient_id=c["patient_id"])
    assert response.status_code == 200
    view = client.get(f"/queue/{c['patient_id']}").json()
    assert (view["screen"], view["status"]) == ("thank_you", "cancelled")


def test_call_next_on_empty_queue(client):
    response = action(client, "call_next")
    assert response.status_code == 200
    assert response.json()["empty"] is True


def test_invalid_action(client):
    response = action(client, "promote")
    assert response.status_code == 400


def test_admin_add_patient(client):
    response = client.post("/admin/patients", json={"passcode": PIN, "name": "Amina", "phone": "+212612345678"})
    assert response.status_code == 201
    assert response.json()["entry"]["position"] == 1


def test_busy_desk_returns_conflict(client):
    desk = desk_for("desk-1")
    desk._in_flight.acquire()
    try:
        response = action(client, "call_next", session="desk-1")
        assert response.status_code == 409
    finally:
        desk._in_flight.release()
    assert action(client, "call_next", session="desk-1").status_code == 200


def test_settings_and_metrics(client):
    register(client, "A")
    register(client, "B")
    response = client.post("/admin/settings", json={"passcode": PIN, "average_consultation_time": 20})
    assert response.status_code == 200
    assert response.json()["average_consultation_time"] == 20

    board = client.get("/admin/board", params={"passcode": PIN}).json()
    assert [row["estimated_wait_time"] for row in board["entries"]] == [0, 20]

    metrics = client.get("/admin/metrics", params={"passcode": PIN}).json()
    assert metrics["queue_length"] == 2
    assert metrics["estimated_wait_for_new_patient"] == 40

    bad = client.post("/admin/settings", json={"passcode": PIN, "average_consultation_time": 0})
    assert bad.status_code == 400


def test_closed_queue_refuses_registration(client):
    client.post("/admin/settings", json={"passcode": PIN, "open": False})
    response = client.post("/patients", json={"name": "Amina"})
    assert response.status_code == 400
    assert response.json()["detail"] == "The queue is closed"


def test_patient_events_for_unknown_patient(client):
    assert client.get("/queue/unknown/events").status_code == 404


def test_store_unavailable_asks_for_retry(client, monkeypatch):
    def unavailable(session):
        raise StoreUnavailableError("Database unavailable")

    monkeypatch.setattr(services, "get_board", unavailable)
    response = client.get("/admin/board", params={"passcode": PIN})
    assert response.status_code == 503
    assert response.json() == {"detail": "Database unavailable", "retry": True}


# --- event streams ---

class StubRequest:
    """Reports the client as gone after ``connected_checks`` checks."""

    def __init__(self, connected_checks):
        self.connected_checks = connected_checks

    async def is_disconnected(self):
        self.connected_checks -= 1
        return self.connected_checks < 0


def collect(request, sync, subscription):
    async def run():
        return [frame async for frame in event_stream(request, sync, subscription)]

    frames = asyncio.run(run())
    assert all(frame.startswith("data: ") and frame.endswith("\n\n") for frame in frames)
    return [json.loads(frame[len("data: "):]) for frame in frames]


def test_event_stream_sends_views_and_heartbeats_until_disconnect():
    counter = itertools.count(1)
    sync = ViewerSync(lambda: {"n": next(counter)})
    subscription = ScriptedSubscription([True, False, True])

    messages = collect(StubRequest(3), sync, subscription)

    assert messages == [
        {"type": "view", "data": {"n": 1}},
        {"type": "view", "data": {"n": 2}},
        {"type": "heartbeat"},
    ]
    assert subscription.closed


def test_event_stream_releases_subscription_when_client_is_already_gone():
    subscription = ScriptedSubscription([])
    assert collect(StubRequest(0), ViewerSync(lambda: {}), subscription) == []
    assert subscription.closed


def test_event_stream_reports_store_failure_with_retry(session):
    patient, _ = services.register_patient(session, "Amina")
    calls = itertools.count()

    def read():
        if next(calls) > 0:
            raise StoreUnavailableError("Database unavailable")
        return read_patient_view(patient.id)

    subscription = ScriptedSubscription([True])
    messages = collect(StubRequest(10), ViewerSync(read), subscription)

    assert messages[0]["type"] == "view"
    assert (messages[0]["data"]["screen"], messages[0]["data"]["position"]) == ("waiting", 1)
    assert messages[1] == {"type": "error", "message": "Database unavailable", "retry": True}
    assert len(messages) == 2
    assert subscription.closed
