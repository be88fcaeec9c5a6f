"""
Route tests through FastAPI's TestClient.

Background autosaves run before TestClient returns, so the stored record
can be checked right after each request.
"""

from app.database import SessionLocal
from app.services.coach_prompts import FALLBACK_QUESTIONS
from app.services.records import get_record

DAY = "2024-01-15"


def stored(day=DAY):
    db = SessionLocal()
    try:
        record = get_record(db, day)
        return record.to_dict() if record else None
    finally:
        db.close()


def add_note(client, text, category="good", day=DAY):
    note = client.post(f"/api/board/{day}/notes", json={"type": category}).json()
    return client.patch(f"/api/board/{day}/notes/{note['id']}", json={"text": text}).json()


class TestReflectionFlow:
    """Board -> topic -> chat, with the coach offline."""

    def test_end_to_end_without_api_key(self, client):
        today = client.get("/api/today").json()["date"]
        note = add_note(client, "Shipped the feature on time", day=today)
        assert note["type"] == "good"

        resp = client.post(f"/api/sessions/{today}/select")
        assert resp.status_code == 200
        assert resp.json()["step"] == "select"

        resp = client.post(f"/api/sessions/{today}/topic", json={"itemId": note["id"]})
        assert resp.status_code == 200
        opening = resp.json()["chatMessages"][0]
        assert opening["sender"] == "ai"
        assert "Shipped the feature on time" in opening["text"]

        resp = client.post(f"/api/chat/{today}/messages", json={"text": "It felt great"})
        body = resp.json()
        assert body["accepted"] is True
        assert body["fallback"] is True
        assert body["reason"] == "missing_credentials"
        assert body["message"]["text"] in FALLBACK_QUESTIONS["initial"]

        record = stored(today)
        assert [m["sender"] for m in record["chatMessages"]] == ["ai", "user", "ai"]
        assert record["chatMessages"][1]["text"] == "It felt great"
        assert record["selectedItem"]["id"] == note["id"]

    def test_blank_message_not_accepted(self, client):
        note = add_note(client, "Went for a walk")
        client.post(f"/api/sessions/{DAY}/topic", json={"itemId": note["id"]})
        body = client.post(f"/api/chat/{DAY}/messages", json={"text": "  "}).json()
        assert body["accepted"] is False
        assert len(body["chatMessages"]) == 1

    def test_select_requires_written_note(self, client):
        client.post(f"/api/board/{DAY}/notes", json={"type": "good"})
        resp = client.post(f"/api/sessions/{DAY}/select")
        assert resp.status_code == 400

    def test_topic_must_have_text(self, client):
        note = client.post(f"/api/board/{DAY}/notes", json={"type": "growth"}).json()
        resp = client.post(f"/api/sessions/{DAY}/topic", json={"itemId": note["id"]})
        assert resp.status_code == 400

    def test_chat_before_topic(self, client):
        resp = client.post(f"/api/chat/{DAY}/messages", json={"text": "hello"})
        assert resp.status_code == 400

    def test_back_from_chat_clears_topic_keeps_notes(self, client):
        note = add_note(client, "Read a chapter")
        client.post(f"/api/sessions/{DAY}/topic", json={"itemId": note["id"]})

        body = client.post(f"/api/sessions/{DAY}/back").json()
        assert body["step"] == "select"
        assert body["selectedItem"] is None
        assert body["chatMessages"] == []

        body = client.post(f"/api/sessions/{DAY}/back").json()
        assert body["step"] == "input"
        board = client.get(f"/api/board/{DAY}").json()
        assert [n["text"] for n in board["board"]["items"]] == ["Read a chapter"]


class TestBoardRoutes:
    def test_delete_note_cascades(self, client):
        a = add_note(client, "a")
        b = add_note(client, "b")
        c = add_note(client, "c")
        client.post(f"/api/board/{DAY}/connections", json={
            "from": a["id"], "fromPoint": "right", "to": b["id"], "toPoint": "left",
        })
        keep = client.post(f"/api/board/{DAY}/connections", json={
            "from": b["id"], "fromPoint": "bottom", "to": c["id"], "toPoint": "top",
        }).json()

        resp = client.delete(f"/api/board/{DAY}/notes/{a['id']}")
        assert len(resp.json()["droppedConnections"]) == 1

        board = client.get(f"/api/board/{DAY}").json()["board"]
        assert [conn["id"] for conn in board["connections"]] == [keep["id"]]
        assert [conn["id"] for conn in stored()["connections"]] == [keep["id"]]

    def test_self_connection_rejected(self, client):
        a = add_note(client, "a")
        resp = client.post(f"/api/board/{DAY}/connections", json={
            "from": a["id"], "fromPoint": "right", "to": a["id"], "toPoint": "left",
        })
        assert resp.status_code == 400

    def test_move_is_clamped(self, client):
        a = add_note(client, "a")
        client.post(f"/api/board/{DAY}/resize", json={"width": 800, "height": 600})
        moved = client.post(f"/api/board/{DAY}/notes/{a['id']}/move", json={"x": -50, "y": 10}).json()
        assert moved["x"] == 0
        moved = client.post(f"/api/board/{DAY}/notes/{a['id']}/move", json={"x": 1000, "y": 10}).json()
        assert moved["x"] == 576

    def test_unknown_note_is_404(self, client):
        resp = client.patch(f"/api/board/{DAY}/notes/nope", json={"text": "x"})
        assert resp.status_code == 404

    def test_input_events_connect_notes(self, client):
        a = add_note(client, "a")
        b = add_note(client, "b")
        client.post(f"/api/board/{DAY}/input", json={
            "type": "anchor_down", "itemId": a["id"], "point": "right",
        })
        body = client.post(f"/api/board/{DAY}/input", json={
            "type": "anchor_down", "itemId": b["id"], "point": "left",
        }).json()
        assert body["changed"] is True
        assert body["input"]["mode"] == "idle"
        assert len(body["routes"]) == 1
        assert len(stored()["connections"]) == 1

    def test_backspace_while_editing_keeps_note(self, client):
        a = add_note(client, "typing here")
        client.post(f"/api/board/{DAY}/input", json={"type": "pointer_down", "itemId": a["id"]})
        client.post(f"/api/board/{DAY}/input", json={"type": "pointer_up"})

        body = client.post(f"/api/board/{DAY}/input", json={
            "type": "key_down", "key": "Backspace", "editing": True,
        }).json()
        assert body["changed"] is False
        assert [n["text"] for n in body["board"]["items"]] == ["typing here"]

        body = client.post(f"/api/board/{DAY}/input", json={
            "type": "key_down", "key": "Backspace",
        }).json()
        assert body["board"]["items"] == []

    def test_unknown_input_event(self, client):
        resp = client.post(f"/api/board/{DAY}/input", json={"type": "wheel"})
        assert resp.status_code == 400

    def test_layout_reroutes(self, client):
        a = add_note(client, "a")
        b = add_note(client, "b")
        client.post(f"/api/board/{DAY}/connections", json={
            "from": a["id"], "fromPoint": "bottom", "to": b["id"], "toPoint": "top",
        })
        body = client.post(f"/api/board/{DAY}/layout", json={
            "anchors": {
                a["id"]: {"bottom": {"x": 0, "y": 0}},
                b["id"]: {"top": {"x": 10, "y": 4}},
            },
        }).json()
        assert body["routes"][0]["path"] == "M 0 0 L 5 0 L 5 4 L 10 4"


class TestReflectionRecords:
    def test_upsert_and_list(self, client):
        payload = {
            "date": "2024-02-01",
            "items": [{"id": "1", "text": "x", "type": "good", "x": 0, "y": 0}],
            "selectedItem": None,
            "chatMessages": [{"id": "1", "text": "first", "sender": "ai"}],
        }
        client.post("/api/reflections", json=payload)
        payload["chatMessages"].append({"id": "2", "text": "second", "sender": "user"})
        client.post("/api/reflections", json=payload)

        records = client.get("/api/reflections").json()
        assert len(records) == 1
        assert len(records[0]["chatMessages"]) == 2

    def test_bad_date(self, client):
        resp = client.post("/api/reflections", json={"date": "yesterday"})
        assert resp.status_code == 400

    def test_delete(self, client):
        client.post("/api/reflections", json={"date": "2024-02-01"})
        assert client.delete("/api/reflections/2024-02-01").json() == {"success": True}
        assert client.get("/api/reflections/2024-02-01").status_code == 404
        assert client.delete("/api/reflections/2024-02-01").status_code == 404

    def test_search(self, client):
        client.post("/api/reflections", json={
            "date": "2024-02-01",
            "items": [{"id": "1", "text": "Morning run", "type": "good", "x": 0, "y": 0}],
        })
        client.post("/api/reflections", json={
            "date": "2024-02-02",
            "items": [{"id": "2", "text": "Code review", "type": "growth", "x": 0, "y": 0}],
        })
        results = client.get("/api/reflections/search", params={"q": "RUN"}).json()
        assert [r["date"] for r in results] == ["2024-02-01"]

    def test_history_page_highlights(self, client):
        client.post("/api/reflections", json={
            "date": "2024-02-01",
            "items": [{"id": "1", "text": "Morning run", "type": "good", "x": 0, "y": 0}],
        })
        resp = client.get("/history", params={"q": "run"})
        assert resp.status_code == 200
        assert "<mark>run</mark>" in resp.text
        assert "February 2024" in resp.text


class TestStatelessCoach:
    def test_fallback_without_key(self, client):
        body = client.post("/api/chat", json={
            "message": "hi", "selectedTopic": "Ran 5k", "messageCount": 4,
        }).json()
        assert body["fallback"] is True
        assert body["error"] == "missing_credentials"
        assert body["message"] in FALLBACK_QUESTIONS["late"]
