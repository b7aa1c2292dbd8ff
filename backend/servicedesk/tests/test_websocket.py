import pytest
from starlette.websockets import WebSocketDisconnect

from servicedesk.rbac import STAFF_ROOM, user_room
from .conftest import create_case, create_user, token_for


def _join(websocket, room):
    websocket.send_json({"event": "join_room", "room": room})
    reply = websocket.receive_json()
    assert reply == {"event": "joined", "room": room}


def test_staff_dashboard_refreshes_and_late_joiner_sees_nothing_old(client):
    reporter, _ = create_user()
    staff, staff_headers = create_user("IT_STAFF")
    lead, _ = create_user("IT_LEAD")
    case_id = create_case("incidents", reporter.id)

    with client.websocket_connect(f"/ws?token={token_for(staff)}") as early:
        _join(early, STAFF_ROOM)
        resp = client.put(f"/api/cases/incidents/{case_id}/close", headers=staff_headers)
        assert resp.status_code == 200

        msg = early.receive_json()
        assert msg["event"] == "refresh_dashboard"
        assert msg["room"] == STAFF_ROOM
        assert msg["data"]["case_id"] == str(case_id)
        assert msg["data"]["status"] == "COMPLETED"

        with client.websocket_connect(f"/ws?token={token_for(lead)}") as late:
            _join(late, STAFF_ROOM)
            late.send_json({"event": "ping"})
            assert late.receive_json() == {"event": "pong"}


def test_closing_case_pushes_notification_to_reporter(client):
    reporter, reporter_headers = create_user()
    _, staff_headers = create_user("IT_STAFF")
    case_id = create_case("warranties", reporter.id, title="Laptop hinge cracked")

    with client.websocket_connect(f"/ws?token={token_for(reporter)}") as websocket:
        _join(websocket, user_room(reporter.id))
        resp = client.put(f"/api/cases/warranties/{case_id}/close", headers=staff_headers)
        assert resp.status_code == 200

        msg = websocket.receive_json()
        assert msg["event"] == "notification"
        assert msg["data"]["unread_count"] == 1
        notification = msg["data"]["notification"]
        assert notification["kind"] == "CASE_COMPLETED"
        assert notification["case_id"] == str(case_id)

    resp = client.get("/api/notifications/unread-count", headers=reporter_headers)
    assert resp.json() == {"unreadCount": 1}


def test_reading_notification_updates_badge_over_socket(client):
    reporter, reporter_headers = create_user()
    _, staff_headers = create_user("IT_STAFF")
    case_id = create_case("incidents", reporter.id)
    client.put(f"/api/cases/incidents/{case_id}/close", headers=staff_headers)
    listing = client.get("/api/notifications/", headers=reporter_headers).json()
    notification_id = listing["notifications"][0]["id"]

    with client.websocket_connect(f"/ws?token={token_for(reporter)}") as websocket:
        _join(websocket, user_room(reporter.id))
        client.post(f"/api/notifications/{notification_id}/read", headers=reporter_headers)
        msg = websocket.receive_json()
        assert msg["event"] == "notification_read"
        assert msg["data"]["unread_count"] == 0


def test_user_cannot_join_staff_or_foreign_rooms(client):
    user, _ = create_user()
    other, _ = create_user()

    with client.websocket_connect(f"/ws?token={token_for(user)}") as websocket:
        websocket.send_json({"event": "join_room", "room": STAFF_ROOM})
        reply = websocket.receive_json()
        assert reply["event"] == "error"
        assert reply["detail"] == "Forbidden room"

        websocket.send_json({"event": "join_room", "room": user_room(other.id)})
        assert websocket.receive_json()["event"] == "error"


def test_status_update_from_client_refreshes_staff(client):
    staff, _ = create_user("IT_STAFF")
    user, _ = create_user()

    with client.websocket_connect(f"/ws?token={token_for(staff)}") as dashboard:
        _join(dashboard, STAFF_ROOM)
        with client.websocket_connect(
            "/ws", headers={"Authorization": f"Bearer {token_for(user)}"}
        ) as reporter_ws:
            reporter_ws.send_json({"event": "status_update"})
            msg = dashboard.receive_json()
            assert msg["event"] == "refresh_dashboard"
            assert msg["data"] == {"source": "client", "user_id": str(user.id)}


def test_malformed_and_unknown_messages_get_errors(client):
    user, _ = create_user()
    with client.websocket_connect(f"/ws?token={token_for(user)}") as websocket:
        websocket.send_text("{not json")
        assert websocket.receive_json()["detail"] == "Malformed JSON"
        websocket.send_json({"event": "dance"})
        assert websocket.receive_json()["event"] == "error"


def test_socket_without_valid_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=garbage") as websocket:
            websocket.receive_json()


def test_status_update_reaches_every_current_staff_member_only(client):
    first_staff, _ = create_user("IT_STAFF")
    second_staff, _ = create_user("ADMIN")
    latecomer, _ = create_user("IT_LEAD")

    with client.websocket_connect(f"/ws?token={token_for(first_staff)}") as first, \
            client.websocket_connect(f"/ws?token={token_for(second_staff)}") as second:
        _join(first, STAFF_ROOM)
        _join(second, STAFF_ROOM)

        first.send_json({"event": "status_update"})
        assert first.receive_json()["event"] == "refresh_dashboard"
        assert second.receive_json()["event"] == "refresh_dashboard"

        with client.websocket_connect(f"/ws?token={token_for(latecomer)}") as third:
            _join(third, STAFF_ROOM)
            third.send_json({"event": "ping"})
            assert third.receive_json() == {"event": "pong"}


def test_refresh_is_only_sent_after_notification_is_readable(client):
    reporter, _ = create_user()
    handler, handler_headers = create_user("IT_STAFF")
    _, lead_headers = create_user("IT_LEAD")
    case_id = create_case("incidents", reporter.id, handler_id=handler.id)

    with client.websocket_connect(f"/ws?token={token_for(handler)}") as websocket:
        _join(websocket, STAFF_ROOM)
        client.put(f"/api/cases/incidents/{case_id}/close", headers=lead_headers)
        assert websocket.receive_json()["event"] == "refresh_dashboard"

        resp = client.get("/api/notifications/unread-count", headers=handler_headers)
        assert resp.json() == {"unreadCount": 1}


def test_overflowing_client_receives_close_frame(client, monkeypatch):
    staff, _ = create_user("IT_STAFF")
    gateway = client.app.state.gateway
    monkeypatch.setattr(gateway, "outbox_size", 2)

    with client.websocket_connect(f"/ws?token={token_for(staff)}") as websocket:
        _join(websocket, STAFF_ROOM)

        async def flood():
            for seq in range(5):
                await gateway.broadcast(STAFF_ROOM, "refresh_dashboard", {"seq": seq})

        client.portal.call(flood)

        with pytest.raises(WebSocketDisconnect) as exc:
            while True:
                websocket.receive_json()
        assert exc.value.code == 1011
    assert gateway.connection_count() == 0


def test_dropped_connection_is_closed_instead_of_going_silent(client):
    staff, _ = create_user("IT_STAFF")
    gateway = client.app.state.gateway

    with client.websocket_connect(f"/ws?token={token_for(staff)}") as websocket:
        _join(websocket, STAFF_ROOM)
        (connection,) = gateway.members(STAFF_ROOM)

        client.portal.call(gateway.on_disconnect, connection)
        websocket.send_json({"event": "ping"})

        with pytest.raises(WebSocketDisconnect) as exc:
            websocket.receive_json()
        assert exc.value.code == 1011


def test_token_lookup_runs_off_the_event_loop(client, monkeypatch):
    import asyncio

    from servicedesk.routes import realtime as realtime_routes

    user, _ = create_user()
    original = realtime_routes._lookup_principal
    loop_running = []

    def recording_lookup(token):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running.append(False)
        else:
            loop_running.append(True)
        return original(token)

    monkeypatch.setattr(realtime_routes, "_lookup_principal", recording_lookup)

    with client.websocket_connect(f"/ws?token={token_for(user)}") as websocket:
        websocket.send_json({"event": "ping"})
        assert websocket.receive_json() == {"event": "pong"}
    assert loop_running == [False]
