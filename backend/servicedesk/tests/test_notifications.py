import uuid

import pytest

from servicedesk import models
from servicedesk.services.notification_store import (
    NotificationKind,
    NotificationNotFound,
    NotificationStore,
)
from .conftest import TestingSessionLocal, create_user


def _seed(user_id, count, kind=NotificationKind.CASE_UPDATED, is_read=False):
    db = TestingSessionLocal()
    store = NotificationStore(db)
    ids = []
    for i in range(count):
        row = store.create(user_id, kind, {"title": f"Update {i}", "message": "Status changed"})
        row.is_read = is_read
        db.flush()
        ids.append(row.id)
    db.commit()
    db.close()
    return ids


def test_count_unread_matches_unread_rows(db):
    user, _ = create_user()
    other, _ = create_user()
    _seed(user.id, 3)
    _seed(user.id, 2, is_read=True)
    _seed(other.id, 4)

    store = NotificationStore(db)
    assert store.count_unread(user.id) == 3
    assert store.count_unread(other.id) == 4
    expected = (
        db.query(models.Notification)
        .filter_by(user_id=user.id, is_read=False)
        .count()
    )
    assert store.count_unread(user.id) == expected


def test_unread_count_endpoint_is_scoped_to_caller(client):
    user, headers = create_user()
    other, _ = create_user()
    _seed(user.id, 2)
    _seed(other.id, 5)

    resp = client.get("/api/notifications/unread-count", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"unreadCount": 2}


def test_mark_read_and_mark_all_read(client):
    user, headers = create_user()
    ids = _seed(user.id, 3)

    resp = client.post(f"/api/notifications/{ids[0]}/read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True
    assert client.get("/api/notifications/unread-count", headers=headers).json() == {
        "unreadCount": 2
    }

    resp = client.post("/api/notifications/mark-all-read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["updated"] == 2
    assert client.get("/api/notifications/unread-count", headers=headers).json() == {
        "unreadCount": 0
    }


def test_cannot_touch_another_users_notification(client):
    owner, _ = create_user()
    _, intruder_headers = create_user()
    (notification_id,) = _seed(owner.id, 1)

    assert client.post(
        f"/api/notifications/{notification_id}/read", headers=intruder_headers
    ).status_code == 404
    assert client.delete(
        f"/api/notifications/{notification_id}", headers=intruder_headers
    ).status_code == 404

    db = TestingSessionLocal()
    assert db.get(models.Notification, notification_id).is_read is False
    db.close()


def test_delete_notification(client):
    user, headers = create_user()
    (notification_id,) = _seed(user.id, 1)

    resp = client.delete(f"/api/notifications/{notification_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"message": "Notification deleted"}
    assert client.delete(
        f"/api/notifications/{notification_id}", headers=headers
    ).status_code == 404


def test_list_filters_and_paginates(client):
    user, headers = create_user()
    _seed(user.id, 12)
    _seed(user.id, 3, kind=NotificationKind.SYSTEM_ALERT, is_read=True)

    resp = client.get("/api/notifications/?page=2&limit=5", headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert len(data["notifications"]) == 5
    assert data["pagination"] == {"page": 2, "limit": 5, "total": 15, "pages": 3}

    resp = client.get("/api/notifications/?is_read=true", headers=headers)
    assert resp.json()["pagination"]["total"] == 3

    resp = client.get("/api/notifications/?kind=SYSTEM_ALERT", headers=headers)
    kinds = {n["kind"] for n in resp.json()["notifications"]}
    assert kinds == {"SYSTEM_ALERT"}


def test_stats(client):
    user, headers = create_user()
    _seed(user.id, 2)
    _seed(user.id, 1, kind=NotificationKind.CASE_COMPLETED, is_read=True)

    resp = client.get("/api/notifications/stats", headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 3
    assert data["unread"] == 2
    assert data["by_kind"]["CASE_UPDATED"] == 2
    assert data["by_kind"]["CASE_COMPLETED"] == 1
    assert data["by_kind"]["SYSTEM_ALERT"] == 0


def test_store_get_raises_for_unknown_id(db):
    user, _ = create_user()
    with pytest.raises(NotificationNotFound):
        NotificationStore(db).get(uuid.uuid4(), user.id)
