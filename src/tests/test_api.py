import httpx
import pytest
import pytest_asyncio
from sqlalchemy import update

from townbook import models
from townbook.actions import register_user
from townbook import deps
from townbook.config import settings
from townbook.deps import get_session, get_notifier
from townbook.email.client import GraphMailer
from townbook.main import app, on_startup, on_shutdown
from townbook.notify.dispatcher import NotificationDispatcher

pytestmark = pytest.mark.asyncio

@pytest_asyncio.fixture
async def client(session_factory):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_notifier] = lambda: NotificationDispatcher(session_factory)
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()

@pytest_asyncio.fixture
async def lib_headers(session):
    r = await register_user(session, name="Bob Librarian", email="bob@example.com", role=models.Role.LIBRARIAN)
    return {"Authorization": f"Bearer {r['data']['api_token']}"}

async def _signup(client, name="Alice Reader", email="alice@example.com"):
    r = await client.post("/users", json={"name": name, "email": email})
    assert r.status_code == 201
    body = r.json()
    assert body["role"] == "MEMBER"
    return body["id"], {"Authorization": f"Bearer {body['api_token']}"}

async def _book(client, lib_headers, copies=1):
    r = await client.post("/books", headers=lib_headers, json={
        "title": "The Hobbit", "author": "J.R.R. Tolkien", "location": "Shelf A1", "total_copies": copies,
    })
    assert r.status_code == 201
    return r.json()["id"]

async def _room(client, lib_headers):
    r = await client.post("/rooms", headers=lib_headers, json={
        "name": "Quiet Room", "capacity": 4, "location": "Basement", "amenities": ["WiFi", "Whiteboard"],
    })
    assert r.status_code == 201
    return r.json()["id"]

async def test_auth_and_roles(client, lib_headers):
    assert (await client.get("/reservations")).status_code == 401
    assert (await client.get("/reservations", headers={"Authorization": "Bearer nope"})).status_code == 401
    _, headers = await _signup(client)
    me = await client.get("/users/me", headers=headers)
    assert me.json()["email"] == "alice@example.com"
    r = await client.post("/books", headers=headers, json={"title": "X", "author": "Y", "location": "Z"})
    assert r.status_code == 403
    assert (await client.post("/users", json={"name": "Again", "email": "ALICE@example.com"})).status_code == 409

async def test_book_reservation_lifecycle(client, lib_headers):
    user_id, headers = await _signup(client)
    book_id = await _book(client, lib_headers)

    r = await client.post("/reservations", headers=headers, json={
        "type": "Book", "item_id": book_id, "start_date": "2024-01-01", "end_date": "2024-01-15",
    })
    assert r.status_code == 201
    res = r.json()
    assert res["status"] == "PENDING"
    assert res["user_id"] == user_id
    res_id = res["id"]

    assert (await client.put(f"/reservations/{res_id}/approve", headers=headers)).status_code == 403
    r = await client.put(f"/reservations/{res_id}/approve", headers=lib_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "APPROVED"
    assert (await client.get(f"/books/{book_id}")).json()["available_copies"] == 0
    assert (await client.get(f"/books/{book_id}")).json()["status"] == "OUT_OF_STOCK"

    r = await client.put(f"/reservations/{res_id}/approve", headers=lib_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Reservation is not in pending state."

    assert (await client.put(f"/reservations/{res_id}/checkout", headers=lib_headers)).status_code == 200
    r = await client.put(f"/reservations/{res_id}/return", headers=lib_headers)
    assert r.status_code == 200
    assert r.json()["returned_at"] is not None
    assert (await client.get(f"/books/{book_id}")).json()["available_copies"] == 1

    titles = [n["title"] for n in (await client.get("/notifications", headers=headers)).json()]
    assert sorted(titles) == ["Reservation Approved", "Reservation Checked Out", "Reservation Returned"]
    lib_titles = [n["title"] for n in (await client.get("/notifications", headers=lib_headers)).json()]
    assert lib_titles == ["New Reservation"]

    mine = (await client.get("/reservations", headers=headers)).json()
    assert [m["id"] for m in mine] == [res_id]
    listed = (await client.get(f"/books/{book_id}/reservations", headers=lib_headers)).json()
    assert [m["status"] for m in listed] == ["RETURNED"]

async def test_out_of_stock_and_not_found(client, lib_headers):
    _, headers = await _signup(client)
    book_id = await _book(client, lib_headers)
    ids = []
    for _ in range(2):
        r = await client.post("/reservations", headers=headers, json={
            "type": "BOOK", "item_id": book_id, "start_date": "2024-03-01", "end_date": "2024-03-10",
        })
        ids.append(r.json()["id"])
    assert (await client.put(f"/reservations/{ids[0]}/approve", headers=lib_headers)).status_code == 200
    r = await client.put(f"/reservations/{ids[1]}/approve", headers=lib_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Book is currently out of stock."

    assert (await client.put("/reservations/missing/approve", headers=lib_headers)).status_code == 404
    r = await client.post("/reservations", headers=headers, json={
        "type": "BOOK", "item_id": "missing", "start_date": "2024-03-01", "end_date": "2024-03-10",
    })
    assert r.status_code == 404

async def test_room_booking_and_availability(client, lib_headers):
    _, headers = await _signup(client)
    room_id = await _room(client, lib_headers)
    r = await client.post("/reservations", headers=headers, json={
        "type": "Room", "item_id": room_id, "start_date": "2024-01-01", "end_date": "2024-01-01",
        "start_time": "10:00", "end_time": "11:00",
    })
    res_id = r.json()["id"]
    assert (await client.put(f"/reservations/{res_id}/approve", headers=lib_headers)).status_code == 200

    params = {"start_date": "2024-01-01", "end_date": "2024-01-01", "start_time": "10:30", "end_time": "11:30"}
    r = await client.get(f"/rooms/{room_id}/availability", params=params)
    assert r.json() == {"room_id": room_id, "available": False}
    r = await client.post("/reservations", headers=headers, json={"type": "Room", "item_id": room_id, **params})
    assert r.status_code == 400
    assert r.json()["detail"] == "Item is not available for the requested time slot."

    schedule = (await client.get(f"/rooms/{room_id}/schedule", headers=headers)).json()
    assert [s["id"] for s in schedule] == [res_id]

    assert (await client.put(f"/reservations/{res_id}/check-in", headers=lib_headers)).json()["status"] == "CHECKED_IN"
    assert (await client.put(f"/reservations/{res_id}/check-out", headers=lib_headers)).json()["status"] == "CHECKED_OUT"
    assert (await client.get(f"/rooms/{room_id}/schedule", headers=headers)).json() == []

    bad = await client.get(f"/rooms/{room_id}/availability", params={**params, "start_time": "noon"})
    assert bad.status_code == 400

async def test_delete_is_owner_or_librarian(client, lib_headers):
    _, alice = await _signup(client)
    _, carol = await _signup(client, name="Carol", email="carol@example.com")
    book_id = await _book(client, lib_headers)
    r = await client.post("/reservations", headers=alice, json={
        "type": "BOOK", "item_id": book_id, "start_date": "2024-05-01", "end_date": "2024-05-02",
    })
    res_id = r.json()["id"]
    assert (await client.get(f"/reservations/{res_id}", headers=carol)).status_code == 404
    assert (await client.delete(f"/reservations/{res_id}", headers=carol)).status_code == 404
    r = await client.delete(f"/reservations/{res_id}", headers=lib_headers)
    assert r.status_code == 200
    assert r.json()["detail"] == "Reservation removed successfully."

async def test_consistency_errors_hide_details(client, lib_headers, session):
    _, headers = await _signup(client)
    book_id = await _book(client, lib_headers)
    r = await client.post("/reservations", headers=headers, json={
        "type": "BOOK", "item_id": book_id, "start_date": "2024-06-01", "end_date": "2024-06-02",
    })
    res_id = r.json()["id"]
    await client.put(f"/reservations/{res_id}/approve", headers=lib_headers)
    await client.put(f"/reservations/{res_id}/checkout", headers=lib_headers)
    await session.execute(update(models.Book).where(models.Book.id == book_id).values(available_copies=1))
    await session.commit()

    r = await client.put(f"/reservations/{res_id}/return", headers=lib_headers)
    assert r.status_code == 500
    assert r.json() == {"detail": "Something went wrong"}

async def test_notifications_and_stats(client, lib_headers):
    _, headers = await _signup(client)
    book_id = await _book(client, lib_headers)
    await client.post("/reservations", headers=headers, json={
        "type": "BOOK", "item_id": book_id, "start_date": "2024-07-01", "end_date": "2024-07-02",
    })
    [notice] = (await client.get("/notifications", headers=lib_headers)).json()
    assert notice["read"] is False
    r = await client.put(f"/notifications/{notice['id']}/read", headers=lib_headers)
    assert r.json()["read"] is True
    r = await client.put("/notifications/read-all", headers=lib_headers)
    assert r.json()["updated"] == 0

    assert (await client.get("/stats", headers=headers)).status_code == 403
    stats = (await client.get("/stats", headers=lib_headers)).json()
    assert stats == {"total_books": 1, "total_rooms": 0, "total_users": 2, "active_reservations": 1}

async def test_librarian_edits_and_removes_catalog_items(client, lib_headers):
    _, headers = await _signup(client)
    book_id = await _book(client, lib_headers, copies=2)
    r = await client.post("/reservations", headers=headers, json={
        "type": "BOOK", "item_id": book_id, "start_date": "2024-08-01", "end_date": "2024-08-02",
    })
    await client.put(f"/reservations/{r.json()['id']}/approve", headers=lib_headers)

    assert (await client.put(f"/books/{book_id}", headers=headers, json={"title": "X"})).status_code == 403
    r = await client.put(f"/books/{book_id}", headers=lib_headers, json={"location": "Shelf A2", "total_copies": 4})
    assert r.status_code == 200
    assert r.json()["location"] == "Shelf A2"
    assert r.json()["available_copies"] == 3
    r = await client.put(f"/books/{book_id}", headers=lib_headers, json={"total_copies": 0})
    assert r.status_code == 422
    assert (await client.put("/books/missing", headers=lib_headers, json={"title": "X"})).status_code == 404

    r = await client.delete(f"/books/{book_id}", headers=lib_headers)
    assert r.json() == {"detail": "Book removed successfully.", "book_id": book_id, "removed_reservations": 1}
    assert (await client.get(f"/books/{book_id}")).status_code == 404
    assert (await client.get("/reservations", headers=headers)).json() == []

    room_id = await _room(client, lib_headers)
    r = await client.put(f"/rooms/{room_id}", headers=lib_headers, json={"name": "Silent Room"})
    assert r.json()["name"] == "Silent Room"
    assert r.json()["amenities"] == ["WiFi", "Whiteboard"]
    assert (await client.delete(f"/rooms/{room_id}", headers=headers)).status_code == 403
    assert (await client.delete(f"/rooms/{room_id}", headers=lib_headers)).status_code == 200
    assert (await client.get(f"/rooms/{room_id}")).status_code == 404

async def test_single_notification_is_owner_only(client, lib_headers):
    _, headers = await _signup(client)
    book_id = await _book(client, lib_headers)
    await client.post("/reservations", headers=headers, json={
        "type": "BOOK", "item_id": book_id, "start_date": "2024-09-01", "end_date": "2024-09-02",
    })
    [notice] = (await client.get("/notifications", headers=lib_headers)).json()
    r = await client.get(f"/notifications/{notice['id']}", headers=lib_headers)
    assert r.status_code == 200
    assert r.json()["title"] == "New Reservation"
    assert (await client.get(f"/notifications/{notice['id']}", headers=headers)).status_code == 404

async def test_startup_rejects_unknown_overlap_policy(monkeypatch):
    monkeypatch.setattr(settings, "ROOM_OVERLAP_POLICY", "lenient")
    with pytest.raises(ValueError, match="lenient"):
        await on_startup()

async def test_shutdown_closes_the_mailer(monkeypatch):
    mailer = GraphMailer("tenant", "client", "secret", "library@example.com",
                         transport=httpx.MockTransport(lambda request: httpx.Response(202)))
    monkeypatch.setattr(deps, "_mailer", mailer)
    await on_shutdown()
    assert mailer._http.is_closed
    assert deps._mailer is None
