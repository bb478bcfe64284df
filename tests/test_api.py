from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import api as api_module
from config import settings
from conftest import add_copies

STAFF = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(world):
    # Route every request to the per-test desk
    api_module.app.dependency_overrides[api_module.get_desk] = lambda: world.desk
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()


def _borrow(client, user_id="alice", copy_id="c1984-01", library_id="lib-a", **extra):
    return client.post("/borrows", json={"user_id": user_id, "copy_id": copy_id, "library_id": library_id, **extra})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_borrow_and_list_loans(client):
    response = _borrow(client)
    assert response.status_code == 201
    body = response.json()
    assert body["borrower_id"] == "alice"
    assert body["due_date"] == "2024-03-15T10:00:00"
    assert body["status"] == "BORROWED"

    loans = client.get("/users/alice/borrows").json()
    assert [loan["id"] for loan in loans] == [body["id"]]
    assert loans[0]["fine_estimate"] == 0


def test_borrow_errors_map_to_status_codes(client):
    response = _borrow(client, library_id="lib-b")
    assert response.status_code == 409
    assert response.json()["code"] == "not_available"

    response = _borrow(client, copy_id="nope")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"

    response = _borrow(client, on_behalf_of="kid")
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_return_with_rate_change_fine(client, world, clock):
    for rate, start in ((0.50, "2023-01-01"), (0.75, "2024-01-01")):
        response = client.post(
            "/libraries/lib-a/fine-policies", headers=STAFF, json={"rate_per_day": rate, "effective_from": start}
        )
        assert response.status_code == 201

    clock.set(datetime(2023, 12, 16))
    borrow_id = _borrow(client).json()["id"]
    clock.set(datetime(2024, 1, 3))

    response = client.post(f"/borrows/{borrow_id}/return", json={"user_id": "alice"})
    assert response.status_code == 200
    borrow = response.json()["borrow"]
    assert borrow["fine"] == 2.5
    assert [(s["rate"], s["amount"]) for s in borrow["fine_breakdown"]] == [(0.5, 1.0), (0.75, 1.5)]

    history = client.get("/users/alice/history").json()
    assert [h["id"] for h in history] == [borrow_id]


def test_return_elsewhere_reports_shipment(client):
    borrow_id = _borrow(client).json()["id"]
    response = client.post(
        f"/borrows/{borrow_id}/return", json={"user_id": "alice", "return_to_library_id": "lib-c"}
    )
    body = response.json()
    assert body["shipment"]["from_library_id"] == "lib-c"
    assert body["shipment"]["to_library_id"] == "lib-a"
    assert body["damage_report"] is None

    shipments = client.get("/shipments", params={"status": "PENDING"}).json()
    assert [s["id"] for s in shipments] == [body["shipment"]["id"]]


def test_return_rejects_unknown_condition(client):
    borrow_id = _borrow(client).json()["id"]
    response = client.post(f"/borrows/{borrow_id}/return", json={"user_id": "alice", "condition": "SOGGY"})
    assert response.status_code == 422


def test_damaged_return_opens_report(client):
    borrow_id = _borrow(client).json()["id"]
    response = client.post(
        f"/borrows/{borrow_id}/return", json={"user_id": "alice", "condition": "DAMAGED", "notes": "Spine cracked"}
    )
    report = response.json()["damage_report"]
    assert report["flagged_borrowers"] == ["alice"]
    assert report["status"] == "OPEN"

    listed = client.get("/damage-reports", headers=STAFF).json()
    assert [r["id"] for r in listed] == [report["id"]]

    response = client.patch(
        f"/damage-reports/{report['id']}", headers=STAFF, json={"status": "RESOLVED", "actor_id": "staff"}
    )
    assert response.json()["status"] == "RESOLVED"


def test_reservation_lifecycle(client):
    response = client.post("/reservations", json={"user_id": "bob", "edition_id": "ed-1984"})
    assert response.status_code == 409
    assert response.json()["code"] == "copies_available"

    _borrow(client)
    response = client.post("/reservations", json={"user_id": "bob", "edition_id": "ed-1984"})
    assert response.status_code == 201
    reservation = response.json()
    assert reservation["effective_priority"] == 100

    response = client.post("/reservations", json={"user_id": "bob", "edition_id": "ed-1984"})
    assert response.json()["code"] == "duplicate_pending"

    queue = client.get("/editions/ed-1984/queue").json()
    assert [r["user_id"] for r in queue] == ["bob"]

    response = client.post(f"/reservations/{reservation['id']}/cancel", json={"user_id": "bob"})
    assert response.json()["status"] == "CANCELLED"
    assert client.get("/editions/ed-1984/queue").json() == []
    assert client.get("/users/bob/reservations").json()[0]["status"] == "CANCELLED"


def test_staff_endpoints_need_the_api_key(client):
    bad = {"X-API-Key": "invalid-key"}
    assert client.post("/rebalance", headers=bad).status_code == 403
    assert client.post("/reservations/recalculate", headers=bad).status_code == 403
    assert client.post("/jobs/reminders", headers=bad).status_code == 403
    assert client.post(
        "/libraries/lib-a/fine-policies", headers=bad, json={"rate_per_day": 1, "effective_from": "2024-01-01"}
    ).status_code == 403


def test_fine_policy_validation(client):
    response = client.post(
        "/libraries/lib-a/fine-policies", headers=STAFF, json={"rate_per_day": -1, "effective_from": "2024-01-01"}
    )
    assert response.status_code == 422

    client.post("/libraries/lib-a/fine-policies", headers=STAFF, json={"rate_per_day": 1, "effective_from": "2024-01-01"})
    response = client.post(
        "/libraries/lib-a/fine-policies", headers=STAFF, json={"rate_per_day": 2, "effective_from": "2023-01-01"}
    )
    assert response.status_code == 400
    assert [p["rate_per_day"] for p in client.get("/libraries/lib-a/fine-policies").json()] == [1.0]


def test_fine_quote(client):
    response = client.get(
        "/libraries/lib-b/fine-quote", params={"due": "2024-02-01T00:00:00", "end": "2024-02-03T12:00:00"}
    )
    assert response.status_code == 200
    assert response.json()["total"] == 0.3

    response = client.get("/libraries/lib-b/fine-quote", params={"due": "yesterday"})
    assert response.status_code == 400


def test_rebalance_and_ship(client, world):
    add_copies(world.desk, "ed-dune", "lib-a", 4, prefix="dune")
    response = client.post("/rebalance", headers=STAFF, json={"triggered_by": "ops"})
    body = response.json()
    assert body["shipments_created"] == 2
    assert [d["to_library"] for d in body["editions"][0]["details"]] == ["Riverside Branch", "Hillside Branch"]

    shipment_id = client.get("/shipments", params={"library_id": "lib-b"}).json()[0]["id"]
    response = client.patch(
        f"/shipments/{shipment_id}", headers=STAFF, json={"status": "IN_TRANSIT", "actor_id": "alice"}
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    response = client.patch(
        f"/shipments/{shipment_id}", headers=STAFF, json={"status": "DELIVERED", "actor_id": "staff"}
    )
    assert response.status_code == 409

    client.patch(f"/shipments/{shipment_id}", headers=STAFF, json={"status": "IN_TRANSIT", "actor_id": "staff"})
    response = client.patch(
        f"/shipments/{shipment_id}", headers=STAFF, json={"status": "DELIVERED", "actor_id": "staff"}
    )
    assert response.json()["delivered_at"] is not None


def test_notifications_inbox(client, clock):
    _borrow(client)
    clock.advance(days=20)
    summary = client.post("/jobs/reminders", headers=STAFF).json()
    assert summary["overdue"] == 1

    assert client.get("/users/alice/notifications/unread-count").json() == {"unread": 1}
    notice = client.get("/users/alice/notifications", params={"unread_only": True}).json()[0]
    assert notice["title"] == "Book Overdue"

    response = client.post(f"/users/alice/notifications/{notice['id']}/read")
    assert response.json()["is_read"] is True
    assert client.get("/users/alice/notifications", params={"unread_only": True}).json() == []
    assert client.post("/users/alice/notifications/read-all").json() == {"updated": 0}

    assert client.post(f"/users/bob/notifications/{notice['id']}/read").status_code == 404


def test_seed_is_staff_only_and_skips_existing_data(client):
    assert client.post("/seed", headers={"X-API-Key": "invalid-key"}).status_code == 403
    response = client.post("/seed", headers=STAFF)
    assert response.status_code == 200
    assert response.json() == {"libraries": 0, "users": 0, "editions": 0, "copies": 0}
