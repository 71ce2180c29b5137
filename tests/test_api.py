from urllib.parse import parse_qsl, urlsplit

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from conftest import gateway_callback
from database import get_db


@pytest.fixture
def client(db, settings):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _add_book(client, quantity=1):
    response = client.post("/api/v1/book/admin/add", json={
        "isbn": "978-0-13-235088-4", "title": "Clean Code", "author": "Robert C. Martin",
        "price": 15000, "quantity": quantity,
    })
    assert response.status_code == 201
    return response.json()["book"]


def _add_user(client, email="reader@example.com"):
    response = client.post("/api/v1/user/add", json={"name": "Reader", "email": email})
    assert response.status_code == 201
    return response.json()["user"]


def test_root(client):
    assert client.get("/").json() == {"message": "Library Circulation API is running"}


def test_borrow_renew_and_cash_return(client):
    book = _add_book(client)
    user = _add_user(client)

    response = client.post(f"/api/v1/borrow/record-borrow-book/{book['id']}", json={"email": user["email"]})
    assert response.status_code == 201
    loan = response.json()["loan"]
    assert response.json()["copy_code"] == "9780132350884-0001"
    assert client.get(f"/api/v1/book/{book['id']}").json()["book"]["available_count"] == 0

    mine = client.get("/api/v1/borrow/my-borrowed-books", params={"user_id": user["id"]}).json()
    assert [b["loan_id"] for b in mine["borrowedBooks"]] == [loan["id"]]

    renewed = client.post(f"/api/v1/borrow/renew/{loan['id']}", json={"user_id": user["id"]})
    assert renewed.status_code == 200
    assert renewed.json()["renew_count"] == 1

    prepared = client.post(f"/api/v1/borrow/return/prepare/{loan['id']}", json={"method": "cash"})
    assert prepared.status_code == 200
    assert prepared.json()["amount"] == 15000

    confirmed = client.post(f"/api/v1/borrow/return/cash/confirm/{loan['id']}")
    assert confirmed.status_code == 200
    assert confirmed.json()["loan"]["return_date"] is not None
    assert client.get(f"/api/v1/book/{book['id']}").json()["book"]["available_count"] == 1

    everything = client.get("/api/v1/borrow/borrowed-books-by-users").json()["borrowedBooks"]
    assert len(everything) == 1


def test_domain_errors_are_structured(client):
    book = _add_book(client)
    _add_user(client, "one@example.com")
    _add_user(client, "two@example.com")
    client.post(f"/api/v1/borrow/record-borrow-book/{book['id']}", json={"email": "one@example.com"})

    response = client.post(f"/api/v1/borrow/record-borrow-book/{book['id']}", json={"email": "two@example.com"})
    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == "Conflict"
    assert body["error"] == "NoCopyAvailable"

    response = client.post("/api/v1/borrow/record-borrow-book/not-an-id", json={"email": "two@example.com"})
    assert response.status_code == 400
    assert response.json()["kind"] == "Validation"

    response = client.post("/api/v1/borrow/return/prepare/5f0000000000000000000000", json={"method": "cash"})
    assert response.status_code == 404
    assert response.json()["error"] == "LoanNotFound"


def test_gateway_return_always_redirects(client, settings):
    book = _add_book(client)
    user = _add_user(client)
    loan = client.post(f"/api/v1/borrow/record-borrow-book/{book['id']}", json={"email": user["email"]}).json()["loan"]
    prepared = client.post(f"/api/v1/borrow/return/prepare/{loan['id']}", json={"method": "gateway"}).json()

    bad = client.get("/api/v1/borrow/payment/vnpay/return", params={"vnp_TxnRef": "x", "vnp_SecureHash": "00"},
                     follow_redirects=False)
    assert bad.status_code == 302
    assert bad.headers["location"] == f"{settings.frontend_url}/payment-result?status=invalid"

    good = client.get("/api/v1/borrow/payment/vnpay/return", params=gateway_callback(prepared["payment_url"]),
                      follow_redirects=False)
    assert good.status_code == 302
    target = urlsplit(good.headers["location"])
    assert target.path == "/payment-result"
    assert dict(parse_qsl(target.query)) == {"status": "success", "loan_id": loan["id"]}
    assert client.get(f"/api/v1/book/{book['id']}").json()["book"]["available_count"] == 1


def test_copy_admin_and_soft_delete(client):
    book = _add_book(client, quantity=2)
    copies = client.get(f"/api/v1/book/{book['id']}/available-copies").json()
    assert copies["total"] == 2

    response = client.patch(f"/api/v1/book/copy/{copies['copies'][0]['id']}/status", json={"status": "damaged"})
    assert response.status_code == 200
    response = client.patch(f"/api/v1/book/{book['id']}/soft-delete")
    assert response.status_code == 409
    assert response.json()["error"] == "TitleHasOutstandingLoans"

    client.patch(f"/api/v1/book/copy/{copies['copies'][0]['id']}/status", json={"status": "available"})
    assert client.patch(f"/api/v1/book/{book['id']}/soft-delete").json()["book"]["is_deleted"] is True
    assert client.patch(f"/api/v1/book/{book['id']}/restore").json()["book"]["is_deleted"] is False


def test_locked_user_cannot_borrow(client):
    book = _add_book(client)
    user = _add_user(client)
    client.patch(f"/api/v1/user/{user['id']}/lock", json={"locked": True, "reason": "lost books"})
    response = client.post(f"/api/v1/borrow/record-borrow-book/{book['id']}", json={"email": user["email"]})
    assert response.status_code == 409
    assert response.json()["error"] == "UserLocked"


def test_schema_lists_collections(client):
    names = [c["name"] for c in client.get("/schema").json()["collections"]]
    assert names == ["book", "bookcopy", "loan", "user"]


def test_book_lookup_by_isbn(client):
    book = _add_book(client)
    found = client.get("/api/v1/book/isbn/978-0-13-235088-4").json()
    assert found["exists"] is True
    assert found["book"]["id"] == book["id"]

    missing = client.get("/api/v1/book/isbn/9780000000000").json()
    assert missing == {"success": True, "exists": False, "book": None}
    assert client.get("/api/v1/book/isbn/--").status_code == 400


def test_startup_creates_indexes(monkeypatch):
    mongo = mongomock.MongoClient()["library_startup"]
    monkeypatch.setattr(database, "db", mongo)
    with TestClient(main.app) as client:
        assert client.get("/").status_code == 200
    assert "one_open_loan_per_book" in mongo["loan"].index_information()
