import pytest

from library_app.auth import AuthService


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _register(client, email, password="secret123", first_name="Test", last_name="Member"):
    return client.post("/auth/register", json={
        "email": email, "password": password, "first_name": first_name, "last_name": last_name,
    })


@pytest.fixture
def admin_headers(client, db_file):
    AuthService(db_file=db_file).create_admin("root@example.com", "rootpass")
    response = client.post("/auth/login", json={"email": "root@example.com", "password": "rootpass"})
    assert response.status_code == 200
    return _bearer(response.json()["access_token"])


@pytest.fixture
def member_headers(client, admin_headers):
    client.post("/membership-cards/seed", headers=admin_headers, json={"count": 3})
    response = _register(client, "ada@example.com", first_name="Ada", last_name="Lovelace")
    assert response.status_code == 201
    return _bearer(response.json()["access_token"])


@pytest.fixture
def book_id(client, admin_headers):
    response = client.post("/books", headers=admin_headers, json={"title": "Dune"})
    assert response.status_code == 201
    return response.json()["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["job_queue"] is True


def test_security_headers(client):
    response = client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_registration_consumes_the_only_card(client, admin_headers):
    response = client.post("/membership-cards", headers=admin_headers, json={"serial_number": "BB0001"})
    assert response.status_code == 201

    first = _register(client, "a@example.com")
    assert first.status_code == 201
    assert first.json()["token_type"] == "bearer"
    assert first.json()["user"]["role"] == "USER"
    assert "password" not in first.json()["user"]

    second = _register(client, "b@example.com")
    assert second.status_code == 503
    assert second.json()["error"] == "resource_exhausted"

    emails = [u["email"] for u in client.get("/users", headers=admin_headers).json()]
    assert "b@example.com" not in emails
    cards = client.get("/membership-cards", headers=admin_headers).json()
    assert [(c["serial_number"], c["status"], c["user_id"]) for c in cards] == [
        ("BB0001", "IN_USE", first.json()["user"]["id"]),
    ]


def test_register_validates_payload(client):
    assert _register(client, "not-an-email").status_code == 422
    assert _register(client, "a@example.com", password="123").status_code == 422


def test_duplicate_registration_is_a_conflict(client, member_headers):
    response = _register(client, "ADA@example.com")
    assert response.status_code == 409


def test_login(client, member_headers):
    ok = client.post("/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert ok.status_code == 200
    assert ok.json()["user"]["email"] == "ada@example.com"

    bad = client.post("/auth/login", json={"email": "ada@example.com", "password": "wrong-one"})
    unknown = client.post("/auth/login", json={"email": "nobody@example.com", "password": "secret123"})
    assert bad.status_code == unknown.status_code == 401
    assert bad.json()["detail"] == unknown.json()["detail"]


def test_protected_routes_need_a_token(client):
    assert client.get("/books").status_code == 401
    assert client.get("/users/me", headers=_bearer("garbage")).status_code == 401


def test_admin_routes_reject_members(client, member_headers):
    assert client.get("/users", headers=member_headers).status_code == 403
    assert client.post("/books", headers=member_headers, json={"title": "Emma"}).status_code == 403
    assert client.get("/membership-cards", headers=member_headers).status_code == 403


def test_users_me_and_self_access(client, member_headers, admin_headers):
    me = client.get("/users/me", headers=member_headers).json()
    assert me["first_name"] == "Ada"

    assert client.get(f"/users/{me['id']}", headers=member_headers).status_code == 200
    admin_id = client.get("/users/me", headers=admin_headers).json()["id"]
    assert client.get(f"/users/{admin_id}", headers=member_headers).status_code == 403

    card = client.get(f"/users/{me['id']}/membership-card", headers=member_headers)
    assert card.status_code == 200
    assert card.json()["status"] == "IN_USE"


def test_member_updates_own_name(client, member_headers):
    me = client.get("/users/me", headers=member_headers).json()
    response = client.patch(f"/users/{me['id']}", headers=member_headers, json={"first_name": "Augusta"})
    assert response.status_code == 200
    assert response.json()["first_name"] == "Augusta"

    promote = client.patch(f"/users/{me['id']}", headers=member_headers, json={"role": "ADMIN"})
    assert promote.status_code == 403


def test_loan_lifecycle(client, member_headers, book_id):
    created = client.post("/loans", headers=member_headers, json={"book_id": book_id})
    assert created.status_code == 201
    loan = created.json()
    assert loan["status"] == "ONGOING"
    assert loan["book_title"] == "Dune"
    assert loan["due_at"] is not None

    again = client.post("/loans", headers=member_headers, json={"book_id": book_id})
    assert again.status_code == 400
    assert again.json()["error"] == "invalid_state"

    mine = client.get("/loans/my", headers=member_headers).json()
    assert [item["id"] for item in mine] == [loan["id"]]

    returned = client.post(f"/loans/{loan['id']}/return", headers=member_headers)
    assert returned.status_code == 200
    assert returned.json()["status"] == "RETURNED"

    twice = client.post(f"/loans/{loan['id']}/return", headers=member_headers)
    assert twice.status_code == 400
    assert client.get("/loans/my", headers=member_headers).json() == []


def test_loan_for_unknown_book(client, member_headers):
    response = client.post("/loans", headers=member_headers, json={"book_id": 999})
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_admins_do_not_borrow(client, admin_headers, book_id):
    response = client.post("/loans", headers=admin_headers, json={"book_id": book_id})
    assert response.status_code == 403


def test_other_members_cannot_return_a_loan(client, member_headers, book_id):
    loan = client.post("/loans", headers=member_headers, json={"book_id": book_id}).json()
    other = _bearer(_register(client, "bob@example.com").json()["access_token"])

    response = client.post(f"/loans/{loan['id']}/return", headers=other)

    assert response.status_code == 404
    assert client.get(f"/loans/{loan['id']}", headers=other).status_code == 404


def test_admin_loan_views(client, admin_headers, member_headers, book_id):
    loan = client.post("/loans", headers=member_headers, json={"book_id": book_id}).json()

    ongoing = client.get("/loans", headers=admin_headers).json()
    assert [item["id"] for item in ongoing] == [loan["id"]]
    by_book = client.get("/loans/search", headers=admin_headers, params={"book_id": book_id}).json()
    assert [item["id"] for item in by_book] == [loan["id"]]
    assert client.get("/loans/search", headers=admin_headers).status_code == 400


def test_delete_user_releases_card(client, admin_headers, member_headers):
    me = client.get("/users/me", headers=member_headers).json()
    card = client.get(f"/users/{me['id']}/membership-card", headers=member_headers).json()

    assert client.delete(f"/users/{me['id']}", headers=admin_headers).status_code == 204

    released = client.get(f"/membership-cards/{card['id']}", headers=admin_headers).json()
    assert released["status"] == "FREE"
    assert released["user_id"] is None


def test_book_catalog_routes(client, admin_headers, member_headers):
    author = client.post("/authors", headers=admin_headers, json={"first_name": "Frank", "last_name": "Herbert"})
    assert author.status_code == 201
    author_id = author.json()["id"]

    book = client.post("/books", headers=admin_headers, json={
        "title": "Dune", "description": "Desert planet", "author_ids": [author_id],
    }).json()
    assert [a["id"] for a in book["authors"]] == [author_id]

    found = client.get("/books/search", headers=member_headers, params={"query": "desert dune"}).json()
    assert [b["id"] for b in found] == [book["id"]]
    by_author = client.get("/books/search/simple", headers=member_headers, params={"author_name": "Herbert"}).json()
    assert [b["id"] for b in by_author] == [book["id"]]
    assert [a["id"] for a in client.get(f"/authors/by-book/{book['id']}", headers=member_headers).json()] == [author_id]

    patched = client.patch(f"/books/{book['id']}", headers=admin_headers, json={"genre": "Science Fiction"})
    assert patched.json()["genre"] == "Science Fiction"
    assert client.delete(f"/books/{book['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/books/{book['id']}", headers=member_headers).status_code == 404


def test_enrich_book_without_isbn(client, admin_headers, book_id):
    response = client.post(f"/books/enrich/{book_id}", headers=admin_headers)
    assert response.status_code == 404


def test_membership_card_admin_routes(client, admin_headers):
    seeded = client.post("/membership-cards/seed", headers=admin_headers, json={"count": 2})
    assert seeded.status_code == 201
    assert [c["status"] for c in seeded.json()] == ["FREE", "FREE"]

    duplicate = client.post("/membership-cards", headers=admin_headers,
                            json={"serial_number": seeded.json()[0]["serial_number"]})
    assert duplicate.status_code == 409

    admin_id = client.get("/users/me", headers=admin_headers).json()["id"]
    card_id = seeded.json()[0]["id"]
    assigned = client.post(f"/membership-cards/{card_id}/assign", headers=admin_headers, json={"user_id": admin_id})
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "IN_USE"

    again = client.post(f"/membership-cards/{card_id}/assign", headers=admin_headers, json={"user_id": admin_id})
    assert again.status_code == 400

    free = client.get("/membership-cards", headers=admin_headers, params={"status": "FREE"}).json()
    assert [c["id"] for c in free] == [seeded.json()[1]["id"]]
    assert client.get("/membership-cards", headers=admin_headers, params={"status": "LOST"}).status_code == 422


def test_blank_author_name_is_rejected(client, admin_headers):
    response = client.post("/authors", headers=admin_headers, json={"first_name": "   ", "last_name": "Herbert"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_state"
    assert client.get("/authors", headers=admin_headers).json() == []


def test_debug_flag_reaches_the_app(monkeypatch):
    import importlib

    import library_app.api as api_module
    from library_app.config import settings

    monkeypatch.setattr(settings, "debug", True)
    try:
        assert importlib.reload(api_module).app.debug is True
    finally:
        monkeypatch.undo()
        importlib.reload(api_module)
