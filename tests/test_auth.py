import threading
from concurrent.futures import ThreadPoolExecutor

import jwt
import pytest

from library_app import membership_cards, users
from library_app.auth import AuthService
from library_app.config import settings
from library_app.database import transaction
from library_app.errors import Conflict, ResourceExhausted, Unauthorized
from library_app.membership_cards import MembershipCardService
from library_app.security import verify_password


@pytest.fixture
def auth(db_file):
    return AuthService(db_file=db_file)


@pytest.fixture
def cards(db_file):
    return MembershipCardService(db_file=db_file)


def _count_users(db_file):
    with transaction(db_file=db_file) as conn:
        return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]


def test_register_takes_free_card_and_issues_token(auth, cards):
    card = cards.create_card("BB0001")

    result = auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    user = result["user"]
    claims = jwt.decode(result["access_token"], settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    assert claims["sub"] == str(user.id)
    assert claims["email"] == "a@example.com"
    assert claims["role"] == "USER"
    card = cards.get_card(card.id)
    assert card.status == "IN_USE"
    assert card.user_id == user.id
    assert "password" not in user.to_dict()


def test_second_registration_without_free_card_is_rejected(auth, cards, db_file):
    cards.create_card("BB0001")
    auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    with pytest.raises(ResourceExhausted):
        auth.register("b@example.com", "Bob", "Builder", "secret123")

    assert _count_users(db_file) == 1


def test_concurrent_registrations_share_one_card(auth, cards, db_file):
    cards.create_card("BB0001")
    start = threading.Barrier(8)

    def register(n):
        start.wait()
        try:
            auth.register(f"reader{n}@example.com", "Reader", str(n), "secret123")
        except ResourceExhausted:
            return "exhausted"
        return "ok"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = sorted(pool.map(register, range(8)))

    assert outcomes == ["exhausted"] * 7 + ["ok"]
    assert _count_users(db_file) == 1
    assert cards.count_free() == 0


def test_registration_with_empty_pool_creates_no_user(auth, db_file):
    with pytest.raises(ResourceExhausted, match="No free membership cards available"):
        auth.register("a@example.com", "Ada", "Lovelace", "secret123")
    assert _count_users(db_file) == 0


def test_duplicate_email_keeps_the_card_free(auth, cards):
    cards.create_card("BB0001")
    spare = cards.create_card("BB0002")
    auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    with pytest.raises(Conflict):
        auth.register("A@example.com", "Ada", "Again", "secret123")

    assert cards.get_card(spare.id).status == "FREE"


def test_registration_steps_run_in_order(auth, cards, monkeypatch):
    cards.create_card("BB0001")
    order = []

    def tracking(name, fn):
        def wrapper(*args, **kwargs):
            order.append(name)
            return fn(*args, **kwargs)
        return wrapper

    monkeypatch.setattr(membership_cards, "find_first_free", tracking("find_free_card", membership_cards.find_first_free))
    monkeypatch.setattr(users, "insert_user", tracking("create_user", users.insert_user))
    monkeypatch.setattr(membership_cards, "assign", tracking("assign_card", membership_cards.assign))

    auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    assert order == ["find_free_card", "create_user", "assign_card"]


def test_failed_card_assignment_rolls_back_user(auth, cards, db_file, monkeypatch):
    card = cards.create_card("BB0001")

    def broken_assign(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(membership_cards, "assign", broken_assign)

    with pytest.raises(RuntimeError):
        auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    assert _count_users(db_file) == 0
    assert cards.get_card(card.id).status == "FREE"


def test_password_is_stored_hashed(auth, cards, db_file):
    cards.create_card("BB0001")
    user = auth.register("a@example.com", "Ada", "Lovelace", "secret123")["user"]

    with transaction(db_file=db_file) as conn:
        stored = conn.execute("SELECT password FROM users WHERE id = ?", (user.id,)).fetchone()[0]
    assert stored != "secret123"
    assert verify_password("secret123", stored)


def test_login_returns_token(auth, cards):
    cards.create_card("BB0001")
    registered = auth.register("a@example.com", "Ada", "Lovelace", "secret123")["user"]

    result = auth.login("a@example.com", "secret123")

    assert result["user"].id == registered.id
    assert auth.authenticate(result["access_token"]).id == registered.id


def test_login_failures_share_one_message(auth, cards):
    cards.create_card("BB0001")
    auth.register("a@example.com", "Ada", "Lovelace", "secret123")

    with pytest.raises(Unauthorized) as unknown_email:
        auth.login("nobody@example.com", "secret123")
    with pytest.raises(Unauthorized) as wrong_password:
        auth.login("a@example.com", "not-the-password")

    assert str(unknown_email.value) == "Invalid credentials"
    assert str(wrong_password.value) == str(unknown_email.value)


def test_authenticate_rejects_garbage_token(auth):
    with pytest.raises(Unauthorized):
        auth.authenticate("not.a.jwt")


def test_authenticate_rejects_token_of_deleted_user(auth, cards, db_file):
    cards.create_card("BB0001")
    result = auth.register("a@example.com", "Ada", "Lovelace", "secret123")
    with transaction(db_file=db_file) as conn:
        conn.execute("DELETE FROM users WHERE id = ?", (result["user"].id,))

    with pytest.raises(Unauthorized):
        auth.authenticate(result["access_token"])


def test_authenticate_rejects_expired_token(db_file, cards, clock):
    cards.create_card("BB0001")
    # tokens are stamped with the frozen clock, long in the past
    result = AuthService(db_file=db_file, clock=clock).register("a@example.com", "Ada", "Lovelace", "secret123")

    with pytest.raises(Unauthorized, match="expired"):
        AuthService(db_file=db_file).authenticate(result["access_token"])


def test_bootstrap_admin_creates_configured_admin_once(auth, monkeypatch):
    monkeypatch.setattr(settings, "admin_email", "root@example.com")
    monkeypatch.setattr(settings, "admin_password", "rootpass")

    admin = auth.bootstrap_admin()

    assert admin is not None
    assert admin.role == "ADMIN"
    assert auth.bootstrap_admin() is None
    assert auth.login("root@example.com", "rootpass")["user"].id == admin.id


def test_bootstrap_admin_skipped_without_credentials(auth, monkeypatch):
    monkeypatch.setattr(settings, "admin_email", None)
    monkeypatch.setattr(settings, "admin_password", None)
    assert auth.bootstrap_admin() is None
