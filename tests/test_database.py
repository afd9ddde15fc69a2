import sqlite3

import pytest

from library_app.database import RlsContext, get_db_connection, initialize_database, transaction


def test_initialize_database_is_idempotent(db_file):
    initialize_database(db_file)
    initialize_database(db_file)

    conn = get_db_connection(db_file)
    try:
        tables = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()
    assert {"users", "authors", "books", "book_authors", "membership_cards", "loans"} <= tables


def test_transaction_installs_actor_functions(db_file):
    with transaction(RlsContext(actor_id=7, actor_role="USER"), db_file=db_file) as conn:
        row = conn.execute("SELECT app_user_id(), app_user_role()").fetchone()
    assert tuple(row) == (7, "USER")


def test_system_context_is_admin_without_actor(db_file):
    with transaction(RlsContext.system(), db_file=db_file) as conn:
        row = conn.execute("SELECT app_user_id(), app_user_role()").fetchone()
    assert tuple(row) == (None, "ADMIN")


def test_actor_functions_do_not_outlive_the_transaction(db_file):
    with transaction(RlsContext(actor_id=1, actor_role="USER"), db_file=db_file):
        pass
    conn = get_db_connection(db_file)
    try:
        with pytest.raises(sqlite3.OperationalError):
            conn.execute("SELECT app_user_id()")
    finally:
        conn.close()


def test_transaction_rolls_back_on_error(db_file):
    with pytest.raises(RuntimeError):
        with transaction(db_file=db_file, immediate=True) as conn:
            conn.execute(
                "INSERT INTO membership_cards (serial_number, created_at, updated_at) VALUES ('BB1', 'x', 'x')"
            )
            raise RuntimeError("boom")

    with transaction(db_file=db_file) as conn:
        assert conn.execute("SELECT COUNT(*) FROM membership_cards").fetchone()[0] == 0


def test_enum_columns_are_checked(db_file):
    with pytest.raises(sqlite3.IntegrityError):
        with transaction(db_file=db_file) as conn:
            conn.execute(
                "INSERT INTO membership_cards (serial_number, status, created_at, updated_at) "
                "VALUES ('BB1', 'LOST', 'x', 'x')"
            )
