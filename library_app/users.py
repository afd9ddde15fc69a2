from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from library_app import membership_cards
from library_app.database import RlsContext, transaction, visible_to_actor
from library_app.errors import Conflict, Forbidden, InvalidState, NotFound
from library_app.models import Clock, CurrentUser, Role, User, to_iso, utc_now
from library_app.security import hash_password

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("email", "first_name", "last_name", "password", "role")


# ------------------------- Connection-level operations ------------------------- #
def find_by_id(conn: sqlite3.Connection, user_id: int) -> Optional[User]:
    row = conn.execute(
        f"SELECT * FROM users WHERE id = ? AND {visible_to_actor('id')}", (user_id,)
    ).fetchone()
    return User.from_row(row) if row else None


def find_by_email(conn: sqlite3.Connection, email: str) -> Optional[User]:
    row = conn.execute(
        f"SELECT * FROM users WHERE email = ? AND {visible_to_actor('id')}", (email.strip(),)
    ).fetchone()
    return User.from_row(row) if row else None


def insert_user(conn: sqlite3.Connection, email: str, password_hash: str, first_name: str,
                last_name: str, role: str = Role.USER.value, clock: Clock = utc_now) -> User:
    now = to_iso(clock())
    try:
        cursor = conn.execute(
            "INSERT INTO users (email, password, first_name, last_name, role, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (email.strip(), password_hash, first_name.strip(), last_name.strip(), Role(role).value, now, now),
        )
    except sqlite3.IntegrityError as e:
        raise Conflict(f"User with email {email} already exists") from e
    row = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return User.from_row(row)


def has_ongoing_loan(conn: sqlite3.Connection, user_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM loans WHERE user_id = ? AND returned_at IS NULL LIMIT 1", (user_id,)
    ).fetchone()
    return row is not None


# ------------------------- Service ------------------------- #
class UserService:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now) -> None:
        self.db_file = db_file
        self.clock = clock

    def find_all(self, ctx: Optional[RlsContext] = None) -> List[User]:
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute(f"SELECT * FROM users WHERE {visible_to_actor('id')} ORDER BY id").fetchall()
        return [User.from_row(r) for r in rows]

    def find_one(self, user_id: int, ctx: Optional[RlsContext] = None) -> User:
        with transaction(ctx, db_file=self.db_file) as conn:
            user = find_by_id(conn, user_id)
        if user is None:
            raise NotFound(f"User with id {user_id} not found")
        return user

    def find_by_email(self, email: str, ctx: Optional[RlsContext] = None) -> User:
        with transaction(ctx, db_file=self.db_file) as conn:
            user = find_by_email(conn, email)
        if user is None:
            raise NotFound(f"User with email {email} not found")
        return user

    def me(self, current: CurrentUser) -> User:
        return self.find_one(current.id, current.rls)

    def update(self, user_id: int, data: Dict[str, Any], current: CurrentUser) -> User:
        """Update a profile. Callers may edit themselves; admins may edit anyone and change roles."""
        if not current.is_admin and current.id != user_id:
            raise Forbidden("You can only update your own profile")

        changes = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
        if "role" in changes:
            if not current.is_admin:
                raise Forbidden("Only administrators can change roles")
            changes["role"] = Role(changes["role"]).value
        if "password" in changes:
            changes["password"] = hash_password(changes["password"])
        for key in ("email", "first_name", "last_name"):
            if key in changes:
                changes[key] = changes[key].strip()

        with transaction(current.rls, db_file=self.db_file, immediate=True) as conn:
            if find_by_id(conn, user_id) is None:
                raise NotFound(f"User with id {user_id} not found")
            if changes:
                changes["updated_at"] = to_iso(self.clock())
                assignments = ", ".join(f"{column} = ?" for column in changes)
                try:
                    conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", (*changes.values(), user_id))
                except sqlite3.IntegrityError as e:
                    raise Conflict(f"User with email {changes.get('email')} already exists") from e
            user = find_by_id(conn, user_id)

        logger.info("User %s updated (%s)", user_id, ", ".join(k for k in changes if k != "password") or "no changes")
        return user

    def remove(self, user_id: int, ctx: Optional[RlsContext] = None) -> None:
        """Delete a user, releasing their membership card back to the free pool.

        Refused while the user still has a book out. Loan history goes with the user.
        """
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            if find_by_id(conn, user_id) is None:
                raise NotFound(f"User with id {user_id} not found")
            if has_ongoing_loan(conn, user_id):
                raise InvalidState(f"User {user_id} still has ongoing loans")
            released = membership_cards.release_for_user(conn, user_id, self.clock)
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("User %s deleted, %d membership card(s) released", user_id, released)
