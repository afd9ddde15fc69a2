"""Membership card allocation.

Module-level functions operate on a connection the caller already holds, so
they take part in the caller's transaction (registration uses them that way).
``MembershipCardService`` wraps them in their own transactions for the admin
endpoints and the CLI.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import List, Optional

from library_app.config import settings
from library_app.database import RlsContext, transaction, visible_to_actor
from library_app.errors import Conflict, InvalidState, NotFound
from library_app.models import CardStatus, Clock, MembershipCard, to_iso, utc_now

logger = logging.getLogger(__name__)


def format_serial(number: int, prefix: Optional[str] = None, digits: Optional[int] = None) -> str:
    prefix = settings.membership_card_prefix if prefix is None else prefix
    digits = settings.membership_card_digits if digits is None else digits
    return f"{prefix}{number:0{digits}d}"


# ------------------------- Connection-level operations ------------------------- #
def find_first_free(conn: sqlite3.Connection) -> Optional[MembershipCard]:
    """Return the FREE card with the lowest id, or None when the pool is empty."""
    row = conn.execute(
        "SELECT * FROM membership_cards "
        "WHERE status = 'FREE' AND archived_at IS NULL "
        "ORDER BY id LIMIT 1"
    ).fetchone()
    return MembershipCard.from_row(row) if row else None


def find_by_id(conn: sqlite3.Connection, card_id: int) -> Optional[MembershipCard]:
    row = conn.execute(
        f"SELECT * FROM membership_cards WHERE id = ? AND {visible_to_actor('user_id')}",
        (card_id,),
    ).fetchone()
    return MembershipCard.from_row(row) if row else None


def find_by_user_id(conn: sqlite3.Connection, user_id: int) -> Optional[MembershipCard]:
    row = conn.execute(
        f"SELECT * FROM membership_cards WHERE user_id = ? AND status = 'IN_USE' "
        f"AND {visible_to_actor('user_id')}",
        (user_id,),
    ).fetchone()
    return MembershipCard.from_row(row) if row else None


def assign(conn: sqlite3.Connection, card_id: int, user_id: int, clock: Clock = utc_now) -> MembershipCard:
    """Mark a FREE card IN_USE for ``user_id``.

    The update only matches a card that is still FREE, so two writers can
    never both take the same card.
    """
    now = to_iso(clock())
    try:
        cursor = conn.execute(
            "UPDATE membership_cards SET status = 'IN_USE', user_id = ?, assigned_at = ?, updated_at = ? "
            "WHERE id = ? AND status = 'FREE'",
            (user_id, now, now, card_id),
        )
    except sqlite3.IntegrityError as e:
        if "FOREIGN KEY" in str(e):
            raise NotFound(f"User with id {user_id} not found") from e
        raise Conflict(f"User {user_id} already holds a membership card") from e

    if cursor.rowcount == 0:
        exists = conn.execute("SELECT 1 FROM membership_cards WHERE id = ?", (card_id,)).fetchone()
        if exists is None:
            raise NotFound(f"Membership card with id {card_id} not found")
        raise InvalidState(f"Membership card {card_id} is already in use")

    row = conn.execute("SELECT * FROM membership_cards WHERE id = ?", (card_id,)).fetchone()
    return MembershipCard.from_row(row)


def release_for_user(conn: sqlite3.Connection, user_id: int, clock: Clock = utc_now) -> int:
    """Put the user's card back into the FREE pool. Returns the number of cards released."""
    now = to_iso(clock())
    cursor = conn.execute(
        "UPDATE membership_cards SET status = 'FREE', user_id = NULL, assigned_at = NULL, updated_at = ? "
        "WHERE user_id = ? AND status = 'IN_USE'",
        (now, user_id),
    )
    return cursor.rowcount


def insert_card(conn: sqlite3.Connection, serial_number: str, clock: Clock = utc_now) -> MembershipCard:
    now = to_iso(clock())
    try:
        cursor = conn.execute(
            "INSERT INTO membership_cards (serial_number, status, created_at, updated_at) VALUES (?, 'FREE', ?, ?)",
            (serial_number, now, now),
        )
    except sqlite3.IntegrityError as e:
        raise Conflict(f"Membership card with serial number {serial_number} already exists") from e
    row = conn.execute("SELECT * FROM membership_cards WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return MembershipCard.from_row(row)


def highest_serial_number(conn: sqlite3.Connection, prefix: str) -> int:
    """Highest numeric suffix among serials carrying ``prefix``; 0 when there are none."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for row in conn.execute("SELECT serial_number FROM membership_cards WHERE serial_number LIKE ?",
                            (f"{prefix}%",)):
        match = pattern.match(row["serial_number"])
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


# ------------------------- Service ------------------------- #
class MembershipCardService:
    """Admin-facing card management."""

    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now) -> None:
        self.db_file = db_file
        self.clock = clock

    def list_cards(self, status: Optional[str] = None, ctx: Optional[RlsContext] = None) -> List[MembershipCard]:
        query = f"SELECT * FROM membership_cards WHERE {visible_to_actor('user_id')}"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(CardStatus(status).value)
        query += " ORDER BY id"
        with transaction(ctx, db_file=self.db_file) as conn:
            return [MembershipCard.from_row(r) for r in conn.execute(query, params).fetchall()]

    def get_card(self, card_id: int, ctx: Optional[RlsContext] = None) -> MembershipCard:
        with transaction(ctx, db_file=self.db_file) as conn:
            card = find_by_id(conn, card_id)
        if card is None:
            raise NotFound(f"Membership card with id {card_id} not found")
        return card

    def get_card_for_user(self, user_id: int, ctx: Optional[RlsContext] = None) -> MembershipCard:
        with transaction(ctx, db_file=self.db_file) as conn:
            card = find_by_user_id(conn, user_id)
        if card is None:
            raise NotFound(f"No membership card assigned to user {user_id}")
        return card

    def create_card(self, serial_number: str) -> MembershipCard:
        serial_number = serial_number.strip()
        with transaction(RlsContext.system(), db_file=self.db_file, immediate=True) as conn:
            card = insert_card(conn, serial_number, self.clock)
        logger.info("Membership card %s created", card.serial_number)
        return card

    def seed(self, count: int, prefix: Optional[str] = None) -> List[MembershipCard]:
        """Create ``count`` FREE cards numbered after the highest existing serial."""
        if count < 1:
            raise InvalidState("count must be a positive number")
        prefix = settings.membership_card_prefix if prefix is None else prefix
        with transaction(RlsContext.system(), db_file=self.db_file, immediate=True) as conn:
            start = highest_serial_number(conn, prefix) + 1
            cards = [insert_card(conn, format_serial(n, prefix), self.clock) for n in range(start, start + count)]
        logger.info("Seeded %d membership cards (%s..%s)", len(cards), cards[0].serial_number, cards[-1].serial_number)
        return cards

    def assign(self, card_id: int, user_id: int) -> MembershipCard:
        with transaction(RlsContext.system(), db_file=self.db_file, immediate=True) as conn:
            card = assign(conn, card_id, user_id, self.clock)
        logger.info("Membership card %s assigned to user %s", card.serial_number, user_id)
        return card

    def count_free(self) -> int:
        with transaction(RlsContext.system(), db_file=self.db_file) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM membership_cards WHERE status = 'FREE' AND archived_at IS NULL"
            ).fetchone()
        return row[0]
