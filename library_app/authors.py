from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from library_app.database import RlsContext, transaction
from library_app.errors import InvalidState, NotFound
from library_app.models import Author, Book, Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

AUTHOR_FIELDS = ("first_name", "last_name", "birth_date", "death_date")
NAME_FIELDS = ("first_name", "last_name")


def find_by_id(conn: sqlite3.Connection, author_id: int) -> Optional[Author]:
    row = conn.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
    return Author.from_row(row) if row else None


def find_by_book_id(conn: sqlite3.Connection, book_id: int) -> List[Author]:
    rows = conn.execute(
        "SELECT a.* FROM authors a JOIN book_authors ba ON ba.author_id = a.id "
        "WHERE ba.book_id = ? ORDER BY a.last_name, a.first_name",
        (book_id,),
    ).fetchall()
    return [Author.from_row(r) for r in rows]


def clean_names(data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip the name fields present in ``data``; blank names are rejected."""
    cleaned = dict(data)
    for key in NAME_FIELDS:
        if cleaned.get(key) is None:
            continue
        cleaned[key] = cleaned[key].strip()
        if not cleaned[key]:
            raise InvalidState(f"{key} must not be blank")
    return cleaned


class AuthorService:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now) -> None:
        self.db_file = db_file
        self.clock = clock

    def create(self, data: Dict[str, Any], ctx: Optional[RlsContext] = None) -> Author:
        data = clean_names(data)
        now = to_iso(self.clock())
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            cursor = conn.execute(
                "INSERT INTO authors (first_name, last_name, birth_date, death_date, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (data["first_name"], data["last_name"],
                 data.get("birth_date"), data.get("death_date"), now, now),
            )
            author = find_by_id(conn, cursor.lastrowid)
        logger.info("Author %s created", author.id)
        return author

    def find_all(self, ctx: Optional[RlsContext] = None) -> List[Author]:
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute("SELECT * FROM authors ORDER BY id").fetchall()
        return [Author.from_row(r) for r in rows]

    def find_one(self, author_id: int, ctx: Optional[RlsContext] = None) -> Author:
        with transaction(ctx, db_file=self.db_file) as conn:
            author = find_by_id(conn, author_id)
        if author is None:
            raise NotFound(f"Author with id {author_id} not found")
        return author

    def find_by_book_id(self, book_id: int, ctx: Optional[RlsContext] = None) -> List[Author]:
        with transaction(ctx, db_file=self.db_file) as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFound(f"Book with id {book_id} not found")
            return find_by_book_id(conn, book_id)

    def find_books_by_author_id(self, author_id: int, ctx: Optional[RlsContext] = None) -> List[Book]:
        with transaction(ctx, db_file=self.db_file) as conn:
            if find_by_id(conn, author_id) is None:
                raise NotFound(f"Author with id {author_id} not found")
            rows = conn.execute(
                "SELECT b.* FROM books b JOIN book_authors ba ON ba.book_id = b.id "
                "WHERE ba.author_id = ? ORDER BY b.title",
                (author_id,),
            ).fetchall()
        return [Book.from_row(r) for r in rows]

    def update(self, author_id: int, data: Dict[str, Any], ctx: Optional[RlsContext] = None) -> Author:
        changes = {k: v for k, v in clean_names(data).items() if k in AUTHOR_FIELDS and v is not None}
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            if find_by_id(conn, author_id) is None:
                raise NotFound(f"Author with id {author_id} not found")
            if changes:
                changes["updated_at"] = to_iso(self.clock())
                assignments = ", ".join(f"{column} = ?" for column in changes)
                conn.execute(f"UPDATE authors SET {assignments} WHERE id = ?", (*changes.values(), author_id))
            return find_by_id(conn, author_id)

    def remove(self, author_id: int, ctx: Optional[RlsContext] = None) -> None:
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            cursor = conn.execute("DELETE FROM authors WHERE id = ?", (author_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Author with id {author_id} not found")
        logger.info("Author %s deleted", author_id)
