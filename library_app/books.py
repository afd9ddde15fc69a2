"""Book catalog: CRUD, local search and Google Books integration."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from library_app import authors
from library_app.config import settings
from library_app.database import RlsContext, transaction
from library_app.errors import Conflict, InvalidState, NotFound, ServiceUnavailable
from library_app.models import Book, Clock, to_iso, utc_now
from library_app.services.google_books_service import GoogleBooksService
from library_app.services.job_queue import (
    CREATE_BOOK_FROM_GOOGLE_JOB_NAME,
    ENRICH_BOOK_JOB_NAME,
    JobQueue,
)
from library_app.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "title", "isbn10", "isbn13", "genre", "publication_date", "description",
    "cover_image_url", "external_source", "external_id", "external_metadata",
)


def _column_value(key: str, value: Any) -> Any:
    if key == "external_metadata" and value is not None:
        return json.dumps(value)
    if key in ("isbn10", "isbn13") and value:
        return ISBNValidator.normalize_isbn(value)
    return value


# ------------------------- Connection-level operations ------------------------- #
def find_by_id(conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
    row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
    return Book.from_row(row) if row else None


def exists_by_isbn13(conn: sqlite3.Connection, isbn13: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM books WHERE isbn13 = ?", (ISBNValidator.normalize_isbn(isbn13),)
    ).fetchone()
    return row is not None


def insert_book(conn: sqlite3.Connection, data: Dict[str, Any], clock: Clock = utc_now) -> Book:
    now = to_iso(clock())
    values = {k: _column_value(k, data.get(k)) for k in BOOK_FIELDS}
    values["title"] = (values["title"] or "").strip()
    columns = ", ".join((*values, "created_at", "updated_at"))
    placeholders = ", ".join("?" for _ in range(len(values) + 2))
    try:
        cursor = conn.execute(
            f"INSERT INTO books ({columns}) VALUES ({placeholders})", (*values.values(), now, now)
        )
    except sqlite3.IntegrityError as e:
        raise Conflict("Book with this ISBN-13 already exists") from e
    return find_by_id(conn, cursor.lastrowid)


def link_authors(conn: sqlite3.Connection, book_id: int, author_ids: Iterable[int]) -> None:
    conn.execute("DELETE FROM book_authors WHERE book_id = ?", (book_id,))
    for author_id in dict.fromkeys(author_ids):
        if authors.find_by_id(conn, author_id) is None:
            raise NotFound(f"Author with id {author_id} not found")
        conn.execute("INSERT INTO book_authors (book_id, author_id) VALUES (?, ?)", (book_id, author_id))


def update_book(conn: sqlite3.Connection, book_id: int, changes: Dict[str, Any], clock: Clock = utc_now) -> None:
    values = {k: _column_value(k, v) for k, v in changes.items() if k in BOOK_FIELDS}
    if not values:
        return
    values["updated_at"] = to_iso(clock())
    assignments = ", ".join(f"{column} = ?" for column in values)
    try:
        conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*values.values(), book_id))
    except sqlite3.IntegrityError as e:
        raise Conflict("Book with this ISBN-13 already exists") from e


# ------------------------- Service ------------------------- #
class BooksService:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now,
                 queue: Optional[JobQueue] = None,
                 google_books: Optional[GoogleBooksService] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.queue = queue
        self.google_books = google_books or GoogleBooksService()

    def _queue_enrichment(self, book: Book) -> None:
        if self.queue is None:
            logger.debug("No job queue configured; book %s will not be enriched", book.id)
            return
        try:
            self.queue.enqueue(ENRICH_BOOK_JOB_NAME, {
                "book_id": book.id,
                "isbn13": book.isbn13,
                "isbn10": book.isbn10,
            })
        except ServiceUnavailable as e:
            logger.error("Failed to queue enrichment job for book %s: %s", book.id, e)
            return
        logger.info("Queued enrichment job for book %s with ISBN-13: %s, ISBN-10: %s",
                    book.id, book.isbn13 or "N/A", book.isbn10 or "N/A")

    # ------------------------- CRUD ------------------------- #
    def create(self, data: Dict[str, Any], ctx: Optional[RlsContext] = None) -> Book:
        """Create a book, link its authors and queue enrichment when it carries an ISBN."""
        if not TextValidator.validate_title(data.get("title")):
            raise InvalidState("Title must contain at least one letter or digit")
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            if data.get("isbn13") and exists_by_isbn13(conn, data["isbn13"]):
                raise Conflict("Book with this ISBN-13 already exists")
            book = insert_book(conn, data, self.clock)
            if data.get("author_ids"):
                link_authors(conn, book.id, data["author_ids"])
            book.authors = authors.find_by_book_id(conn, book.id)

        logger.info("Book %s created: %s", book.id, book.title)
        if book.isbn:
            self._queue_enrichment(book)
        return book

    def find_all(self, ctx: Optional[RlsContext] = None) -> List[Book]:
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY id").fetchall()
        return [Book.from_row(r) for r in rows]

    def find_one(self, book_id: int, ctx: Optional[RlsContext] = None) -> Book:
        with transaction(ctx, db_file=self.db_file) as conn:
            book = find_by_id(conn, book_id)
            if book is None:
                raise NotFound(f"Book with id {book_id} not found")
            book.authors = authors.find_by_book_id(conn, book_id)
        return book

    def update(self, book_id: int, data: Dict[str, Any], ctx: Optional[RlsContext] = None) -> Book:
        changes = {k: v for k, v in data.items() if k in BOOK_FIELDS}
        if "title" in changes and not TextValidator.validate_title(changes["title"]):
            raise InvalidState("Title must contain at least one letter or digit")
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            existing = find_by_id(conn, book_id)
            if existing is None:
                raise NotFound(f"Book with id {book_id} not found")
            new_isbn13 = changes.get("isbn13")
            if new_isbn13 and ISBNValidator.normalize_isbn(new_isbn13) != existing.isbn13:
                if exists_by_isbn13(conn, new_isbn13):
                    raise Conflict("Book with this ISBN-13 already exists")
            update_book(conn, book_id, changes, self.clock)
            if data.get("author_ids") is not None:
                link_authors(conn, book_id, data["author_ids"])
            book = find_by_id(conn, book_id)
            book.authors = authors.find_by_book_id(conn, book_id)
        return book

    def remove(self, book_id: int, ctx: Optional[RlsContext] = None) -> None:
        """Delete a book and its loan history; refused while the book is out."""
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            if find_by_id(conn, book_id) is None:
                raise NotFound(f"Book with id {book_id} not found")
            ongoing = conn.execute(
                "SELECT 1 FROM loans WHERE book_id = ? AND returned_at IS NULL", (book_id,)
            ).fetchone()
            if ongoing is not None:
                raise InvalidState(f"Book {book_id} is currently loaned")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("Book %s deleted", book_id)

    # ------------------------- Search ------------------------- #
    def search(self, query: Optional[str] = None, genre: Optional[str] = None,
               ctx: Optional[RlsContext] = None) -> List[Book]:
        """Books whose title or description contains every term of ``query``."""
        clauses: List[str] = []
        params: List[Any] = []
        for term in (query or "").split():
            clauses.append("(b.title LIKE ? OR b.description LIKE ?)")
            params.extend([f"%{term}%", f"%{term}%"])
        if genre:
            clauses.append("b.genre = ? COLLATE NOCASE")
            params.append(genre)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute(f"SELECT b.* FROM books b{where} ORDER BY b.title", params).fetchall()
        return [Book.from_row(r) for r in rows]

    def search_simple(self, title: Optional[str] = None, genre: Optional[str] = None,
                      author_name: Optional[str] = None, ctx: Optional[RlsContext] = None) -> List[Book]:
        clauses: List[str] = []
        params: List[Any] = []
        if title:
            clauses.append("b.title LIKE ?")
            params.append(f"%{title}%")
        if genre:
            clauses.append("b.genre = ? COLLATE NOCASE")
            params.append(genre)
        if author_name:
            clauses.append(
                "EXISTS (SELECT 1 FROM book_authors ba JOIN authors a ON a.id = ba.author_id "
                "WHERE ba.book_id = b.id AND (a.first_name LIKE ? OR a.last_name LIKE ? "
                "OR a.first_name || ' ' || a.last_name LIKE ?))"
            )
            params.extend([f"%{author_name}%"] * 3)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute(f"SELECT b.* FROM books b{where} ORDER BY b.title", params).fetchall()
        return [Book.from_row(r) for r in rows]

    # ------------------------- Google Books ------------------------- #
    async def search_google(self, query: str, max_results: int = 10) -> List[Dict[str, Any]]:
        return await self.google_books.search(query, max_results or 10)

    def enrich_from_google_books(self, book_id: int) -> Book:
        """Queue enrichment for an existing book and return it as it is now."""
        book = self.find_one(book_id)
        if not book.isbn:
            raise NotFound("Book must have a valid ISBN-13 or ISBN-10 to be enriched from Google Books.")
        if self.queue is None:
            raise ServiceUnavailable("Background jobs are not available")
        self.queue.enqueue(ENRICH_BOOK_JOB_NAME, {
            "book_id": book.id,
            "isbn13": book.isbn13,
            "isbn10": book.isbn10,
        })
        logger.info("Queued enrichment job for book %s with ISBN-13: %s, ISBN-10: %s",
                    book.id, book.isbn13 or "N/A", book.isbn10 or "N/A")
        return book

    async def create_from_google_books(self, isbn: str, timeout: Optional[float] = None) -> Book:
        """Queue a create-from-catalog job and wait for the book it produces."""
        if not ISBNValidator.is_valid_isbn(isbn):
            raise InvalidState(f"Invalid ISBN: {isbn}")
        if self.queue is None:
            raise ServiceUnavailable("Background jobs are not available")
        job = self.queue.enqueue(CREATE_BOOK_FROM_GOOGLE_JOB_NAME, {"isbn": isbn})
        logger.info("Queued create-from-google job for ISBN: %s", isbn)

        wait = settings.enrichment_wait_seconds if timeout is None else timeout
        try:
            return await self.queue.wait_until_finished(job, wait)
        except (Conflict, NotFound):
            raise
        except asyncio.TimeoutError as e:
            raise NotFound(f"Failed to create book from Google Books: timed out after {wait}s") from e
        except Exception as e:
            raise NotFound(f"Failed to create book from Google Books: {e}") from e
