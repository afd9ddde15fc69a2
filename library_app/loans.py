"""Loan lifecycle: ONGOING -> RETURNED | LATE.

A book is out at most once at a time. The partial unique index on
``loans(book_id) WHERE returned_at IS NULL`` enforces it in the store; the
explicit check before the insert only exists to produce a clear error.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from library_app.config import settings
from library_app.database import RlsContext, transaction, visible_to_actor
from library_app.errors import Forbidden, InvalidState, NotFound
from library_app.models import Clock, CurrentUser, Loan, LoanStatus, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

_LOAN_SELECT = (
    "SELECT l.*, b.title AS book_title FROM loans l "
    "JOIN books b ON b.id = l.book_id "
    f"WHERE {visible_to_actor('l.user_id')}"
)


def is_late(returned_at: datetime, due_at: Optional[datetime]) -> bool:
    """A loan is late only when returned strictly after its due date."""
    if due_at is None:
        return False
    return returned_at > due_at


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ------------------------- Connection-level operations ------------------------- #
def find_by_id(conn: sqlite3.Connection, loan_id: int) -> Optional[Loan]:
    row = conn.execute(f"{_LOAN_SELECT} AND l.id = ?", (loan_id,)).fetchone()
    return Loan.from_row(row) if row else None


def is_book_loaned(conn: sqlite3.Connection, book_id: int) -> bool:
    # unscoped: a loan held by someone else must still block the book
    row = conn.execute(
        "SELECT 1 FROM loans WHERE book_id = ? AND returned_at IS NULL LIMIT 1", (book_id,)
    ).fetchone()
    return row is not None


# ------------------------- Service ------------------------- #
class LoanService:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now,
                 loan_days: Optional[int] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.loan_days = settings.default_loan_days if loan_days is None else loan_days

    def create(self, book_id: int, user_id: int, due_at: Optional[datetime] = None,
               ctx: Optional[RlsContext] = None) -> Loan:
        """Lend ``book_id`` to ``user_id``. ``due_at`` defaults to now plus the loan period."""
        now = self.clock()
        due = _as_utc(due_at) if due_at is not None else now + timedelta(days=self.loan_days)

        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFound(f"Book with id {book_id} not found")
            if is_book_loaned(conn, book_id):
                raise InvalidState(f"Book {book_id} is already loaned")
            try:
                cursor = conn.execute(
                    "INSERT INTO loans (user_id, book_id, status, borrowed_at, due_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (user_id, book_id, LoanStatus.ONGOING.value, to_iso(now), to_iso(due), to_iso(now), to_iso(now)),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFound(f"User with id {user_id} not found") from e
                raise InvalidState(f"Book {book_id} is already loaned") from e
            loan = find_by_id(conn, cursor.lastrowid)

        logger.info("Loan %s created: book %s to user %s, due %s", loan.id, book_id, user_id, loan.due_at)
        return loan

    def return_loan(self, loan_id: int, requesting_user_id: int, ctx: Optional[RlsContext] = None) -> Loan:
        """Close a loan. Only the borrower may return it, and only once."""
        now = self.clock()
        with transaction(ctx, db_file=self.db_file, immediate=True) as conn:
            loan = find_by_id(conn, loan_id)
            if loan is None:
                raise NotFound(f"Loan with id {loan_id} not found")
            if loan.is_returned:
                raise InvalidState(f"Loan {loan_id} is already returned")
            if loan.user_id != requesting_user_id:
                raise Forbidden("You can only return your own loans")

            status = LoanStatus.LATE if is_late(now, parse_iso(loan.due_at)) else LoanStatus.RETURNED
            cursor = conn.execute(
                "UPDATE loans SET returned_at = ?, status = ?, updated_at = ? "
                "WHERE id = ? AND returned_at IS NULL",
                (to_iso(now), status.value, to_iso(now), loan_id),
            )
            if cursor.rowcount == 0:
                raise InvalidState(f"Loan {loan_id} is already returned")
            loan = find_by_id(conn, loan_id)

        logger.info("Loan %s returned with status %s", loan_id, loan.status)
        return loan

    # ------------------------- Queries ------------------------- #
    def _query(self, where: str = "", params: tuple = (), ctx: Optional[RlsContext] = None) -> List[Loan]:
        with transaction(ctx, db_file=self.db_file) as conn:
            rows = conn.execute(f"{_LOAN_SELECT}{where} ORDER BY l.id", params).fetchall()
        return [Loan.from_row(r) for r in rows]

    def find_one(self, loan_id: int, ctx: Optional[RlsContext] = None) -> Loan:
        with transaction(ctx, db_file=self.db_file) as conn:
            loan = find_by_id(conn, loan_id)
        if loan is None:
            raise NotFound(f"Loan with id {loan_id} not found")
        return loan

    def find_all(self, ctx: Optional[RlsContext] = None) -> List[Loan]:
        return self._query(ctx=ctx)

    def find_ongoing(self, user_id: Optional[int] = None, ctx: Optional[RlsContext] = None) -> List[Loan]:
        if user_id is None:
            return self._query(" AND l.returned_at IS NULL", ctx=ctx)
        return self._query(" AND l.returned_at IS NULL AND l.user_id = ?", (user_id,), ctx)

    def find_by_user_id(self, user_id: int, ctx: Optional[RlsContext] = None) -> List[Loan]:
        return self._query(" AND l.user_id = ?", (user_id,), ctx)

    def find_by_book_id(self, book_id: int, ctx: Optional[RlsContext] = None) -> List[Loan]:
        return self._query(" AND l.book_id = ?", (book_id,), ctx)

    def find_my_loans(self, current: CurrentUser) -> List[Loan]:
        return self.find_ongoing(current.id, current.rls)

    def search(self, user_id: Optional[int] = None, book_id: Optional[int] = None,
               ctx: Optional[RlsContext] = None) -> List[Loan]:
        if user_id is None and book_id is None:
            raise InvalidState("Either user_id or book_id is required")
        if book_id is None:
            return self.find_by_user_id(user_id, ctx)
        if user_id is None:
            return self.find_by_book_id(book_id, ctx)
        return self._query(" AND l.user_id = ? AND l.book_id = ?", (user_id, book_id), ctx)
