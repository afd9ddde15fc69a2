import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from dotenv import load_dotenv

# Make sure .env is loaded before the database file is resolved.
load_dotenv()

from library_app.config import settings  # noqa: E402

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) settings.database_file (per-process temp file)
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file


@dataclass(frozen=True)
class RlsContext:
    """Actor a transaction runs on behalf of.

    Installed once per transaction as the ``app_user_id()`` and
    ``app_user_role()`` SQL functions that the row policies below read.
    """

    actor_id: Optional[int] = None
    actor_role: str = ""

    @classmethod
    def system(cls) -> "RlsContext":
        """Context for flows with no authenticated actor (registration, jobs, startup)."""
        return cls(actor_id=None, actor_role="ADMIN")

    @property
    def is_admin(self) -> bool:
        return self.actor_role == "ADMIN"


def visible_to_actor(owner_column: str) -> str:
    """Row policy: admins see every row, everyone else only the rows they own."""
    return f"(app_user_role() = 'ADMIN' OR {owner_column} = app_user_id())"


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(
    rls: Optional[RlsContext] = None,
    db_file: Optional[str] = None,
    immediate: bool = False,
) -> Iterator[sqlite3.Connection]:
    """Run a block inside one transaction scoped to ``rls``.

    ``immediate=True`` takes the database write lock at BEGIN, so a
    check-then-write sequence cannot interleave with another writer.
    Commits on success, rolls back on any exception, always closes.
    """
    context = rls or RlsContext.system()
    conn = get_db_connection(db_file)
    conn.create_function("app_user_id", 0, lambda: context.actor_id)
    conn.create_function("app_user_role", 0, lambda: context.actor_role)
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create tables and indexes if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                password TEXT NOT NULL,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('ADMIN', 'USER')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS authors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL,
                birth_date TEXT,
                death_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                isbn10 TEXT,
                isbn13 TEXT UNIQUE,
                genre TEXT,
                publication_date TEXT,
                description TEXT,
                cover_image_url TEXT,
                external_source TEXT,
                external_id TEXT,
                external_metadata TEXT,  -- JSON object
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS book_authors (
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                author_id INTEGER NOT NULL REFERENCES authors(id) ON DELETE CASCADE,
                PRIMARY KEY (book_id, author_id)
            );

            CREATE TABLE IF NOT EXISTS membership_cards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                serial_number TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'FREE' CHECK (status IN ('FREE', 'IN_USE')),
                user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                assigned_at TEXT,
                archived_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                status TEXT NOT NULL DEFAULT 'ONGOING' CHECK (status IN ('ONGOING', 'RETURNED', 'LATE')),
                borrowed_at TEXT NOT NULL,
                due_at TEXT,
                returned_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- A book is out at most once at a time
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_one_open_per_book
                ON loans(book_id) WHERE returned_at IS NULL;
            -- A user holds at most one card
            CREATE UNIQUE INDEX IF NOT EXISTS idx_membership_cards_one_per_user
                ON membership_cards(user_id) WHERE status = 'IN_USE';

            CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id);
            CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id);
            CREATE INDEX IF NOT EXISTS idx_membership_cards_status ON membership_cards(status, id);
            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre);
            CREATE INDEX IF NOT EXISTS idx_book_authors_author_id ON book_authors(author_id);
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)
