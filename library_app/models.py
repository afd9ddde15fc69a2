from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from library_app.database import RlsContext


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class CardStatus(str, Enum):
    FREE = "FREE"
    IN_USE = "IN_USE"


class LoanStatus(str, Enum):
    ONGOING = "ONGOING"
    RETURNED = "RETURNED"
    LATE = "LATE"


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialise a datetime as ISO-8601 UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_get(row: Any, key: str, default: Any = None) -> Any:
    # sqlite3.Row has no .get()
    try:
        return row[key]
    except (KeyError, IndexError):
        return default


class User:
    """A registered library member or administrator."""

    def __init__(self, id: int, email: str, password: str, first_name: str, last_name: str,
                 role: str = Role.USER.value, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.email = email
        self.password = password
        self.first_name = first_name
        self.last_name = last_name
        self.role = role
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.first_name} {self.last_name} <{self.email}>"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def to_dict(self) -> dict:
        # the password hash never leaves the service layer
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "User":
        return User(
            id=row["id"],
            email=row["email"],
            password=row["password"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class Author:
    def __init__(self, id: int, first_name: str, last_name: str, birth_date: str | None = None,
                 death_date: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.first_name = first_name
        self.last_name = last_name
        self.birth_date = birth_date
        self.death_date = death_date
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "birth_date": self.birth_date,
            "death_date": self.death_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Author":
        return Author(
            id=row["id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            birth_date=row["birth_date"],
            death_date=row["death_date"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class Book:
    """A catalog entry; authors are attached by the books service when requested."""

    def __init__(self, id: int, title: str, isbn10: str | None = None, isbn13: str | None = None,
                 genre: str | None = None, publication_date: str | None = None,
                 description: str | None = None, cover_image_url: str | None = None,
                 # catalog provenance
                 external_source: str | None = None, external_id: str | None = None,
                 external_metadata: dict | None = None,
                 created_at: str | None = None, updated_at: str | None = None,
                 authors: list[Author] | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.isbn10 = isbn10
        self.isbn13 = isbn13
        self.genre = genre
        self.publication_date = publication_date
        self.description = description
        self.cover_image_url = cover_image_url
        self.external_source = external_source
        self.external_id = external_id
        self.external_metadata = external_metadata
        self.created_at = created_at
        self.updated_at = updated_at
        self.authors = authors or []

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn13 or self.isbn10 or '-'})"

    @property
    def isbn(self) -> str | None:
        return self.isbn13 or self.isbn10

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "isbn10": self.isbn10,
            "isbn13": self.isbn13,
            "genre": self.genre,
            "publication_date": self.publication_date,
            "description": self.description,
            "cover_image_url": self.cover_image_url,
            "external_source": self.external_source,
            "external_id": self.external_id,
            "external_metadata": self.external_metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "authors": [a.to_dict() for a in self.authors],
        }

    @staticmethod
    def from_row(row: Any) -> "Book":
        # SQLite keeps the metadata as a JSON string
        metadata = row["external_metadata"]
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None

        return Book(
            id=row["id"],
            title=row["title"],
            isbn10=row["isbn10"],
            isbn13=row["isbn13"],
            genre=row["genre"],
            publication_date=row["publication_date"],
            description=row["description"],
            cover_image_url=row["cover_image_url"],
            external_source=row["external_source"],
            external_id=row["external_id"],
            external_metadata=metadata,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class MembershipCard:
    def __init__(self, id: int, serial_number: str, status: str = CardStatus.FREE.value,
                 user_id: int | None = None, assigned_at: str | None = None,
                 archived_at: str | None = None, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.serial_number = serial_number
        self.status = status
        self.user_id = user_id
        self.assigned_at = assigned_at
        self.archived_at = archived_at
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_free(self) -> bool:
        return self.status == CardStatus.FREE.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "serial_number": self.serial_number,
            "status": self.status,
            "user_id": self.user_id,
            "assigned_at": self.assigned_at,
            "archived_at": self.archived_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "MembershipCard":
        return MembershipCard(
            id=row["id"],
            serial_number=row["serial_number"],
            status=row["status"],
            user_id=row["user_id"],
            assigned_at=row["assigned_at"],
            archived_at=row["archived_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class Loan:
    """One borrowing of one book; terminal once returned."""

    def __init__(self, id: int, user_id: int, book_id: int, status: str = LoanStatus.ONGOING.value,
                 borrowed_at: str | None = None, due_at: str | None = None,
                 returned_at: str | None = None, created_at: str | None = None,
                 updated_at: str | None = None, book_title: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.status = status
        self.borrowed_at = borrowed_at
        self.due_at = due_at
        self.returned_at = returned_at
        self.created_at = created_at
        self.updated_at = updated_at
        self.book_title = book_title

    @property
    def is_returned(self) -> bool:
        return self.returned_at is not None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "status": self.status,
            "borrowed_at": self.borrowed_at,
            "due_at": self.due_at,
            "returned_at": self.returned_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.book_title is not None:
            data["book_title"] = self.book_title
        return data

    @staticmethod
    def from_row(row: Any) -> "Loan":
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            status=row["status"],
            borrowed_at=row["borrowed_at"],
            due_at=row["due_at"],
            returned_at=row["returned_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            book_title=_row_get(row, "book_title"),
        )


class CurrentUser:
    """Authenticated caller, passed explicitly from the API layer into services."""

    def __init__(self, id: int, email: str, role: str) -> None:
        self.id = id
        self.email = email
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def rls(self) -> RlsContext:
        return RlsContext(actor_id=self.id, actor_role=self.role)

    @staticmethod
    def from_user(user: User) -> "CurrentUser":
        return CurrentUser(id=user.id, email=user.email, role=user.role)
