"""Processor for the google-books job queue."""

import asyncio
import logging
from typing import Any, Dict, Optional

from library_app.books import BooksService, exists_by_isbn13, find_by_id, insert_book, update_book
from library_app.database import RlsContext, transaction
from library_app.errors import Conflict, NotFound, ServiceError
from library_app.models import Book
from library_app.services.google_books_service import GoogleBooksService
from library_app.services.job_queue import (
    CREATE_BOOK_FROM_GOOGLE_JOB_NAME,
    ENRICH_BOOK_JOB_NAME,
    Job,
    JobQueue,
)

logger = logging.getLogger(__name__)

# filled from the catalog only when the book has no value yet
FILL_IF_EMPTY = ("description", "cover_image_url", "genre", "publication_date", "isbn10", "isbn13")


class GoogleBooksProcessor:
    def __init__(self, books: BooksService, google_books: Optional[GoogleBooksService] = None) -> None:
        self.books = books
        self.google_books = google_books or books.google_books

    def register(self, queue: JobQueue) -> None:
        queue.register(ENRICH_BOOK_JOB_NAME, self.process)
        queue.register(CREATE_BOOK_FROM_GOOGLE_JOB_NAME, self.process)

    async def process(self, job: Job) -> Any:
        if job.name == ENRICH_BOOK_JOB_NAME:
            return await self.process_enrich_book(job.data)
        if job.name == CREATE_BOOK_FROM_GOOGLE_JOB_NAME:
            return await self.process_create_from_google(job.data)
        raise ServiceError(f"Unknown job type: {job.name}")

    async def process_enrich_book(self, data: Dict[str, Any]) -> Optional[Book]:
        book_id = data["book_id"]
        book = await asyncio.to_thread(self.books.find_one, book_id)

        isbn = data.get("isbn13") or data.get("isbn10") or book.isbn13 or book.isbn10
        volume = await self.google_books.search_by_isbn(isbn) if isbn else None
        if not volume:
            logger.warning("Book %s not found in Google Books. Skipping enrichment.", book_id)
            return None

        enriched = self.google_books.transform_to_book_data(volume)
        changes = {
            field: enriched[field]
            for field in FILL_IF_EMPTY
            if not getattr(book, field) and enriched.get(field)
        }
        changes["external_source"] = enriched["external_source"]
        changes["external_id"] = enriched["external_id"]
        changes["external_metadata"] = enriched["external_metadata"]

        updated = await asyncio.to_thread(self._apply, book_id, changes)
        logger.info("Successfully enriched book %s", book_id)
        return updated

    def _apply(self, book_id: int, changes: Dict[str, Any]) -> Book:
        with transaction(RlsContext.system(), db_file=self.books.db_file, immediate=True) as conn:
            # a catalog ISBN-13 already used by another book is left out
            if changes.get("isbn13") and exists_by_isbn13(conn, changes["isbn13"]):
                changes.pop("isbn13")
            update_book(conn, book_id, changes, self.books.clock)
            return find_by_id(conn, book_id)

    async def process_create_from_google(self, data: Dict[str, Any]) -> Book:
        isbn = data["isbn"]
        logger.info("Creating book from Google Books with ISBN: %s", isbn)

        volume = await self.google_books.search_by_isbn(isbn.replace("-", ""))
        if not volume:
            raise NotFound(f"Book with ISBN {isbn} not found in Google Books")

        book_data = self.google_books.transform_to_book_data(volume)
        book = await asyncio.to_thread(self._create, book_data)
        logger.info("Successfully created book %s from Google Books", book.id)
        return book

    def _create(self, book_data: Dict[str, Any]) -> Book:
        with transaction(RlsContext.system(), db_file=self.books.db_file, immediate=True) as conn:
            if book_data.get("isbn13") and exists_by_isbn13(conn, book_data["isbn13"]):
                raise Conflict("Book with this ISBN-13 already exists")
            return insert_book(conn, book_data, self.books.clock)
