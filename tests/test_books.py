import asyncio
from unittest.mock import MagicMock

import pytest

from library_app.authors import AuthorService
from library_app.books import BooksService
from library_app.errors import Conflict, InvalidState, NotFound, ServiceUnavailable
from library_app.models import Book
from library_app.services.job_queue import (
    CREATE_BOOK_FROM_GOOGLE_JOB_NAME,
    ENRICH_BOOK_JOB_NAME,
    JobQueue,
)


@pytest.fixture
def queue():
    return MagicMock(spec=JobQueue)


@pytest.fixture
def books(db_file, queue):
    return BooksService(db_file=db_file, queue=queue, google_books=MagicMock())


@pytest.fixture
def authors(db_file):
    return AuthorService(db_file=db_file)


def test_create_and_find_book_with_authors(books, authors):
    frank = authors.create({"first_name": "Frank", "last_name": "Herbert"})

    created = books.create({"title": "Dune", "genre": "Science Fiction", "author_ids": [frank.id]})
    found = books.find_one(created.id)

    assert found.title == "Dune"
    assert [a.id for a in found.authors] == [frank.id]
    assert [b.id for b in authors.find_books_by_author_id(frank.id)] == [created.id]


def test_create_with_unknown_author_raises_not_found_and_stores_nothing(books):
    with pytest.raises(NotFound):
        books.create({"title": "Dune", "author_ids": [99]})
    assert books.find_all() == []


def test_duplicate_isbn13_is_a_conflict(books):
    books.create({"title": "Dune", "isbn13": "9780441013593"})
    with pytest.raises(Conflict):
        books.create({"title": "Dune (again)", "isbn13": "978-0-441-01359-3"})


def test_create_with_isbn_queues_enrichment(books, queue):
    book = books.create({"title": "Dune", "isbn13": "9780441013593"})

    queue.enqueue.assert_called_once_with(ENRICH_BOOK_JOB_NAME, {
        "book_id": book.id, "isbn13": "9780441013593", "isbn10": None,
    })


def test_create_without_isbn_queues_nothing(books, queue):
    books.create({"title": "Notes"})
    queue.enqueue.assert_not_called()


def test_create_survives_a_stopped_queue(books, queue):
    queue.enqueue.side_effect = ServiceUnavailable("not running")
    book = books.create({"title": "Dune", "isbn10": "0441013597"})
    assert books.find_one(book.id).isbn10 == "0441013597"


def test_update_book(books):
    book = books.create({"title": "Dune"})
    updated = books.update(book.id, {"genre": "Classic", "isbn13": "9780441013593"})
    assert updated.genre == "Classic"
    assert updated.isbn13 == "9780441013593"


def test_update_to_taken_isbn13_is_a_conflict(books):
    books.create({"title": "Dune", "isbn13": "9780441013593"})
    other = books.create({"title": "Emma"})
    with pytest.raises(Conflict):
        books.update(other.id, {"isbn13": "9780441013593"})


def test_update_unknown_book_raises_not_found(books):
    with pytest.raises(NotFound):
        books.update(404, {"title": "Ghost"})


def test_remove_book(books):
    book = books.create({"title": "Dune"})
    books.remove(book.id)
    with pytest.raises(NotFound):
        books.find_one(book.id)


def test_remove_refused_while_loaned(db_file, books):
    from library_app.auth import AuthService
    from library_app.loans import LoanService

    book = books.create({"title": "Dune"})
    reader = AuthService(db_file=db_file).create_admin("reader@example.com", "secret123")
    LoanService(db_file=db_file).create(book.id, reader.id)

    with pytest.raises(InvalidState):
        books.remove(book.id)


def test_search_requires_every_term(books):
    books.create({"title": "Dune", "description": "Desert planet politics"})
    books.create({"title": "Dune Messiah", "description": "Sequel"})
    books.create({"title": "Emma", "description": "Matchmaking in Highbury", "genre": "Classic"})

    assert [b.title for b in books.search("dune")] == ["Dune", "Dune Messiah"]
    assert [b.title for b in books.search("dune desert")] == ["Dune"]
    assert [b.title for b in books.search(genre="classic")] == ["Emma"]


def test_search_simple_matches_author_name(books, authors):
    frank = authors.create({"first_name": "Frank", "last_name": "Herbert"})
    books.create({"title": "Dune", "author_ids": [frank.id]})
    books.create({"title": "Emma"})

    assert [b.title for b in books.search_simple(author_name="Frank Herbert")] == ["Dune"]
    assert [b.title for b in books.search_simple(title="mm")] == ["Emma"]


def test_enrich_requires_an_isbn(books, queue):
    book = books.create({"title": "Notes"})
    with pytest.raises(NotFound):
        books.enrich_from_google_books(book.id)
    queue.enqueue.assert_not_called()


def test_enrich_queues_job_and_returns_current_book(books, queue):
    book = books.create({"title": "Dune", "isbn13": "9780441013593"})
    queue.reset_mock()

    returned = books.enrich_from_google_books(book.id)

    assert returned.id == book.id
    queue.enqueue.assert_called_once()
    assert queue.enqueue.call_args.args[0] == ENRICH_BOOK_JOB_NAME


def _run_with_processor(db_file, processor, isbn, timeout=1.0):
    async def scenario():
        queue = JobQueue()
        queue.register(CREATE_BOOK_FROM_GOOGLE_JOB_NAME, processor)
        queue.start()
        try:
            service = BooksService(db_file=db_file, queue=queue, google_books=MagicMock())
            return await service.create_from_google_books(isbn, timeout=timeout)
        finally:
            await queue.close()

    return asyncio.run(scenario())


def test_create_from_google_books_returns_job_result(db_file):
    async def processor(job):
        return Book(id=1, title="Dune", isbn13=job.data["isbn"])

    book = _run_with_processor(db_file, processor, "9780441013593")
    assert book.isbn13 == "9780441013593"


def test_create_from_google_books_propagates_conflict(db_file):
    async def processor(job):
        raise Conflict("Book with this ISBN-13 already exists")

    with pytest.raises(Conflict):
        _run_with_processor(db_file, processor, "9780441013593")


def test_create_from_google_books_wraps_other_failures_as_not_found(db_file):
    async def processor(job):
        raise RuntimeError("catalog exploded")

    with pytest.raises(NotFound, match="catalog exploded"):
        _run_with_processor(db_file, processor, "9780441013593")


def test_create_from_google_books_times_out_as_not_found(db_file):
    async def processor(job):
        await asyncio.sleep(5)

    with pytest.raises(NotFound, match="timed out"):
        _run_with_processor(db_file, processor, "9780441013593", timeout=0.05)


def test_title_must_have_content(books):
    with pytest.raises(InvalidState):
        books.create({"title": "   "})
    book = books.create({"title": "Dune"})
    with pytest.raises(InvalidState):
        books.update(book.id, {"title": "!!!"})


def test_create_from_google_books_rejects_bad_isbn(db_file):
    async def processor(job):
        raise AssertionError("no job expected")

    with pytest.raises(InvalidState):
        _run_with_processor(db_file, processor, "9780441013594")
