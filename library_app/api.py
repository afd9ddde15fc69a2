import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from library_app import database
from library_app.auth import AuthService
from library_app.authors import AuthorService
from library_app.books import BooksService
from library_app.config import settings
from library_app.errors import Forbidden, LibraryError, ServiceError, Unauthorized
from library_app.loans import LoanService
from library_app.membership_cards import MembershipCardService
from library_app.models import CurrentUser, Role
from library_app.services.enrichment import GoogleBooksProcessor
from library_app.services.http_client import cleanup_http_client
from library_app.services.job_queue import JobQueue
from library_app.users import UserService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Services ---
job_queue = JobQueue()
auth_service = AuthService()
user_service = UserService()
author_service = AuthorService()
books_service = BooksService(queue=job_queue)
loan_service = LoanService()
card_service = MembershipCardService()
GoogleBooksProcessor(books_service).register(job_queue)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.initialize_database()
    auth_service.bootstrap_admin()
    job_queue.start()
    try:
        yield
    finally:
        await job_queue.close()
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- Middleware ---
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error handling ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error in %s %s", request.method, request.url.path)
    error = ServiceError(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=error.status_code, content={"detail": error.message, "error": error.kind})


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> CurrentUser:
    """Dependency resolving the bearer token to the calling user."""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token")
    return auth_service.authenticate(credentials.credentials)


def require_admin(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current.role != Role.ADMIN.value:
        raise Forbidden("Admin role required")
    return current


def require_member(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current.role != Role.USER.value:
        raise Forbidden("USER role required")
    return current


def require_self_or_admin(user_id: int, current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current.is_admin and current.id != user_id:
        raise Forbidden("You can only access your own account")
    return current


# --- Pydantic Models ---
class UserModel(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RegisterModel(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6, max_length=72)


class LoginModel(BaseModel):
    email: str
    password: str


class AuthResponseModel(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserModel


class UserUpdateModel(BaseModel):
    email: Optional[str] = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    password: Optional[str] = Field(None, min_length=6, max_length=72)
    role: Optional[Literal["ADMIN", "USER"]] = None


class AuthorModel(BaseModel):
    id: int
    first_name: str
    last_name: str
    birth_date: Optional[str] = None
    death_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AuthorCreateModel(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    birth_date: Optional[str] = None
    death_date: Optional[str] = None


class AuthorUpdateModel(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    birth_date: Optional[str] = None
    death_date: Optional[str] = None


class BookModel(BaseModel):
    id: int
    title: str
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    genre: Optional[str] = None
    publication_date: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    external_source: Optional[str] = None
    external_id: Optional[str] = None
    external_metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    authors: List[AuthorModel] = []


class BookCreateModel(BaseModel):
    title: str = Field(..., min_length=1)
    isbn10: Optional[str] = Field(None, pattern=r"^[0-9]{9}[0-9Xx]$")
    isbn13: Optional[str] = Field(None, pattern=r"^[0-9]{13}$")
    genre: Optional[str] = None
    publication_date: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    author_ids: List[int] = []


class BookUpdateModel(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    isbn10: Optional[str] = Field(None, pattern=r"^[0-9]{9}[0-9Xx]$")
    isbn13: Optional[str] = Field(None, pattern=r"^[0-9]{13}$")
    genre: Optional[str] = None
    publication_date: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    external_source: Optional[str] = None
    external_id: Optional[str] = None
    external_metadata: Optional[Dict[str, Any]] = None
    author_ids: Optional[List[int]] = None


class GoogleBookCreateModel(BaseModel):
    isbn: str = Field(..., min_length=10, max_length=17)


class LoanModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    status: str
    borrowed_at: str
    due_at: Optional[str] = None
    returned_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    book_title: Optional[str] = None


class LoanCreateModel(BaseModel):
    book_id: int
    due_at: Optional[datetime] = None


class MembershipCardModel(BaseModel):
    id: int
    serial_number: str
    status: str
    user_id: Optional[int] = None
    assigned_at: Optional[str] = None
    archived_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CardCreateModel(BaseModel):
    serial_number: str = Field(..., min_length=1, max_length=32)


class CardSeedModel(BaseModel):
    count: int = Field(..., ge=1, le=10000)


class CardAssignModel(BaseModel):
    user_id: int


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check: one database round trip plus worker state."""
    db_ok = True
    try:
        conn = database.get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "job_queue": job_queue.is_running,
        "version": settings.app_version,
    }


# --- Auth ---
@app.post("/auth/register", response_model=AuthResponseModel, status_code=201)
def register(payload: RegisterModel):
    result = auth_service.register(payload.email, payload.first_name, payload.last_name, payload.password)
    return {"access_token": result["access_token"], "user": result["user"].to_dict()}


@app.post("/auth/login", response_model=AuthResponseModel)
def login(payload: LoginModel):
    result = auth_service.login(payload.email, payload.password)
    return {"access_token": result["access_token"], "user": result["user"].to_dict()}


# --- Users ---
@app.get("/users", response_model=List[UserModel])
def list_users(current: CurrentUser = Depends(require_admin)):
    return [u.to_dict() for u in user_service.find_all(current.rls)]


@app.get("/users/me", response_model=UserModel)
def read_me(current: CurrentUser = Depends(get_current_user)):
    return user_service.me(current).to_dict()


@app.get("/users/{user_id}", response_model=UserModel)
def read_user(user_id: int, current: CurrentUser = Depends(require_self_or_admin)):
    return user_service.find_one(user_id, current.rls).to_dict()


@app.patch("/users/{user_id}", response_model=UserModel)
def update_user(user_id: int, payload: UserUpdateModel, current: CurrentUser = Depends(require_self_or_admin)):
    return user_service.update(user_id, payload.model_dump(exclude_unset=True), current).to_dict()


@app.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: int, current: CurrentUser = Depends(require_admin)):
    user_service.remove(user_id, current.rls)
    return Response(status_code=204)


@app.get("/users/{user_id}/membership-card", response_model=MembershipCardModel)
def read_user_card(user_id: int, current: CurrentUser = Depends(require_self_or_admin)):
    return card_service.get_card_for_user(user_id, current.rls).to_dict()


# --- Authors ---
@app.post("/authors", response_model=AuthorModel, status_code=201)
def create_author(payload: AuthorCreateModel, current: CurrentUser = Depends(require_admin)):
    return author_service.create(payload.model_dump(), current.rls).to_dict()


@app.get("/authors", response_model=List[AuthorModel])
def list_authors(current: CurrentUser = Depends(require_admin)):
    return [a.to_dict() for a in author_service.find_all(current.rls)]


@app.get("/authors/by-book/{book_id}", response_model=List[AuthorModel])
def authors_by_book(book_id: int, current: CurrentUser = Depends(get_current_user)):
    return [a.to_dict() for a in author_service.find_by_book_id(book_id, current.rls)]


@app.get("/authors/{author_id}/books", response_model=List[BookModel])
def books_by_author(author_id: int, current: CurrentUser = Depends(get_current_user)):
    return [b.to_dict() for b in author_service.find_books_by_author_id(author_id, current.rls)]


@app.get("/authors/{author_id}", response_model=AuthorModel)
def read_author(author_id: int, current: CurrentUser = Depends(get_current_user)):
    return author_service.find_one(author_id, current.rls).to_dict()


@app.patch("/authors/{author_id}", response_model=AuthorModel)
def update_author(author_id: int, payload: AuthorUpdateModel, current: CurrentUser = Depends(require_admin)):
    return author_service.update(author_id, payload.model_dump(exclude_unset=True), current.rls).to_dict()


@app.delete("/authors/{author_id}", status_code=204)
def delete_author(author_id: int, current: CurrentUser = Depends(require_admin)):
    author_service.remove(author_id, current.rls)
    return Response(status_code=204)


# --- Books ---
@app.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, current: CurrentUser = Depends(require_admin)):
    return books_service.create(payload.model_dump(), current.rls).to_dict()


@app.get("/books", response_model=List[BookModel])
def list_books(current: CurrentUser = Depends(get_current_user)):
    return [b.to_dict() for b in books_service.find_all(current.rls)]


@app.get("/books/search", response_model=List[BookModel])
def search_books(
    query: Optional[str] = Query(None, description="Terms that must all appear in title or description"),
    genre: Optional[str] = Query(None),
    current: CurrentUser = Depends(get_current_user),
):
    return [b.to_dict() for b in books_service.search(query, genre, current.rls)]


@app.get("/books/search/simple", response_model=List[BookModel])
def search_books_simple(
    title: Optional[str] = Query(None),
    genre: Optional[str] = Query(None),
    author_name: Optional[str] = Query(None),
    current: CurrentUser = Depends(get_current_user),
):
    return [b.to_dict() for b in books_service.search_simple(title, genre, author_name, current.rls)]


@app.get("/books/google/search")
async def search_google_books(
    query: str = Query(..., min_length=1),
    max_results: int = Query(10, ge=1, le=40),
    current: CurrentUser = Depends(get_current_user),
):
    return await books_service.search_google(query, max_results)


@app.post("/books/enrich/{book_id}", response_model=BookModel)
def enrich_book(book_id: int, current: CurrentUser = Depends(require_admin)):
    return books_service.enrich_from_google_books(book_id).to_dict()


@app.post("/books/from-google-books", response_model=BookModel, status_code=201)
async def create_book_from_google(payload: GoogleBookCreateModel, current: CurrentUser = Depends(require_admin)):
    book = await books_service.create_from_google_books(payload.isbn)
    return book.to_dict()


@app.get("/books/{book_id}", response_model=BookModel)
def read_book(book_id: int, current: CurrentUser = Depends(get_current_user)):
    return books_service.find_one(book_id, current.rls).to_dict()


@app.patch("/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, payload: BookUpdateModel, current: CurrentUser = Depends(require_admin)):
    return books_service.update(book_id, payload.model_dump(exclude_unset=True), current.rls).to_dict()


@app.delete("/books/{book_id}", status_code=204)
def delete_book(book_id: int, current: CurrentUser = Depends(require_admin)):
    books_service.remove(book_id, current.rls)
    return Response(status_code=204)


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201)
def create_loan(payload: LoanCreateModel, current: CurrentUser = Depends(require_member)):
    return loan_service.create(payload.book_id, current.id, payload.due_at, current.rls).to_dict()


@app.post("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, current: CurrentUser = Depends(require_member)):
    return loan_service.return_loan(loan_id, current.id, current.rls).to_dict()


@app.get("/loans/my", response_model=List[LoanModel])
def my_loans(current: CurrentUser = Depends(require_member)):
    return [loan.to_dict() for loan in loan_service.find_my_loans(current)]


@app.get("/loans", response_model=List[LoanModel])
def list_ongoing_loans(current: CurrentUser = Depends(require_admin)):
    return [loan.to_dict() for loan in loan_service.find_ongoing(None, current.rls)]


@app.get("/loans/search", response_model=List[LoanModel])
def search_loans(
    user_id: Optional[int] = Query(None),
    book_id: Optional[int] = Query(None),
    current: CurrentUser = Depends(require_admin),
):
    return [loan.to_dict() for loan in loan_service.search(user_id, book_id, current.rls)]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def read_loan(loan_id: int, current: CurrentUser = Depends(get_current_user)):
    return loan_service.find_one(loan_id, current.rls).to_dict()


# --- Membership cards ---
@app.get("/membership-cards", response_model=List[MembershipCardModel])
def list_cards(
    status: Optional[Literal["FREE", "IN_USE"]] = Query(None),
    current: CurrentUser = Depends(require_admin),
):
    return [c.to_dict() for c in card_service.list_cards(status, current.rls)]


@app.post("/membership-cards", response_model=MembershipCardModel, status_code=201)
def create_card(payload: CardCreateModel, current: CurrentUser = Depends(require_admin)):
    return card_service.create_card(payload.serial_number).to_dict()


@app.post("/membership-cards/seed", response_model=List[MembershipCardModel], status_code=201)
def seed_cards(payload: CardSeedModel, current: CurrentUser = Depends(require_admin)):
    return [c.to_dict() for c in card_service.seed(payload.count)]


@app.get("/membership-cards/{card_id}", response_model=MembershipCardModel)
def read_card(card_id: int, current: CurrentUser = Depends(require_admin)):
    return card_service.get_card(card_id, current.rls).to_dict()


@app.post("/membership-cards/{card_id}/assign", response_model=MembershipCardModel)
def assign_card(card_id: int, payload: CardAssignModel, current: CurrentUser = Depends(require_admin)):
    return card_service.assign(card_id, payload.user_id).to_dict()
