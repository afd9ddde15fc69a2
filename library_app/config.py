import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _default_db_file() -> str:
    return os.getenv("LIBRARY_DB_FILE") or os.path.join(
        tempfile.gettempdir(), f"library_{os.getpid()}.db"
    )


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Database settings
    database_file: str = field(default_factory=_default_db_file)

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))

    # Bootstrap administrator
    admin_email: Optional[str] = os.getenv("ADMIN_EMAIL")
    admin_password: Optional[str] = os.getenv("ADMIN_PASSWORD")
    admin_first_name: str = os.getenv("ADMIN_FIRST_NAME", "Admin")
    admin_last_name: str = os.getenv("ADMIN_LAST_NAME", "User")

    # Loans and membership cards
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "21"))
    membership_card_prefix: str = os.getenv("MEMBERSHIP_CARD_PREFIX", "BB")
    membership_card_digits: int = int(os.getenv("MEMBERSHIP_CARD_DIGITS", "9"))

    # Google Books API settings
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_base_url: str = os.getenv("GOOGLE_BOOKS_BASE_URL", "https://www.googleapis.com/books/v1")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))
    enable_google_books: bool = _env_flag("ENABLE_GOOGLE_BOOKS", "True")

    # Background jobs
    enrichment_wait_seconds: float = float(os.getenv("ENRICHMENT_WAIT_SECONDS", "60"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Loans API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
