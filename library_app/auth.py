"""Registration, login and token authentication."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from library_app import membership_cards, users
from library_app.config import settings
from library_app.database import RlsContext, transaction
from library_app.errors import Conflict, ResourceExhausted, Unauthorized
from library_app.models import Clock, CurrentUser, Role, User, utc_now
from library_app.security import create_access_token, decode_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


class AuthService:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utc_now) -> None:
        self.db_file = db_file
        self.clock = clock

    def register(self, email: str, first_name: str, last_name: str, password: str) -> Dict[str, Any]:
        """Create a USER account holding the first free membership card.

        Card lookup, user creation and card assignment share one write
        transaction; if any of them fails nothing is persisted.
        """
        password_hash = hash_password(password)
        with transaction(RlsContext.system(), db_file=self.db_file, immediate=True) as conn:
            card = membership_cards.find_first_free(conn)
            if card is None:
                raise ResourceExhausted("No free membership cards available")
            user = users.insert_user(conn, email, password_hash, first_name, last_name,
                                     role=Role.USER.value, clock=self.clock)
            card = membership_cards.assign(conn, card.id, user.id, self.clock)

        logger.info("User %s registered with membership card %s", user.id, card.serial_number)
        return {"access_token": create_access_token(user, self.clock), "user": user}

    def login(self, email: str, password: str) -> Dict[str, Any]:
        with transaction(RlsContext.system(), db_file=self.db_file) as conn:
            user = users.find_by_email(conn, email)
        # same message for both failures so callers cannot discover accounts
        if user is None or not verify_password(password, user.password):
            logger.warning("Failed login attempt")
            raise Unauthorized(INVALID_CREDENTIALS)
        return {"access_token": create_access_token(user, self.clock), "user": user}

    def authenticate(self, token: str) -> CurrentUser:
        """Resolve a bearer token to the user it was issued for."""
        claims = decode_access_token(token)
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError) as e:
            raise Unauthorized("Invalid token") from e
        with transaction(RlsContext.system(), db_file=self.db_file) as conn:
            user = users.find_by_id(conn, user_id)
        if user is None:
            raise Unauthorized("User no longer exists")
        return CurrentUser.from_user(user)

    def create_admin(self, email: str, password: str, first_name: str = "Admin",
                     last_name: str = "User") -> User:
        """Create an ADMIN account. Administrators do not take a membership card."""
        password_hash = hash_password(password)
        with transaction(RlsContext.system(), db_file=self.db_file, immediate=True) as conn:
            user = users.insert_user(conn, email, password_hash, first_name, last_name,
                                     role=Role.ADMIN.value, clock=self.clock)
        logger.info("Administrator %s created", user.id)
        return user

    def bootstrap_admin(self) -> Optional[User]:
        """Create the configured administrator on startup if it does not exist yet."""
        if not settings.admin_email or not settings.admin_password:
            logger.warning("ADMIN_EMAIL/ADMIN_PASSWORD not set; skipping administrator bootstrap")
            return None
        with transaction(RlsContext.system(), db_file=self.db_file) as conn:
            existing = users.find_by_email(conn, settings.admin_email)
        if existing is not None:
            logger.debug("Administrator %s already present", settings.admin_email)
            return None
        try:
            return self.create_admin(settings.admin_email, settings.admin_password,
                                     settings.admin_first_name, settings.admin_last_name)
        except Conflict:
            # created concurrently by another worker
            return None
