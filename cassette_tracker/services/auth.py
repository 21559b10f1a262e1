"""User accounts, roles, and password checks."""

from __future__ import annotations

import logging
import sqlite3

from werkzeug.security import check_password_hash, generate_password_hash

from cassette_tracker.config import MIN_PASSWORD_LENGTH
from cassette_tracker.errors import AuthenticationError, ValidationError
from cassette_tracker.models import UserAccount
from cassette_tracker.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

ROLES = ("admin", "user")


def _account(row: dict) -> UserAccount:
    return UserAccount(
        id=row["id"],
        email=row["email"],
        display_name=row.get("display_name") or "",
        role=row.get("role") or "user",
    )


class AuthService:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    def create_user(
        self, email: str, password: str, role: str = "user", display_name: str = ""
    ) -> UserAccount:
        email = (email or "").strip()
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required.")
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}.")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        try:
            user_id = self.gateway.insert_user(
                email, generate_password_hash(password), display_name.strip(), role
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"An account for {email} already exists.") from exc
        logger.info(
            "User created",
            extra={"event": "user_created", "context": {"user_id": user_id, "role": role}},
        )
        return UserAccount(id=user_id, email=email, display_name=display_name.strip(), role=role)

    def authenticate(self, email: str, password: str) -> UserAccount:
        row = self.gateway.get_user_by_email((email or "").strip())
        if row is None or not check_password_hash(row["password_hash"], password or ""):
            logger.info(
                "Sign-in rejected",
                extra={"event": "sign_in_rejected", "context": {"email": email}},
            )
            raise AuthenticationError("Incorrect email or password.")
        return _account(row)

    def get(self, user_id: int) -> UserAccount | None:
        row = self.gateway.get_user(user_id)
        return _account(row) if row else None

    def verify_password(self, user: UserAccount, password: str, field: str = "password") -> None:
        """Raise AuthenticationError unless the password matches the account."""

        if not password:
            raise AuthenticationError("Please enter your password", field=field)
        row = self.gateway.get_user(user.id)
        if row is None or not check_password_hash(row["password_hash"], password):
            raise AuthenticationError("Incorrect password", field=field)

    def update_display_name(self, user: UserAccount, display_name: object) -> UserAccount:
        if not isinstance(display_name, str):
            raise ValidationError("Display name must be text.")
        cleaned = display_name.strip()
        self.gateway.update_user(user.id, display_name=cleaned)
        return UserAccount(id=user.id, email=user.email, display_name=cleaned, role=user.role)

    def change_password(
        self, user: UserAccount, current: str, new: str, confirm: str
    ) -> None:
        # Local validation happens before the current password is checked.
        if new != confirm:
            raise ValidationError("New passwords do not match.")
        if len(new or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        try:
            self.verify_password(user, current, field="current_password")
        except AuthenticationError as exc:
            raise AuthenticationError("Current password is incorrect.", field=exc.field) from exc
        self.gateway.update_user(user.id, password_hash=generate_password_hash(new))
        logger.info(
            "Password changed",
            extra={"event": "password_changed", "context": {"user_id": user.id}},
        )
