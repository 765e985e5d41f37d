"""
Identity store: users, credentials and group membership.
"""

import csv
import io
import logging
import re
import secrets

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import DuplicateUser, UserNotFound, ValidationError, non_string_fields
from .models import ALL_USERS, User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentityStore:
    """Lookup, creation and soft deletion of users."""

    def __init__(self, session, min_password_length: int = 6):
        self.session = session
        self.min_password_length = min_password_length

    # ---------- queries ---------- #

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found.")
        return user

    def find_by_username(self, name: str) -> User | None:
        if not name:
            return None
        return (
            self.session.query(User)
            .filter(func.lower(User.username) == name.strip().lower())
            .first()
        )

    def find_by_email(self, email: str) -> User | None:
        if not email:
            return None
        return (
            self.session.query(User)
            .filter(func.lower(User.email) == email.strip().lower())
            .first()
        )

    def list_all(self, include_inactive: bool = False) -> list[User]:
        query = self.session.query(User)
        if not include_inactive:
            query = query.filter(User.is_active.is_(True))
        return query.order_by(User.username.asc()).all()

    def members_of(self, group: str) -> list[User]:
        """Active users matching a target group selector ('*' means everyone)."""
        query = self.session.query(User).filter(User.is_active.is_(True))
        if group != ALL_USERS:
            query = query.filter(func.lower(User.group) == group.strip().lower())
        return query.order_by(User.id.asc()).all()

    # ---------- credentials ---------- #

    def validate_credential(self, user: User | None, plaintext: str) -> bool:
        if user is None or not user.is_active or not plaintext:
            return False
        return check_password_hash(user.password_hash, plaintext)

    # ---------- mutations ---------- #

    def create(self, username: str, email: str, password: str,
               full_name: str | None = None, group: str | None = None,
               is_admin: bool = False) -> User:
        errors = non_string_fields(username=username, email=email, password=password,
                                   full_name=full_name, group=group)
        if errors:
            raise ValidationError("Invalid user data.", fields=errors)

        username = (username or "").strip()
        email = (email or "").strip()

        if not username:
            errors["username"] = "required"
        errors.update(self._check_email(email))
        errors.update(self._check_password(password))
        if errors:
            raise ValidationError("Invalid user data.", fields=errors)

        if self.find_by_username(username) or self.find_by_email(email):
            raise DuplicateUser(f"User '{username}' or email '{email}' already exists.")

        user = User(
            username=username,
            email=email,
            full_name=(full_name or "").strip() or None,
            group=(group or "").strip() or None,
            password_hash=generate_password_hash(password),
            is_admin=bool(is_admin),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent signup for the same name or address
            self.session.rollback()
            logger.warning(f"user_create_conflict: username={username}")
            raise DuplicateUser(f"User '{username}' or email '{email}' already exists.")
        logger.info(f"user_created: user_id={user.id}, username={username}")
        return user

    def update(self, user: User, **fields) -> User:
        """Explicit update of mutable profile fields."""
        errors = non_string_fields(**fields)
        if errors:
            raise ValidationError("Invalid user data.", fields=errors)

        if "email" in fields:
            email = (fields["email"] or "").strip()
            errors.update(self._check_email(email))
            other = self.find_by_email(email) if not errors else None
            if other is not None and other.id != user.id:
                raise DuplicateUser(f"Email '{email}' already exists.")
            user.email = email
        if "password" in fields:
            errors.update(self._check_password(fields["password"]))
            if not errors:
                user.password_hash = generate_password_hash(fields["password"])
        if errors:
            self.session.rollback()
            raise ValidationError("Invalid user data.", fields=errors)

        if "full_name" in fields:
            user.full_name = (fields["full_name"] or "").strip() or None
        if "group" in fields:
            user.group = (fields["group"] or "").strip() or None

        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise DuplicateUser(f"Email '{fields.get('email')}' already exists.")
        logger.info(f"user_updated: user_id={user.id}, fields={sorted(fields)}")
        return user

    def deactivate(self, user: User) -> User:
        # Users stay in the table: recipients keep pointing at them
        user.is_active = False
        self.session.commit()
        logger.info(f"user_deactivated: user_id={user.id}")
        return user

    def import_csv(self, text: str, group: str | None = None, default_password: str | None = None) -> int:
        """
        Bulk add users from 'Name,Email' rows.

        Existing emails are moved into the group instead of duplicated;
        header-like and empty rows are skipped. Returns the number of
        users created or moved.
        """
        added = 0
        reader = csv.reader(io.StringIO(text.lstrip("\ufeff"), newline=""))
        for row in reader:
            if not row:
                continue
            name_val = (row[0] if len(row) > 0 else "").strip()
            email_val = (row[1] if len(row) > 1 else "").strip()

            if not email_val:
                continue
            # Skip header-like row (e.g., "email" without @)
            if "email" in email_val.lower() and "@" not in email_val:
                continue
            if self._check_email(email_val):
                logger.warning(f"user_import_skipped: email={email_val}")
                continue

            existing = self.find_by_email(email_val)
            if existing is not None:
                if group and existing.group != group:
                    existing.group = group
                    added += 1
                continue

            self.session.add(User(
                username=self._free_username(email_val.split("@")[0]),
                email=email_val,
                full_name=name_val or None,
                group=group,
                password_hash=generate_password_hash(default_password or _random_password()),
            ))
            # Flush so the next row sees this username/email
            self.session.flush()
            added += 1

        self.session.commit()
        logger.info(f"users_imported: count={added}, group={group}")
        return added

    # ---------- helpers ---------- #

    def _check_email(self, email):
        if not email:
            return {"email": "required"}
        if not EMAIL_RE.match(email):
            return {"email": "invalid address"}
        return {}

    def _check_password(self, password):
        if not password:
            return {"password": "required"}
        if len(password) < self.min_password_length:
            return {"password": f"must be at least {self.min_password_length} characters long"}
        return {}

    def _free_username(self, base):
        candidate, n = base, 1
        while self.find_by_username(candidate) is not None:
            n += 1
            candidate = f"{base}{n}"
        return candidate


def _random_password():
    return secrets.token_urlsafe(16)
