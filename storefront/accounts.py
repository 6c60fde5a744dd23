from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from storefront.backend import AuthSession
from storefront.errors import AuthError, PermissionDenied, ValidationError
from storefront.models import PROFILE_FIELDS, Profile, format_timestamp, utcnow
from storefront.session_guard import GuardedClient


log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def _check_credentials(email: str, password: str) -> Tuple[str, str]:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return email, password


def clean_profile_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Keep only user-editable profile columns."""
    out: Dict[str, str] = {}
    for k in PROFILE_FIELDS:
        if fields and k in fields and fields[k] is not None:
            out[k] = str(fields[k]).strip()
    return out


def require_admin(profile: Optional[Profile]) -> Profile:
    if profile is None or not profile.is_admin:
        raise PermissionDenied()
    return profile


class Accounts:
    def __init__(self, auth, client_for: Callable[[Optional[AuthSession]], GuardedClient]):
        self.auth = auth
        self.client_for = client_for

    def sign_up(self, email: str, password: str, fields: Optional[Dict[str, Any]] = None) -> Tuple[AuthSession, Optional[Profile]]:
        email, password = _check_credentials(email, password)
        session = self.auth.sign_up(email, password)
        if not session.access_token:
            log.info("Sign-up for %s awaits email confirmation", email)
            return session, None

        db = self.client_for(session)
        row = {"id": session.user_id, "email": email, "is_admin": False}
        row.update(clean_profile_fields(fields))
        created = db.insert("profiles", row, operation_id=f"create-profile:{session.user_id}")
        log.info("Created profile for user %s", session.user_id)
        return db.watchdog.session or session, Profile.from_row(created[0] if created else row)

    def sign_in(self, email: str, password: str) -> Tuple[AuthSession, Profile]:
        email, password = _check_credentials(email, password)
        session = self.auth.sign_in(email, password)
        if not session.user_id:
            raise AuthError("Invalid login response")
        db = self.client_for(session)
        profile = self.ensure_profile(db, session.user_id, session.email or email)
        # the profile lookup may already have refreshed a short-lived token
        return db.watchdog.session or session, profile

    def sign_out(self, session: Optional[AuthSession]) -> None:
        if session is not None and session.access_token:
            self.auth.sign_out(session.access_token)

    # -------------------------
    # Profiles
    # -------------------------
    def get_profile(self, db: GuardedClient, user_id: str) -> Optional[Profile]:
        rows = db.select("profiles", filters={"id": user_id}, limit=1)
        return Profile.from_row(rows[0]) if rows else None

    def ensure_profile(self, db: GuardedClient, user_id: str, email: str) -> Profile:
        profile = self.get_profile(db, user_id)
        if profile is not None:
            return profile
        log.info("Profile missing for %s, creating it", user_id)
        row = {"id": user_id, "email": email, "is_admin": False}
        created = db.insert("profiles", row, operation_id=f"create-profile:{user_id}")
        return Profile.from_row(created[0] if created else row)

    def update_profile(self, db: GuardedClient, user_id: str, fields: Dict[str, Any]) -> Profile:
        values: Dict[str, Any] = clean_profile_fields(fields)
        if not values:
            raise ValidationError("Nothing to update")
        values["updated_at"] = format_timestamp(utcnow())
        rows = db.update("profiles", values, {"id": user_id}, operation_id=f"update-profile:{user_id}")
        return Profile.from_row(rows[0])
