from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from flask import Flask
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session as DBSession

from app.portal.db import session_scope
from app.portal.models import Session, User, utcnow

logger = logging.getLogger(__name__)

# Treat access tokens as expired slightly early so a refresh never races the provider.
_EXPIRY_SKEW = timedelta(seconds=10)


@dataclass
class TokenSet:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: str = ""
    expiry: datetime | None = None  # naive UTC; None means the provider gave no expiry

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expiry is None:
            return False
        return (now or utcnow()) >= self.expiry - _EXPIRY_SKEW


@dataclass
class SessionData:
    token: TokenSet
    id_token: str
    user_sub: str  # auth provider subject id
    user_id: int  # users.id
    email: str
    display_name: str
    expires: datetime
    roles: list[str] = field(default_factory=list)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires


class TokenCipher:
    """
    Encrypts the per-session token blob with Fernet, keyed from the 32-byte SECRET_KEY.
    """

    def __init__(self, secret_key: bytes):
        if len(secret_key) != 32:
            raise ValueError("secret key must be exactly 32 bytes")
        self._fernet = Fernet(base64.urlsafe_b64encode(secret_key))

    def seal(self, token: TokenSet, roles: list[str]) -> str:
        payload: dict[str, Any] = {
            "access_token": token.access_token,
            "token_type": token.token_type,
            "refresh_token": token.refresh_token,
            "expiry": token.expiry.isoformat() if token.expiry else None,
            "roles": list(roles),
        }
        return self._fernet.encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")

    def open(self, blob: str) -> tuple[TokenSet, list[str]]:
        """Raises ``cryptography.fernet.InvalidToken`` when the blob was not sealed with this key."""
        payload = json.loads(self._fernet.decrypt(blob.encode("ascii")))
        expiry = payload.get("expiry")
        token = TokenSet(
            access_token=payload.get("access_token") or "",
            token_type=payload.get("token_type") or "Bearer",
            refresh_token=payload.get("refresh_token") or "",
            expiry=datetime.fromisoformat(expiry) if expiry else None,
        )
        return token, list(payload.get("roles") or [])


# --- users -------------------------------------------------------------------


def upsert_user(s: DBSession, *, auth_sub: str, email: str, display_name: str) -> User:
    """
    Insert or update the user keyed by ``auth_sub``; returns the persisted row.
    """
    dialect = s.get_bind().dialect.name
    now = utcnow()
    if dialect in ("postgresql", "sqlite"):
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(User).values(
            auth_sub=auth_sub,
            email=email,
            display_name=display_name,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[User.auth_sub],
            set_={
                "email": stmt.excluded.email,
                "display_name": stmt.excluded.display_name,
                "updated_at": now,
            },
        ).returning(User.id)
        user_id = s.execute(stmt).scalar_one()
        user = s.get(User, user_id, populate_existing=True)
        assert user is not None
        return user

    user = get_user_by_auth_sub(s, auth_sub)
    if user is None:
        user = User(auth_sub=auth_sub, email=email, display_name=display_name)
        s.add(user)
    else:
        user.email = email
        user.display_name = display_name
    s.flush()
    return user


def get_user_by_id(s: DBSession, user_id: int) -> User | None:
    return s.get(User, user_id)


def get_user_by_auth_sub(s: DBSession, auth_sub: str) -> User | None:
    return s.scalars(select(User).where(User.auth_sub == auth_sub).limit(1)).one_or_none()


# --- sessions ----------------------------------------------------------------


def create_session(s: DBSession, cipher: TokenCipher, session_id: str, data: SessionData) -> Session:
    row = Session(
        session_id=session_id,
        user_id=data.user_id,
        token_data=cipher.seal(data.token, data.roles),
        id_token=data.id_token,
        expires_at=data.expires,
    )
    s.add(row)
    s.flush()
    return row


def get_session(s: DBSession, cipher: TokenCipher, session_id: str) -> SessionData | None:
    """
    Loads a session and its user. Unknown ids, unreadable token blobs and dangling
    user references all read as "no session".
    """
    if not session_id:
        return None
    row = s.get(Session, session_id)
    if row is None:
        return None

    try:
        token, roles = cipher.open(row.token_data)
    except (InvalidToken, ValueError) as e:
        logger.warning("Discarding unreadable token data for session: %s", type(e).__name__)
        return None

    user = get_user_by_id(s, row.user_id)
    if user is None:
        return None

    return SessionData(
        token=token,
        id_token=row.id_token,
        user_sub=user.auth_sub,
        user_id=user.id,
        email=user.email,
        display_name=user.display_name,
        roles=roles,
        expires=row.expires_at,
    )


def update_session_token(
    s: DBSession,
    cipher: TokenCipher,
    session_id: str,
    token: TokenSet,
    roles: list[str],
) -> None:
    row = s.get(Session, session_id)
    if row is None:
        return
    row.token_data = cipher.seal(token, roles)
    row.updated_at = utcnow()


def delete_session(s: DBSession, session_id: str) -> None:
    s.execute(delete(Session).where(Session.session_id == session_id))


def delete_expired_sessions(s: DBSession, now: datetime | None = None) -> int:
    result = s.execute(delete(Session).where(Session.expires_at < (now or utcnow())))
    return result.rowcount or 0


# --- background sweep ----------------------------------------------------------


def sweep_expired_sessions(app: Flask) -> int:
    with session_scope(app) as s:
        removed = delete_expired_sessions(s)
    if removed:
        logger.info("Removed %d expired sessions", removed)
    return removed


def start_session_sweeper(app: Flask, interval_seconds: int) -> threading.Event:
    """
    Runs ``sweep_expired_sessions`` every ``interval_seconds`` on a daemon thread.
    Set the returned event to stop it.
    """
    stop = threading.Event()

    def _run() -> None:
        while not stop.wait(interval_seconds):
            try:
                sweep_expired_sessions(app)
            except Exception:
                logger.exception("Failed to clean up expired sessions")

    t = threading.Thread(target=_run, name="session-sweeper", daemon=True)
    t.start()
    return stop
