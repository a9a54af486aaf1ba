from __future__ import annotations

import base64
import logging
import secrets
from collections.abc import Callable
from datetime import timedelta
from functools import wraps
from typing import Any

from flask import Blueprint, Response, abort, current_app, g, redirect, request, url_for
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from app.portal.db import db_session
from app.portal.models import utcnow
from app.portal.oidc import OIDCClient, OIDCError, RoleExtractor, StandardClaims
from app.portal.sessions import (
    SessionData,
    TokenCipher,
    create_session,
    delete_session,
    get_session,
    update_session_token,
    upsert_user,
)
from app.portal.views.errors import render_error

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__)

SESSION_COOKIE = "session_id"
STATE_COOKIE = "oauth_state"
STATE_MAX_AGE = 300  # seconds

_UNTRACKED_PREFIXES = ("/static/", "/health", "/healthz")


class SessionContextError(LookupError):
    pass


def generate_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")


def _oidc() -> OIDCClient:
    return current_app.extensions["oidc_client"]


def _cipher() -> TokenCipher:
    return current_app.extensions["token_cipher"]


def _role_extractor() -> RoleExtractor:
    return current_app.extensions["role_extractor"]


def _session_ttl() -> timedelta:
    return timedelta(hours=current_app.config["SESSION_TTL_HOURS"])


def _set_cookie(resp: Response, name: str, value: str, max_age: int) -> None:
    resp.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=current_app.config["AUTH_COOKIE_SECURE"],
        samesite=current_app.config["AUTH_COOKIE_SAMESITE"],
    )


# --- request context -------------------------------------------------------------


def get_session_from_context() -> SessionData:
    """Session for the current request; use on authenticated routes."""
    data = g.get("auth_session")
    if data is None:
        raise SessionContextError("session not found in request context")
    if not isinstance(data, SessionData):
        raise SessionContextError(f"unexpected session type {type(data).__name__}")
    return data


def get_optional_session() -> SessionData | None:
    data = g.get("auth_session")
    return data if isinstance(data, SessionData) else None


def refresh_token(s: DBSession, session_id: str, data: SessionData) -> None:
    """Refreshes an expired access token and persists it. Raises OIDCError on failure."""
    if not data.token.is_expired():
        return
    data.token = _oidc().refresh(data.token)
    update_session_token(s, _cipher(), session_id, data.token, data.roles)
    s.commit()


def load_optional_session() -> None:
    """
    before_request hook: puts a live session on ``g.auth_session`` when the
    cookie names one, without requiring it.
    """
    g.auth_session = None
    if request.path.startswith(_UNTRACKED_PREFIXES):
        return

    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return

    s = db_session()
    data = get_session(s, _cipher(), session_id)
    if data is None or data.is_expired():
        return

    try:
        refresh_token(s, session_id, data)
    except OIDCError as e:
        logger.info("Token refresh failed for user_id=%s: %s", data.user_id, e)
    g.auth_session = data


def _redirect_to_login() -> Response:
    return redirect(url_for("auth.login"), code=307)


def require_auth() -> Response | None:
    """
    Returns a redirect to /login unless the request carries a live session.
    Reuses the session loaded by ``load_optional_session`` when present.
    """
    session_id = request.cookies.get(SESSION_COOKIE)
    data = get_optional_session()
    if data is None:
        if not session_id:
            return _redirect_to_login()
        data = get_session(db_session(), _cipher(), session_id)
        if data is None or data.is_expired():
            return _redirect_to_login()

    if session_id:
        try:
            refresh_token(db_session(), session_id, data)
        except OIDCError as e:
            logger.info("Token refresh failed for user_id=%s, forcing login: %s", data.user_id, e)
            return _redirect_to_login()

    g.auth_session = data
    return None


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        resp = require_auth()
        if resp is not None:
            return resp
        return fn(*args, **kwargs)

    return wrapped


def user_has_role(data: SessionData | None, role: str) -> bool:
    return data is not None and role in data.roles


def require_role(role: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            # Unauthenticated -> login; authenticated without the role -> 403.
            resp = require_auth()
            if resp is not None:
                return resp
            if not user_has_role(get_optional_session(), role):
                g.missing_role = role
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


# --- routes ----------------------------------------------------------------------


@bp.get("/login")
def login():
    state = generate_state()
    try:
        auth_url = _oidc().authorization_url(state)
    except OIDCError as e:
        logger.error("OIDC provider unavailable: %s", e)
        return render_error(502, "Authentication provider unavailable")

    resp = redirect(auth_url, code=307)
    _set_cookie(resp, STATE_COOKIE, state, STATE_MAX_AGE)
    return resp


@bp.get("/callback")
def callback():
    state = request.cookies.get(STATE_COOKIE)
    # bytes: compare_digest rejects non-ASCII str
    if not state or not secrets.compare_digest(state.encode(), request.args.get("state", "").encode()):
        return render_error(400, "Invalid state")

    def fail(status: int, message: str) -> Response:
        resp = render_error(status, message)
        resp.delete_cookie(STATE_COOKIE, path="/")
        return resp

    oidc = _oidc()
    try:
        token, raw_id_token = oidc.exchange_code(request.args.get("code", ""))
    except OIDCError as e:
        logger.warning("Token exchange error: %s", e)
        return fail(500, "Failed to exchange token")

    if not raw_id_token:
        return fail(500, "No id_token in response")

    try:
        claims = oidc.verify_id_token(raw_id_token)
    except OIDCError as e:
        logger.warning("Token verification error: %s", e)
        return fail(401, "Failed to verify token")

    try:
        std = StandardClaims.from_claims(claims)
    except OIDCError as e:
        logger.warning("Claims parsing error: %s", e)
        return fail(500, "Failed to parse claims")

    try:
        roles = _role_extractor()(claims, oidc.client_id)
    except Exception as e:
        logger.warning("Role extraction error: %s", e)
        roles = []

    s = db_session()
    try:
        user = upsert_user(s, auth_sub=std.sub, email=std.email, display_name=std.display_name)
    except SQLAlchemyError:
        s.rollback()
        logger.exception("User upsert error (sub=%s)", std.sub)
        return fail(500, "Failed to save user")

    session_id = generate_state()
    ttl = _session_ttl()
    try:
        create_session(
            s,
            _cipher(),
            session_id,
            SessionData(
                token=token,
                id_token=raw_id_token,
                user_sub=std.sub,
                user_id=user.id,
                email=std.email,
                display_name=std.display_name,
                roles=roles,
                expires=utcnow() + ttl,
            ),
        )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        logger.exception("Session creation error (user_id=%s)", user.id)
        return fail(500, "Failed to create session")

    logger.info("auth.login user_id=%s request_id=%s", user.id, g.get("request_id"))
    resp = redirect(url_for("user.dashboard"), code=307)
    resp.delete_cookie(STATE_COOKIE, path="/")
    _set_cookie(resp, SESSION_COOKIE, session_id, int(ttl.total_seconds()))
    return resp


@bp.post("/logout")
def logout():
    """Clears the session, then hands off to the provider's logout endpoint when configured."""
    id_token = ""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        s = db_session()
        data = get_session(s, _cipher(), session_id)
        if data is not None:
            id_token = data.id_token
            logger.info("auth.logout user_id=%s request_id=%s", data.user_id, g.get("request_id"))
        delete_session(s, session_id)
        s.commit()

    target = _oidc().end_session_url(id_token, current_app.config["APP_URL"]) or url_for("routes.index")
    # 303 so the browser follows up with GET rather than re-POSTing.
    resp = redirect(target, code=303)
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp
