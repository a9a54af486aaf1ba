import base64
import time
from datetime import timedelta

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from app.portal import create_app
from app.portal.db import session_scope
from app.portal.models import Base, utcnow
from app.portal.oidc import OIDCClient
from app.portal.sessions import SessionData, TokenSet, create_session, upsert_user

ISSUER = "https://idp.example.com/realms/test"

PROVIDER_METADATA = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
    "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
    "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
}

TEST_SECRET = base64.b64encode(b"k" * 32).decode("ascii")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", TEST_SECRET)
    monkeypatch.setenv("APP_URL", "http://localhost")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("OIDC_ISSUER_URL", ISSUER)
    monkeypatch.setenv("OIDC_CLIENT_ID", "portal")
    monkeypatch.setenv("OIDC_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("SESSION_SWEEP_SECONDS", "0")
    for k in ("OIDC_LOGOUT_URL", "OIDC_SCOPES", "TEMPLATE_RELOAD", "SESSION_TTL_HOURS"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    # Provider metadata is injected so no test talks to the network.
    app.extensions["oidc_client"] = OIDCClient(
        issuer_url=ISSUER,
        client_id="portal",
        client_secret="client-secret",
        redirect_url="http://localhost/callback",
        metadata=PROVIDER_METADATA,
    )

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def seed_session(
    app,
    *,
    session_id="sid-123",
    sub="user-1",
    email="alice@example.com",
    name="Alice",
    roles=(),
    token=None,
    ttl=timedelta(hours=1),
):
    """Creates a user plus a login session and returns the session id."""
    cipher = app.extensions["token_cipher"]
    with session_scope(app) as s:
        user = upsert_user(s, auth_sub=sub, email=email, display_name=name)
        create_session(
            s,
            cipher,
            session_id,
            SessionData(
                token=token or TokenSet(access_token="at", refresh_token="rt", expiry=utcnow() + timedelta(hours=1)),
                id_token="raw-id-token",
                user_sub=sub,
                user_id=user.id,
                email=email,
                display_name=name,
                roles=list(roles),
                expires=utcnow() + ttl,
            ),
        )
    return session_id


@pytest.fixture()
def seed(app):
    def _seed(**kwargs):
        return seed_session(app, **kwargs)

    return _seed


@pytest.fixture()
def logged_in(client, seed):
    sid = seed()
    client.set_cookie("session_id", sid)
    return client


def _b64url_uint(val):
    raw = val.to_bytes((val.bit_length() + 7) // 8, byteorder="big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def rsa_jwk(private_key, kid):
    numbers = private_key.public_key().public_numbers()
    return {
        "kty": "RSA",
        "use": "sig",
        "alg": "RS256",
        "kid": kid,
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def id_token_claims(**overrides):
    now = int(time.time())
    claims = {"sub": "kc-123", "iss": ISSUER, "aud": "portal", "iat": now, "exp": now + 300}
    claims.update(overrides)
    return claims


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def jwks(monkeypatch, signing_key):
    """Serves the provider JWKS (one RS256 key, kid ``k1``) without network."""
    monkeypatch.setattr(jwt.PyJWKClient, "fetch_data", lambda self: {"keys": [rsa_jwk(signing_key, "k1")]})
    return signing_key
