import time

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from app.portal.oidc import OIDCClient, OIDCError, StandardClaims, keycloak_roles, token_from_response

from conftest import id_token_claims

ISSUER = "https://idp.example.com/realms/test"


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self._payload


class FakeHTTP:
    def __init__(self, discovery=None, token=None, token_status=200):
        self.discovery = discovery
        self.token = token
        self.token_status = token_status
        self.gets = []
        self.posts = []

    def get(self, url, timeout=None):
        self.gets.append(url)
        return FakeResponse(self.discovery)

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.posts.append((url, data, auth))
        return FakeResponse(self.token, self.token_status)


def _discovery(**overrides):
    doc = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/auth",
        "token_endpoint": f"{ISSUER}/token",
        "jwks_uri": f"{ISSUER}/certs",
    }
    doc.update(overrides)
    return doc


def _client(http, **kwargs):
    return OIDCClient(
        issuer_url=ISSUER,
        client_id="portal",
        client_secret="secret",
        redirect_url="http://localhost/callback",
        http=http,
        **kwargs,
    )


def test_discovery_is_fetched_once():
    http = FakeHTTP(discovery=_discovery())
    client = _client(http)
    assert client.discover()["token_endpoint"] == f"{ISSUER}/token"
    client.discover()
    assert http.gets == [f"{ISSUER}/.well-known/openid-configuration"]


def test_discovery_rejects_issuer_mismatch():
    with pytest.raises(OIDCError, match="issuer mismatch"):
        _client(FakeHTTP(discovery=_discovery(issuer="https://evil.example.com"))).discover()


def test_discovery_requires_endpoints():
    with pytest.raises(OIDCError, match="jwks_uri"):
        _client(FakeHTTP(discovery=_discovery(jwks_uri=""))).discover()


def test_exchange_code_posts_with_client_credentials():
    http = FakeHTTP(
        discovery=_discovery(),
        token={"access_token": "at", "refresh_token": "rt", "expires_in": 300, "id_token": "raw"},
    )
    token, raw = _client(http).exchange_code("the-code")
    assert raw == "raw"
    assert token.access_token == "at"
    assert token.refresh_token == "rt"
    assert token.expiry is not None

    url, data, auth = http.posts[0]
    assert url == f"{ISSUER}/token"
    assert data["grant_type"] == "authorization_code"
    assert data["code"] == "the-code"
    assert auth == ("portal", "secret")


def test_exchange_code_errors():
    with pytest.raises(OIDCError):
        _client(FakeHTTP(discovery=_discovery())).exchange_code("")
    with pytest.raises(OIDCError, match="returned 400"):
        _client(FakeHTTP(discovery=_discovery(), token={"error": "invalid_grant"}, token_status=400)).exchange_code("c")


def test_refresh_keeps_refresh_token_when_omitted():
    http = FakeHTTP(discovery=_discovery(), token={"access_token": "new", "expires_in": 60})
    old = token_from_response({"access_token": "old", "refresh_token": "rt"})
    new = _client(http).refresh(old)
    assert new.access_token == "new"
    assert new.refresh_token == "rt"
    assert http.posts[0][1] == {"grant_type": "refresh_token", "refresh_token": "rt"}


def test_refresh_without_refresh_token():
    with pytest.raises(OIDCError, match="no refresh token"):
        _client(FakeHTTP()).refresh(token_from_response({"access_token": "a"}))


def test_token_response_requires_access_token():
    with pytest.raises(OIDCError):
        token_from_response({"token_type": "Bearer"})


def test_end_session_url():
    assert _client(FakeHTTP()).end_session_url("id", "http://localhost") is None
    url = _client(FakeHTTP(), logout_url=f"{ISSUER}/logout").end_session_url("id", "http://localhost")
    assert url == f"{ISSUER}/logout?id_token_hint=id&post_logout_redirect_uri=http%3A%2F%2Flocalhost"


def test_keycloak_roles_filters_defaults():
    claims = {
        "realm_access": {"roles": ["admin", "default-roles-acme", "offline_access", "uma_authorization"]},
        "resource_access": {"portal": {"roles": ["editor"]}, "other": {"roles": ["ignored"]}},
    }
    assert keycloak_roles(claims, "portal") == ["admin", "editor"]
    assert keycloak_roles({}, "portal") == []


def test_standard_claims():
    claims = StandardClaims.from_claims({"sub": "1", "email": "a@example.com"})
    assert claims.display_name == "a@example.com"
    assert StandardClaims.from_claims({"sub": "1", "name": "Ann"}).display_name == "Ann"
    with pytest.raises(OIDCError):
        StandardClaims.from_claims({"email": "a@example.com"})


# --- id token verification -------------------------------------------------------------


def _sign(key, kid="k1", **claims):
    return jwt.encode(id_token_claims(**claims), key, algorithm="RS256", headers={"kid": kid})


def _verifier(**metadata):
    return _client(FakeHTTP(), metadata=_discovery(**metadata))


def test_verify_id_token_accepts_valid_token(jwks):
    claims = _verifier().verify_id_token(_sign(jwks, email="carol@example.com"))
    assert claims["sub"] == "kc-123"
    assert claims["email"] == "carol@example.com"


@pytest.mark.parametrize(
    "overrides",
    [
        {"aud": "someone-else"},
        {"iss": "https://evil.example.com"},
        {"exp": int(time.time()) - 60},
    ],
    ids=["wrong-audience", "wrong-issuer", "expired"],
)
def test_verify_id_token_rejects_bad_claims(jwks, overrides):
    with pytest.raises(OIDCError):
        _verifier().verify_id_token(_sign(jwks, **overrides))


def test_verify_id_token_rejects_foreign_key(jwks):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with pytest.raises(OIDCError):
        _verifier().verify_id_token(_sign(other))


def test_verify_id_token_rejects_unknown_kid(jwks):
    with pytest.raises(OIDCError):
        _verifier().verify_id_token(_sign(jwks, kid="k2"))


def test_verify_id_token_rejects_hmac_token_for_rsa_key(jwks):
    token = jwt.encode(id_token_claims(), "s" * 32, algorithm="HS256", headers={"kid": "k1"})
    verifier = _verifier(id_token_signing_alg_values_supported=["RS256", "HS256"])
    with pytest.raises(OIDCError):
        verifier.verify_id_token(token)


def test_verify_id_token_requires_advertised_algorithm(jwks):
    with pytest.raises(OIDCError, match="not advertised"):
        _verifier(id_token_signing_alg_values_supported=["ES256"]).verify_id_token(_sign(jwks))
