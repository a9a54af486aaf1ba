"""
OpenID Connect relying-party client.

Provider setup (Keycloak example):

    Clients -> Create client
        Client authentication: on
        Standard flow: on
        All others: off

    Client scopes -> roles
        Include in token scope: on

Other providers (Auth0, Okta, ...) need a standard Authorization Code Flow
client with the scopes ``openid profile email``. Role extraction assumes the
Keycloak claim layout; pass a different ``role_extractor`` for other providers.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import jwt
import requests

from app.portal.models import utcnow
from app.portal.sessions import TokenSet

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 10  # seconds

RoleExtractor = Callable[[Mapping[str, Any], str], list[str]]


class OIDCError(RuntimeError):
    pass


@dataclass(frozen=True)
class StandardClaims:
    sub: str
    email: str = ""
    name: str = ""

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "StandardClaims":
        sub = claims.get("sub")
        if not sub:
            raise OIDCError("id_token has no sub claim")
        return cls(sub=str(sub), email=str(claims.get("email") or ""), name=str(claims.get("name") or ""))

    @property
    def display_name(self) -> str:
        return self.name or self.email


def _is_default_role(role: str) -> bool:
    return role.startswith("default-roles-") or role in ("offline_access", "uma_authorization")


def keycloak_roles(claims: Mapping[str, Any], client_id: str) -> list[str]:
    """Realm roles plus this client's roles, minus Keycloak's built-in defaults."""
    roles: list[str] = list((claims.get("realm_access") or {}).get("roles") or [])
    client_access = (claims.get("resource_access") or {}).get(client_id) or {}
    roles.extend(client_access.get("roles") or [])
    return [r for r in roles if not _is_default_role(r)]


def token_from_response(payload: Mapping[str, Any]) -> TokenSet:
    access_token = payload.get("access_token")
    if not access_token:
        raise OIDCError("token response has no access_token")
    expiry = None
    expires_in = payload.get("expires_in")
    if expires_in:
        expiry = utcnow() + timedelta(seconds=int(expires_in))
    return TokenSet(
        access_token=access_token,
        token_type=payload.get("token_type") or "Bearer",
        refresh_token=payload.get("refresh_token") or "",
        expiry=expiry,
    )


class OIDCClient:
    def __init__(
        self,
        *,
        issuer_url: str,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scopes: tuple[str, ...] = ("openid", "profile", "email"),
        logout_url: str = "",
        metadata: Mapping[str, Any] | None = None,
        http: requests.Session | None = None,
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.scopes = scopes
        self.logout_url = logout_url
        self._http = http or requests.Session()
        self._metadata: dict[str, Any] | None = dict(metadata) if metadata else None
        self._jwks: jwt.PyJWKClient | None = None
        self._lock = threading.Lock()

    # --- discovery -------------------------------------------------------------

    def discover(self) -> dict[str, Any]:
        """Fetches (once) and returns the provider's discovery document."""
        with self._lock:
            if self._metadata is not None:
                return self._metadata
            url = f"{self.issuer_url}/.well-known/openid-configuration"
            try:
                resp = self._http.get(url, timeout=HTTP_TIMEOUT)
                resp.raise_for_status()
                metadata = resp.json()
            except (requests.RequestException, ValueError) as e:
                raise OIDCError(f"failed to load OIDC discovery document from {url}: {e}") from e
            for key in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
                if not metadata.get(key):
                    raise OIDCError(f"discovery document missing {key}")
            if metadata.get("issuer", self.issuer_url).rstrip("/") != self.issuer_url:
                raise OIDCError(f"issuer mismatch: expected {self.issuer_url}, got {metadata.get('issuer')}")
            logger.info("Loaded OIDC provider metadata for %s", self.issuer_url)
            self._metadata = metadata
            return metadata

    def _endpoint(self, key: str) -> str:
        return self.discover()[key]

    # --- authorization code flow ------------------------------------------------

    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_url,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self._endpoint('authorization_endpoint')}?{urlencode(params)}"

    def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            resp = self._http.post(
                self._endpoint("token_endpoint"),
                data=data,
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            raise OIDCError(f"token endpoint unreachable: {e}") from e
        if resp.status_code != 200:
            raise OIDCError(f"token endpoint returned {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise OIDCError("token endpoint returned invalid JSON") from e

    def exchange_code(self, code: str) -> tuple[TokenSet, str]:
        """Returns the token set and the raw id_token (empty when the provider sent none)."""
        if not code:
            raise OIDCError("missing authorization code")
        payload = self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_url}
        )
        return token_from_response(payload), str(payload.get("id_token") or "")

    def refresh(self, token: TokenSet) -> TokenSet:
        if not token.refresh_token:
            raise OIDCError("token expired and no refresh token is available")
        payload = self._token_request({"grant_type": "refresh_token", "refresh_token": token.refresh_token})
        new_token = token_from_response(payload)
        if not new_token.refresh_token:
            # Providers may omit the refresh token when it is unchanged.
            new_token.refresh_token = token.refresh_token
        return new_token

    # --- id token ----------------------------------------------------------------

    def _jwks_client(self) -> jwt.PyJWKClient:
        if self._jwks is None:
            self._jwks = jwt.PyJWKClient(self._endpoint("jwks_uri"))
        return self._jwks

    def verify_id_token(self, raw_id_token: str) -> dict[str, Any]:
        """
        Verifies the signature against the provider JWKS, then issuer, audience and expiry.
        Only the algorithm of the matching JWK is accepted.
        """
        metadata = self.discover()
        advertised = metadata.get("id_token_signing_alg_values_supported")
        try:
            signing_key = self._jwks_client().get_signing_key_from_jwt(raw_id_token)
            algorithm = signing_key.algorithm_name
            if advertised and algorithm not in advertised:
                raise OIDCError(f"signing key algorithm {algorithm} is not advertised by the provider")
            return jwt.decode(
                raw_id_token,
                signing_key.key,
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=metadata.get("issuer", self.issuer_url),
                options={"require": ["exp", "iat", "sub"]},
            )
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            raise OIDCError(f"id_token verification failed: {e}") from e

    # --- logout ------------------------------------------------------------------

    def end_session_url(self, id_token_hint: str, post_logout_redirect_uri: str) -> str | None:
        if not self.logout_url:
            return None
        query = urlencode({"id_token_hint": id_token_hint, "post_logout_redirect_uri": post_logout_redirect_uri})
        return f"{self.logout_url}?{query}"
