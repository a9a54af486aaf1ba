import base64
import binascii
import os
from dataclasses import dataclass


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    env: str
    app_url: str
    addr: str

    database_url: str

    oidc_issuer_url: str
    oidc_client_id: str
    oidc_client_secret: str
    oidc_logout_url: str  # optional: empty skips provider-side logout
    oidc_scopes: tuple[str, ...]

    secret_key: bytes  # 32 bytes, used for token encryption

    session_ttl_hours: int
    session_sweep_seconds: int
    template_reload: bool
    log_level: str

    @property
    def is_dev(self) -> bool:
        return self.env in ("dev", "development")


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _require_env(name: str) -> str:
    v = _getenv(name)
    if not v:
        raise ConfigError(f"required environment variable {name} is not set")
    return v


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def decode_secret_key(raw: str) -> bytes:
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigError(f"SECRET_KEY is not valid base64: {e}") from e
    if len(key) != 32:
        raise ConfigError(f"SECRET_KEY must decode to exactly 32 bytes, got {len(key)}")
    return key


def load_settings() -> Settings:
    secret_key = decode_secret_key(_require_env("SECRET_KEY"))
    env = _getenv("ENV", "prod").lower()
    is_dev = env in ("dev", "development")
    return Settings(
        env=env,
        app_url=_require_env("APP_URL").rstrip("/"),
        addr=_getenv("ADDR", ":8080"),
        database_url=_require_env("DATABASE_URL"),
        oidc_issuer_url=_require_env("OIDC_ISSUER_URL").rstrip("/"),
        oidc_client_id=_require_env("OIDC_CLIENT_ID"),
        oidc_client_secret=_require_env("OIDC_CLIENT_SECRET"),
        oidc_logout_url=_getenv("OIDC_LOGOUT_URL", ""),
        oidc_scopes=tuple(_getenv("OIDC_SCOPES", "openid profile email").split()),
        secret_key=secret_key,
        session_ttl_hours=_getenv_int("SESSION_TTL_HOURS", 24),
        session_sweep_seconds=_getenv_int("SESSION_SWEEP_SECONDS", 3600),
        template_reload=_getenv_bool("TEMPLATE_RELOAD", is_dev),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SETTINGS": s,
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "APP_URL": s.app_url,
        "DATABASE_URL": s.database_url,
        "OIDC_LOGOUT_URL": s.oidc_logout_url,
        "SESSION_TTL_HOURS": s.session_ttl_hours,
        "SESSION_SWEEP_SECONDS": s.session_sweep_seconds,
        "TEMPLATE_RELOAD": s.template_reload,
        "LOG_LEVEL": s.log_level,
        # cookie defaults for session_id / oauth_state
        "AUTH_COOKIE_SECURE": not s.is_dev,
        "AUTH_COOKIE_SAMESITE": "Lax",
    }
