import logging
import os
import uuid
from importlib.resources import files
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, g, request, url_for
from werkzeug.exceptions import HTTPException

from app.portal.auth import load_optional_session
from app.portal.config import Settings, load_config
from app.portal.db import init_db, teardown_db_session
from app.portal.oidc import OIDCClient, keycloak_roles
from app.portal.routes import register_routes
from app.portal.security import apply_no_cache_headers, apply_security_headers, is_cross_origin_request
from app.portal.sessions import TokenCipher, start_session_sweeper
from app.portal.views.errors import ErrorViewModel, render_error
from app.portal.web.templates import TemplateRegistry, TemplateRegistryOptions

access_logger = logging.getLogger("app.portal.access")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def init_templates(app: Flask, settings: Settings) -> TemplateRegistry:
    if settings.is_dev:
        # Read straight from the source tree so edits show up on the next request.
        app.logger.warning("WARNING: dev mode, templates are read from %s", app.root_path)
        source = Path(app.root_path)
    else:
        source = files(__name__)

    return TemplateRegistry(
        TemplateRegistryOptions(
            fs=source,
            root_dir="templates/www",
            include_dir="templates/include",
            func_map={"url": url_for},
            reload=settings.template_reload,
            ambient_names=frozenset({"request_id"}),
            ambient=lambda: {"request_id": g.get("request_id", "")},
        )
    )


def _access_log(resp):
    # Common Log Format; streamed responses have no known length.
    length = resp.calculate_content_length() if not resp.is_streamed else None
    access_logger.info(
        '%s - - "%s %s %s" %s %s request_id=%s',
        request.remote_addr or "-",
        request.method,
        request.full_path.rstrip("?"),
        request.environ.get("SERVER_PROTOCOL", "HTTP/1.1"),
        resp.status_code,
        length if length is not None else "-",
        g.get("request_id"),
    )
    return resp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, static_folder="static")
    app.config.from_mapping(load_config())
    settings: Settings = app.config["SETTINGS"]
    configure_logging(settings.log_level)

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose(close=False)

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.extensions["token_cipher"] = TokenCipher(settings.secret_key)
    oidc = OIDCClient(
        issuer_url=settings.oidc_issuer_url,
        client_id=settings.oidc_client_id,
        client_secret=settings.oidc_client_secret,
        redirect_url=f"{settings.app_url}/callback",
        scopes=settings.oidc_scopes,
        logout_url=settings.oidc_logout_url,
    )
    app.extensions["oidc_client"] = oidc
    app.extensions["role_extractor"] = keycloak_roles

    # Production guardrail: fail at boot, not at first login, when the provider is unreachable.
    if settings.env in ("prod", "production"):
        oidc.discover()

    registry = init_templates(app, settings)
    app.extensions["template_registry"] = registry
    app.extensions["error_renderer"] = registry.renderer("error.html", ErrorViewModel())

    register_routes(app, registry)

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.before_request
    def _cross_origin_guard():
        if is_cross_origin_request(request):
            app.logger.warning(
                "Rejected cross-origin %s %s (origin=%s)", request.method, request.path, request.headers.get("Origin")
            )
            return render_error(403, "Cross-origin request rejected")
        return None

    app.before_request(load_optional_session)

    @app.after_request
    def _response_headers(resp):
        apply_no_cache_headers(request, resp)
        apply_security_headers(resp)
        return _access_log(resp)

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        missing = g.get("missing_role")
        if e.code == 403 and missing:
            app.logger.warning("Forbidden: missing_role=%s request_id=%s", missing, g.get("request_id"))
        return render_error(e.code or 500, e.description or "")

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        app.logger.exception("Unhandled 500 (request_id=%s)", g.get("request_id"))
        return render_error(500)

    interval = settings.session_sweep_seconds
    if interval > 0:
        app.extensions["session_sweeper"] = start_session_sweeper(app, interval)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
