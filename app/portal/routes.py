from flask import Blueprint, Flask

from app.portal.auth import bp as auth_bp, require_auth
from app.portal.views import dashboard, events, home
from app.portal.web.sse import build_sse_handler
from app.portal.web.templates import TemplateRegistry


def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


def healthz():
    """Liveness probe: no DB access."""
    return "ok", 200


def register_routes(app: Flask, registry: TemplateRegistry) -> None:
    """
    Wires every route. Page handlers are built through the registry, so a view
    model that does not match its template stops the app from starting.
    Add your pages and API endpoints here.
    """
    public = Blueprint("routes", __name__)
    public.add_url_rule(
        "/",
        "index",
        registry.build_handler("index.html", home.HomeViewModel(), home.home),
        methods=["GET"],
    )
    public.add_url_rule("/health", "health", health, methods=["GET"])
    public.add_url_rule("/healthz", "healthz", healthz, methods=["GET"])
    app.register_blueprint(public)

    # /login, /callback, /logout
    app.register_blueprint(auth_bp)

    user = Blueprint("user", __name__, url_prefix="/u")
    user.before_request(require_auth)
    user.add_url_rule(
        "/dashboard",
        "dashboard",
        registry.build_handler("dashboard.html", dashboard.DashboardViewModel(), dashboard.dashboard),
        methods=["GET"],
    )
    user.add_url_rule("/events/time", "time", build_sse_handler(events.time_events), methods=["GET"])
    app.register_blueprint(user)
