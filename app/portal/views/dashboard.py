import logging
from dataclasses import dataclass, field

from flask import abort

from app.portal.auth import SessionContextError, get_session_from_context
from app.portal.web.templates import TemplateRenderer

logger = logging.getLogger(__name__)


@dataclass
class DashboardViewModel:
    email: str = ""
    display_name: str = ""
    user_id: str = ""
    roles: list[str] = field(default_factory=list)


def dashboard(renderer: TemplateRenderer) -> str:
    try:
        session = get_session_from_context()
    except SessionContextError as e:
        logger.error("Session context error: %s", e)
        abort(500)

    data = DashboardViewModel(
        email=session.email,
        display_name=session.display_name,
        user_id=session.user_sub,
        roles=list(session.roles),
    )
    return renderer.render(data)
