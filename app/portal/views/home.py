from dataclasses import dataclass

from app.portal.auth import get_optional_session
from app.portal.web.templates import TemplateRenderer


@dataclass
class HomeViewModel:
    email: str = ""


def home(renderer: TemplateRenderer) -> str:
    data = HomeViewModel()
    session = get_optional_session()
    if session is not None:
        data.email = session.email
    return renderer.render(data)
