from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Response, current_app
from werkzeug.http import HTTP_STATUS_CODES

from app.portal.web.templates import TemplateStoreError

logger = logging.getLogger(__name__)


@dataclass
class ErrorViewModel:
    status: int = 500
    title: str = "Internal Server Error"
    message: str = ""


def render_error(status: int, message: str = "") -> Response:
    title = HTTP_STATUS_CODES.get(status, "Error")
    data = ErrorViewModel(status=status, title=title, message=message or title)
    try:
        body = current_app.extensions["error_renderer"].render(data)
    except TemplateStoreError:
        logger.exception("Error page failed to render (status=%s)", status)
        return Response(f"{data.message}\n", status=status, mimetype="text/plain")
    return Response(body, status=status, mimetype="text/html")
