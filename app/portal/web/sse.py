from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from flask import Response, stream_with_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerSentEvent:
    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None  # milliseconds

    def encode(self) -> str:
        lines: list[str] = []
        if self.event:
            lines.append(f"event: {self.event}")
        if self.id is not None:
            lines.append(f"id: {self.id}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        # One data line per payload line; a bare newline would end the event early.
        for line in self.data.splitlines() or [""]:
            lines.append(f"data: {line}")
        return "\n".join(lines) + "\n\n"


Message = str | ServerSentEvent

# Called once per connection with an event that is set when the client goes away.
SSEProducer = Callable[[threading.Event], Iterable[Message]]


def encode_message(message: Message) -> str:
    if isinstance(message, ServerSentEvent):
        return message.encode()
    return ServerSentEvent(data=message).encode()


def event_stream(producer: SSEProducer, disconnected: threading.Event) -> Iterator[str]:
    messages = producer(disconnected)
    try:
        for message in messages:
            yield encode_message(message)
    except GeneratorExit:
        logger.debug("SSE client disconnected")
        raise
    finally:
        disconnected.set()
        close = getattr(messages, "close", None)
        if close is not None:
            close()


def build_sse_handler(producer: SSEProducer) -> Callable[..., Response]:
    """
    Flask view streaming ``producer``'s messages as ``text/event-stream``.
    The WSGI server closes the response iterator when the client drops, which
    sets the producer's event and closes it.
    """

    def handler(**_view_args: Any) -> Response:
        disconnected = threading.Event()
        resp = Response(
            stream_with_context(event_stream(producer, disconnected)),
            mimetype="text/event-stream",
        )
        resp.headers["Cache-Control"] = "no-cache"
        resp.headers["Connection"] = "keep-alive"
        resp.headers["X-Accel-Buffering"] = "no"
        return resp

    return handler
