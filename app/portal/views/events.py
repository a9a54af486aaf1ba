from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import datetime

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def current_time() -> str:
    return datetime.now().strftime(TIME_FORMAT)


def time_events(disconnected: threading.Event, interval: float = 1.0) -> Iterator[str]:
    """The current time right away, then once per ``interval`` until the client leaves."""
    yield current_time()
    while not disconnected.wait(interval):
        yield current_time()
