"""A process-wide default engine with module-level shortcuts."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from .engine import Engine, RouteInfo, default

_lock = threading.Lock()
_engine: Optional[Engine] = None


def engine() -> Engine:
    """Return the shared engine, creating it with default middleware on first use."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:
                _engine = default()
    return _engine


def no_route(*args: Callable) -> None:
    """Set the handlers for unmatched routes; a 404 is returned by default."""
    engine().no_route(*args)


def no_method(*args: Callable) -> None:
    """Set the handlers for disallowed methods."""
    engine().no_method(*args)


def use(*args: Callable) -> Engine:
    """Attach global middleware to the shared engine."""
    return engine().use(*args)


def handle(http_method: str, relative_path: str, *args: Callable) -> Engine:
    """Register handlers for a method and path on the shared engine."""
    return engine().handle(http_method, relative_path, *args)


def get(relative_path: str, *args: Callable) -> Engine:
    """Register GET handlers on the shared engine."""
    return engine().get(relative_path, *args)


def post(relative_path: str, *args: Callable) -> Engine:
    """Register POST handlers on the shared engine."""
    return engine().post(relative_path, *args)


def routes() -> list[RouteInfo]:
    """List the routes registered on the shared engine."""
    return engine().routes()


def run(*args: str) -> None:
    """Serve the shared engine on the given address until stopped."""
    engine().run(*args)