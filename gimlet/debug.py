"""Run modes and debug output of the framework."""

from __future__ import annotations

import os
import platform
import sys
from typing import Any, Callable, Optional, TextIO

DEBUG_MODE = "debug"
RELEASE_MODE = "release"
TEST_MODE = "test"
ENV_MODE = "GIMLET_MODE"

_MODES = (DEBUG_MODE, RELEASE_MODE, TEST_MODE)
_SUPPORT_MIN_VER = 9
_PREFIX = "[GIMLET-debug] "

#: Optional hook replacing the default route printout.
debug_print_route_func: Optional[Callable[[str, str, str, int], None]] = None


class _Settings:
    def __init__(self) -> None:
        self.mode = DEBUG_MODE
        self.writer: Optional[TextIO] = None
        self.error_writer: Optional[TextIO] = None


_settings = _Settings()


def set_mode(mode: str) -> None:
    """Set the run mode; an empty string selects debug mode."""
    if not mode:
        mode = DEBUG_MODE
    if mode not in _MODES:
        raise ValueError(f"gimlet mode unknown: {mode} (available mode: debug release test)")
    _settings.mode = mode


def is_debugging() -> bool:
    """Tell whether the framework runs in debug mode."""
    return _settings.mode == DEBUG_MODE


def set_writers(writer: Optional[TextIO], error_writer: Optional[TextIO]) -> None:
    """Choose where debug and error output go; None means stdout and stderr."""
    _settings.writer = writer
    _settings.error_writer = error_writer


def _writer() -> TextIO:
    return _settings.writer if _settings.writer is not None else sys.stdout


def _error_writer() -> TextIO:
    return _settings.error_writer if _settings.error_writer is not None else sys.stderr


def name_of_function(func: Any) -> str:
    """Return the qualified name of a handler, or "" for None."""
    if func is None:
        return ""
    qualname = getattr(func, "__qualname__", None) or type(func).__qualname__
    module = getattr(func, "__module__", None) or type(func).__module__
    return f"{module}.{qualname}"


def debug_print(format: str, *args: Any) -> None:
    """Write a formatted debug line when debugging."""
    if not is_debugging():
        return
    if not format.endswith("\n"):
        format += "\n"
    text = format % args if args else format
    _writer().write(_PREFIX + text)


def debug_print_route(http_method: str, absolute_path: str, handlers: list) -> None:
    """Print a registered route when debugging."""
    if not is_debugging():
        return
    count = len(handlers)
    handler_name = name_of_function(handlers[-1] if handlers else None)
    if debug_print_route_func is None:
        debug_print(
            "%-6s %-25s --> %s (%d handlers)\n", http_method, absolute_path, handler_name, count
        )
    else:
        debug_print_route_func(http_method, absolute_path, handler_name, count)


def debug_print_error(err: Any) -> None:
    """Print an error to the error writer when debugging."""
    if err is not None and is_debugging():
        _error_writer().write(f"{_PREFIX}[ERROR] {err}\n")


def get_min_ver(v: str) -> int:
    """Return the minor number of a dotted version string."""
    first = v.find(".")
    last = v.rfind(".")
    digits = v[first + 1 :] if first == last else v[first + 1 : last]
    if not digits or not (digits.isascii() and digits.isdigit()):
        raise ValueError(f"invalid minor version in {v!r}")
    return int(digits)


def debug_print_warning_default() -> None:
    """Print the warnings shown when a default engine is created."""
    try:
        minor = get_min_ver(platform.python_version())
    except ValueError:
        minor = None
    if minor is not None and minor <= _SUPPORT_MIN_VER:
        debug_print("[WARNING] Now gimlet requires Python 3.10+.\n\n")
    debug_print(
        "[WARNING] Creating an Engine instance with the Logger and Recovery "
        "middleware already attached.\n\n"
    )


def debug_print_warning_new() -> None:
    """Print the warning shown when a new engine is created."""
    debug_print(
        '[WARNING] Running in "debug" mode. Switch to "release" mode in production.\n'
        f" - using env:\texport {ENV_MODE}=release\n"
        " - using code:\tgimlet.set_mode(gimlet.RELEASE_MODE)\n\n"
    )


def debug_print_warning_set_html_template() -> None:
    """Print the warning about replacing templates after routes exist."""
    debug_print(
        "[WARNING] Since set_html_template() is NOT thread-safe. It should only be called\n"
        "at initialization. ie. before any route is registered or the router is "
        "listening in a socket:\n\n"
        "\trouter = gimlet.default()\n"
        "\trouter.set_html_template(template)  # << good place\n\n"
    )


set_mode(os.environ.get(ENV_MODE, ""))