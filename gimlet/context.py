"""Request contexts: handler flow, metadata, errors and response rendering."""

from __future__ import annotations

import dataclasses
import json as _json
import math
import threading
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union
from urllib.parse import quote_plus

from .debug import name_of_function
from .errors import Error, ErrorMsgs, ErrorType
from .http import Request, ResponseWriter
from .inputs import Param, Params, RequestInput

MIME_JSON = "application/json"
MIME_HTML = "text/html"
MIME_XML = "application/xml"
MIME_XML2 = "text/xml"
MIME_PLAIN = "text/plain"
MIME_POST_FORM = "application/x-www-form-urlencoded"
MIME_MULTIPART_POST_FORM = "multipart/form-data"
MIME_YAML = "application/x-yaml"

#: Index value that marks a context as aborted.
ABORT_INDEX = 127 >> 1

DEFAULT_SECURE_JSON_PREFIX = "while(1);"

_JSON_CONTENT_TYPE = "application/json; charset=utf-8"
_JSONP_CONTENT_TYPE = "application/javascript; charset=utf-8"
_PLAIN_CONTENT_TYPE = "text/plain; charset=utf-8"

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)
_JS_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    '"': '\\"',
    "<": "\\u003C",
    ">": "\\u003E",
    "&": "\\u0026",
    "=": "\\u003D",
}
_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)

Handler = Callable[["Context"], Any]


class HandlersChain(list):
    """An ordered list of handlers; the last one is the main handler."""

    def last(self) -> Optional[Handler]:
        """Return the last handler, or None when the chain is empty."""
        return self[-1] if self else None


def body_allowed_for_status(status: int) -> bool:
    """Tell whether a response with this status may carry a body."""
    if 100 <= status <= 199:
        return False
    return status not in (204, 304)


# JSON encoding


def _items(value: Any) -> Optional[list[tuple[str, Any]]]:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return [(f.name, getattr(value, f.name)) for f in dataclasses.fields(value)]
    if isinstance(value, tuple) and hasattr(value, "_fields"):
        return list(value._asdict().items())
    if isinstance(value, Mapping):
        return sorted(((str(k), v) for k, v in value.items()), key=lambda item: item[0])
    return None


def _scalar(value: Any) -> str:
    if isinstance(value, float) and not isinstance(value, bool):
        if not math.isfinite(value):
            raise ValueError(f"json: unsupported value: {value}")
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
    if value is None or isinstance(value, (str, int, float, bool)):
        return _json.dumps(value, ensure_ascii=False)
    return _json.dumps(str(value), ensure_ascii=False)


def _wrap(opening: str, closing: str, parts: list[str], indent: str, depth: int) -> str:
    if not parts:
        return opening + closing
    if not indent:
        return opening + ",".join(parts) + closing
    inner = indent * (depth + 1)
    body = ",\n".join(inner + part for part in parts)
    return f"{opening}\n{body}\n{indent * depth}{closing}"


def _encode(value: Any, indent: str, depth: int) -> str:
    items = _items(value)
    if items is not None:
        separator = ": " if indent else ":"
        parts = [
            _json.dumps(key, ensure_ascii=False) + separator + _encode(item, indent, depth + 1)
            for key, item in items
        ]
        return _wrap("{", "}", parts, indent, depth)
    if isinstance(value, (list, tuple)):
        parts = [_encode(item, indent, depth + 1) for item in value]
        return _wrap("[", "]", parts, indent, depth)
    return _scalar(value)


def _to_json(value: Any, indent: str = "", escape_html: bool = True) -> str:
    text = _encode(value, indent, 0)
    if escape_html:
        for raw, escaped in _HTML_ESCAPES:
            text = text.replace(raw, escaped)
    return text


def _js_escape(text: str) -> str:
    out = []
    for ch in text:
        if ch in _JS_ESCAPES:
            out.append(_JS_ESCAPES[ch])
        elif ord(ch) < 0x20 or not ch.isprintable():
            out.append(f"\\u{ord(ch):04X}")
        else:
            out.append(ch)
    return "".join(out)


def _parse_accept(header: str) -> list[str]:
    parts = (piece.split(";", 1)[0].strip() for piece in header.split(","))
    return [part for part in parts if part]


@dataclasses.dataclass
class _BodyRender:
    """Writes a lazily produced body with a default content type."""

    content_type: str
    produce: Callable[[], Union[bytes, str]]

    def write_content_type(self, writer: ResponseWriter) -> None:
        if not writer.headers.values("Content-Type"):
            writer.headers.set("Content-Type", self.content_type)

    def render(self, writer: ResponseWriter) -> None:
        self.write_content_type(writer)
        writer.write(self.produce())


class Context(RequestInput):
    """State of one request as it passes through its handlers."""

    def __init__(
        self,
        request: Optional[Request] = None,
        writer: Optional[ResponseWriter] = None,
        engine: Any = None,
    ):
        super().__init__(request, engine)
        self.writer = writer if writer is not None else ResponseWriter()
        self.handlers = HandlersChain()
        self.index = -1
        self.matched_path = ""
        self.keys: Optional[dict[str, Any]] = None
        self.errors = ErrorMsgs()
        self.accepted: Optional[list[str]] = None
        self.same_site = ""
        self._lock = threading.RLock()

    # Creation

    def reset(self) -> None:
        """Clear all per-request state."""
        self._reset_inputs()
        self.handlers = HandlersChain()
        self.index = -1
        self.matched_path = ""
        self.keys = None
        self.errors = ErrorMsgs()
        self.accepted = None

    def copy(self) -> "Context":
        """Return a detached copy that is safe to use outside the request."""
        writer = ResponseWriter()
        writer.status = self.writer.status
        writer.size = self.writer.size
        cp = Context(request=self.request, writer=writer, engine=self.engine)
        cp.params = Params(Param(p.key, p.value) for p in self.params)
        cp.index = ABORT_INDEX
        cp.matched_path = self.matched_path
        with self._lock:
            cp.keys = dict(self.keys or {})
        return cp

    def handler_name(self) -> str:
        """Return the qualified name of the main handler."""
        return name_of_function(self.handlers.last())

    def handler_names(self) -> list[str]:
        """Return the names of all handlers of the chain."""
        return [name_of_function(handler) for handler in self.handlers]

    def handler(self) -> Optional[Handler]:
        """Return the main handler."""
        return self.handlers.last()

    def full_path(self) -> str:
        """Return the matched route pattern, or "" for unmatched requests."""
        return self.matched_path

    # Flow control

    def next(self) -> None:
        """Run the pending handlers of the chain."""
        self.index += 1
        while self.index < len(self.handlers):
            self.handlers[self.index](self)
            self.index += 1

    def is_aborted(self) -> bool:
        return self.index >= ABORT_INDEX

    def abort(self) -> None:
        """Keep pending handlers from running."""
        self.index = ABORT_INDEX

    def abort_with_status(self, code: int) -> None:
        """Abort and commit the given status."""
        self.status(code)
        self.writer.write_header_now()
        self.abort()

    def abort_with_status_json(self, code: int, obj: Any) -> None:
        """Abort and render ``obj`` as JSON."""
        self.abort()
        self.json(code, obj)

    def abort_with_error(self, code: int, err: Any) -> Error:
        """Abort with a status and record ``err``."""
        self.abort_with_status(code)
        return self.error(err)

    # Errors

    def error(self, err: Any) -> Error:
        """Record an error on the context and return it as an :class:`Error`."""
        if err is None:
            raise ValueError("err is nil")
        found: Any = err
        seen = set()
        while found is not None and not isinstance(found, Error) and id(found) not in seen:
            seen.add(id(found))
            found = getattr(found, "__cause__", None)
        parsed = found if isinstance(found, Error) else Error(err, ErrorType.PRIVATE)
        self.errors.append(parsed)
        return parsed

    # Metadata

    def set(self, key: str, value: Any) -> None:
        """Store a value for this request."""
        with self._lock:
            if self.keys is None:
                self.keys = {}
            self.keys[key] = value

    def get(self, key: str) -> tuple[Any, bool]:
        """Return the stored value and whether it exists."""
        with self._lock:
            if self.keys is not None and key in self.keys:
                return self.keys[key], True
        return None, False

    def must_get(self, key: str) -> Any:
        """Return the stored value, raising KeyError when it is missing."""
        value, exists = self.get(key)
        if not exists:
            raise KeyError(f'Key "{key}" does not exist')
        return value

    def get_string(self, key: str) -> str:
        value, _ = self.get(key)
        return value if isinstance(value, str) else ""

    def get_bool(self, key: str) -> bool:
        value, _ = self.get(key)
        return value if isinstance(value, bool) else False

    def get_int(self, key: str) -> int:
        value, _ = self.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    def get_float(self, key: str) -> float:
        value, _ = self.get(key)
        return value if isinstance(value, float) else 0.0

    def get_list(self, key: str) -> list:
        value, _ = self.get(key)
        return value if isinstance(value, list) else []

    def get_dict(self, key: str) -> dict:
        value, _ = self.get(key)
        return value if isinstance(value, dict) else {}

    # Response

    def status(self, code: int) -> None:
        """Set the response status."""
        self.writer.write_header(code)

    def header(self, key: str, value: str) -> None:
        """Set a response header, or remove it when ``value`` is empty."""
        if value == "":
            self.writer.headers.delete(key)
        else:
            self.writer.headers.set(key, value)

    def set_same_site(self, same_site: str) -> None:
        """Choose the SameSite attribute ("Lax", "Strict", "None" or "") of cookies."""
        self.same_site = same_site

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int,
        path: str,
        domain: str,
        secure: bool,
        http_only: bool,
    ) -> None:
        """Add a Set-Cookie header; cookies with invalid names are dropped."""
        if not name or any(ch not in _TOKEN_CHARS for ch in name):
            return
        parts = [f"{name}={quote_plus(value)}", f"Path={path or '/'}"]
        if domain:
            parts.append(f"Domain={domain.lstrip('.')}")
        if max_age > 0:
            parts.append(f"Max-Age={max_age}")
        elif max_age < 0:
            parts.append("Max-Age=0")
        if http_only:
            parts.append("HttpOnly")
        if secure:
            parts.append("Secure")
        if self.same_site:
            parts.append(f"SameSite={self.same_site}")
        self.writer.headers.add("Set-Cookie", "; ".join(parts))

    def render(self, code: int, renderer: Any) -> None:
        """Set the status and let ``renderer`` write the body.

        ``renderer`` provides ``render(writer)`` and ``write_content_type(writer)``.
        """
        self.status(code)
        if not body_allowed_for_status(code):
            renderer.write_content_type(self.writer)
            self.writer.write_header_now()
            return
        renderer.render(self.writer)

    def json(self, code: int, obj: Any) -> None:
        """Render ``obj`` as compact JSON with HTML characters escaped."""
        self.render(code, _BodyRender(_JSON_CONTENT_TYPE, lambda: _to_json(obj)))

    def indented_json(self, code: int, obj: Any) -> None:
        """Render ``obj`` as JSON indented by four spaces."""
        self.render(code, _BodyRender(_JSON_CONTENT_TYPE, lambda: _to_json(obj, "    ")))

    def secure_json(self, code: int, obj: Any) -> None:
        """Render ``obj`` as JSON, prefixing arrays with the engine's prefix."""
        prefix = getattr(self.engine, "secure_json_prefix", DEFAULT_SECURE_JSON_PREFIX)

        def produce() -> str:
            text = _to_json(obj)
            if text.startswith("[") and text.endswith("]"):
                return prefix + text
            return text

        self.render(code, _BodyRender(_JSON_CONTENT_TYPE, produce))

    def jsonp(self, code: int, obj: Any) -> None:
        """Render JSON wrapped in the ``callback`` query parameter, if given."""
        callback = self.default_query("callback", "")
        if not callback:
            self.json(code, obj)
            return
        body = lambda: f"{_js_escape(callback)}({_to_json(obj)});"  # noqa: E731
        self.render(code, _BodyRender(_JSONP_CONTENT_TYPE, body))

    def pure_json(self, code: int, obj: Any) -> None:
        """Render JSON without escaping HTML characters."""
        body = lambda: _to_json(obj, escape_html=False) + "\n"  # noqa: E731
        self.render(code, _BodyRender(_JSON_CONTENT_TYPE, body))

    def string(self, code: int, format: str, *args: Any) -> None:
        """Render ``format % args`` as plain text."""
        body = lambda: format % args if args else format  # noqa: E731
        self.render(code, _BodyRender(_PLAIN_CONTENT_TYPE, body))

    def data(self, code: int, content_type: str, data: bytes) -> None:
        """Write raw bytes with the given content type."""
        self.render(code, _BodyRender(content_type, lambda: data))

    def stream(self, step: Callable[[ResponseWriter], bool]) -> bool:
        """Call ``step`` until it returns False; return True if the client left."""
        writer = self.writer
        while True:
            if writer.client_gone:
                return True
            keep_open = step(writer)
            writer.flush()
            if not keep_open:
                return False

    # Content negotiation

    def negotiate_format(self, *args: str) -> str:
        """Return the first offered format the request accepts, or ""."""
        if not args:
            raise ValueError("you must provide at least one offer")
        if self.accepted is None:
            self.accepted = _parse_accept(self._request_header("Accept"))
        if not self.accepted:
            return args[0]
        for accepted in self.accepted:
            for offer in args:
                for i, ch in enumerate(accepted):
                    if ch == "*" or (i < len(offer) and offer[i] == "*"):
                        return offer
                    if i >= len(offer) or ch != offer[i]:
                        break
                else:
                    return offer
        return ""

    def set_accepted(self, *args: str) -> None:
        """Set the accepted formats by hand."""
        self.accepted = list(args)

    def value(self, key: Any) -> Any:
        """Look ``key`` up: 0 gives the request, then stored keys, then request values."""
        if isinstance(key, int) and not isinstance(key, bool) and key == 0:
            return self.request
        if isinstance(key, str):
            found, exists = self.get(key)
            if exists:
                return found
        if self.request is None:
            return None
        return self.request.context_values.get(key)