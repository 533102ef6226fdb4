"""The engine: route registration, request dispatch and trusted proxies."""

from __future__ import annotations

import html
import ipaddress
import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional, Sequence, Union
from urllib.parse import unquote

from .context import ABORT_INDEX, DEFAULT_SECURE_JSON_PREFIX, Context, HandlersChain
from .debug import (
    debug_print,
    debug_print_error,
    debug_print_route,
    debug_print_warning_default,
    debug_print_warning_new,
    name_of_function,
)
from .http import Request, ResponseWriter
from .inputs import DEFAULT_MULTIPART_MEMORY, Param, Params

PLATFORM_GOOGLE_APP_ENGINE = "X-Appengine-Remote-Addr"
PLATFORM_CLOUDFLARE = "CF-Connecting-IP"

DEFAULT_404_BODY = b"404 page not found"
DEFAULT_405_BODY = b"405 method not allowed"

#: Trusted platform used by new engines; App Engine deployments trust its header.
DEFAULT_PLATFORM = PLATFORM_GOOGLE_APP_ENGINE if os.environ.get("GAE_ENV") else ""

_IP = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
_Net = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
_METHOD = re.compile(r"^[A-Z]+$")
_WILDCARD = re.compile(r"([:*])([^/]*)")
_UNSAFE_PROXIES_WARNING = (
    "[WARNING] You trusted all proxies, this is NOT safe. We recommend you to set a value."
)
_log = logging.getLogger(__name__)


def _default_trusted_cidrs() -> list[_Net]:
    return [ipaddress.ip_network("0.0.0.0/0"), ipaddress.ip_network("::/0")]


def parse_ip(ip: str) -> Optional[_IP]:
    """Parse an address, giving IPv4-mapped IPv6 addresses in IPv4 form; None if invalid."""
    if not ip or "%" in ip:
        return None
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return None
    mapped = getattr(parsed, "ipv4_mapped", None)
    return mapped if mapped is not None else parsed


def _clean_path(p: str) -> str:
    if not p:
        return "/"
    cleaned = posixpath.normpath("/" + p)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    if p.endswith("/") and cleaned != "/":
        cleaned += "/"
    return cleaned


def _join_paths(absolute: str, relative: str) -> str:
    if relative == "":
        return absolute
    final = posixpath.join(absolute, relative.lstrip("/")) if absolute else relative
    final = _clean_path(final)
    if relative.endswith("/") and not final.endswith("/"):
        final += "/"
    return final


@dataclass
class RouteInfo:
    """A registered route: method, path and handler."""

    method: str
    path: str
    handler: str
    handler_func: Optional[Callable] = field(default=None, repr=False)


class _Route:
    def __init__(self, path: str, handlers: HandlersChain):
        self.path = path
        self.handlers = handlers
        self.pieces: list[tuple[str, str]] = []
        pos = 0
        for m in _WILDCARD.finditer(path):
            static = path[pos : m.start()]
            kind, name = m.group(1), m.group(2)
            if not name:
                raise ValueError(f"wildcards must be named with a non-empty name in path '{path}'")
            if kind == "*":
                if m.end() != len(path):
                    raise ValueError(
                        f"catch-all routes are only allowed at the end of the path in path '{path}'"
                    )
                if not static.endswith("/"):
                    raise ValueError(f"no / before catch-all in path '{path}'")
                static = static[:-1]
            self.pieces += [("", static), (kind, name)]
            pos = m.end()
        self.pieces.append(("", path[pos:]))
        regex = "".join(
            re.escape(text) if kind == "" else ("([^/]+)" if kind == ":" else "(/.*)")
            for kind, text in self.pieces
        )
        self.pattern = "^" + regex + "$"
        self.rank = (
            sum(kind == "*" for kind, _ in self.pieces),
            sum(kind == ":" for kind, _ in self.pieces),
        )
        self.names = [text for kind, text in self.pieces if kind]

    def match(self, path: str, flags: int = 0) -> Optional[re.Match]:
        return re.match(self.pattern, path, flags)

    def rebuild(self, m: re.Match) -> str:
        values = iter(m.groups())
        return "".join(text if kind == "" else next(values) for kind, text in self.pieces)


class _Tree:
    def __init__(self, method: str):
        self.method = method
        self.routes: list[_Route] = []

    def add(self, path: str, handlers: HandlersChain) -> None:
        if any(route.path == path for route in self.routes):
            raise ValueError(f"handlers are already registered for path '{path}'")
        self.routes.append(_Route(path, handlers))

    def _ordered(self) -> list[_Route]:
        return sorted(self.routes, key=lambda route: route.rank)

    def find(self, path: str, unescape: bool) -> Optional[tuple[_Route, Params]]:
        for route in self._ordered():
            m = route.match(path)
            if m:
                values = [unquote(v) if unescape else v for v in m.groups()]
                return route, Params(Param(k, v) for k, v in zip(route.names, values))
        return None

    def trailing_slash_redirect(self, path: str) -> bool:
        other = path[:-1] if path.endswith("/") else path + "/"
        return bool(other) and any(route.match(other) for route in self.routes)

    def find_case_insensitive(self, path: str, trailing_slash: bool) -> Optional[str]:
        candidates = [path]
        if trailing_slash:
            candidates.append(path[:-1] if path.endswith("/") else path + "/")
        for candidate in candidates:
            for route in self._ordered():
                m = route.match(candidate, re.IGNORECASE)
                if m:
                    return route.rebuild(m)
        return None


def _logger(c: Context) -> None:
    c.next()
    request = c.request
    _log.info(
        "%3d | %-7s %s",
        c.writer.status,
        request.method if request else "",
        request.path if request else "",
    )


def _recovery(c: Context) -> None:
    try:
        c.next()
    except Exception:
        _log.exception("panic recovered")
        if not c.writer.written:
            c.abort_with_status(500)
        else:
            c.abort()


def _resolve_address(args: Sequence[str]) -> str:
    if not args:
        port = os.environ.get("PORT")
        if port:
            debug_print('Environment variable PORT="%s"', port)
            return ":" + port
        debug_print("Environment variable PORT is undefined. Using port :8080 by default")
        return ":8080"
    if len(args) == 1:
        return args[0]
    raise ValueError("too many parameters")


class Engine:
    """The framework instance: routes, middleware and settings."""

    def __init__(self) -> None:
        self.handlers = HandlersChain()
        self.base_path = "/"
        self.redirect_trailing_slash = True
        self.redirect_fixed_path = False
        self.handle_method_not_allowed = False
        self.forwarded_by_client_ip = True
        self.app_engine = False
        self.use_raw_path = False
        self.unescape_path_values = True
        self.remove_extra_slash = False
        self.remote_ip_headers: Optional[list[str]] = ["X-Forwarded-For", "X-Real-IP"]
        self.trusted_platform = DEFAULT_PLATFORM
        self.max_multipart_memory = DEFAULT_MULTIPART_MEMORY
        self.left_delim, self.right_delim = "{{", "}}"
        self.secure_json_prefix = DEFAULT_SECURE_JSON_PREFIX
        self.all_no_route = HandlersChain()
        self.all_no_method = HandlersChain()
        self.no_route_handlers = HandlersChain()
        self.no_method_handlers = HandlersChain()
        self.trees: dict[str, _Tree] = {}
        self.trusted_proxies: Optional[list[str]] = ["0.0.0.0/0"]
        self.trusted_cidrs: Optional[list[_Net]] = _default_trusted_cidrs()

    def allocate_context(self) -> Context:
        """Return a fresh context bound to this engine."""
        return Context(engine=self)

    def delims(self, left: str, right: str) -> "Engine":
        self.left_delim, self.right_delim = left, right
        return self

    def set_secure_json_prefix(self, prefix: str) -> "Engine":
        self.secure_json_prefix = prefix
        return self

    def _combine(self, handlers: Sequence[Callable]) -> HandlersChain:
        size = len(self.handlers) + len(handlers)
        if size >= ABORT_INDEX:
            raise ValueError("too many handlers")
        return HandlersChain([*self.handlers, *handlers])

    def _rebuild(self) -> None:
        self.all_no_route = self._combine(self.no_route_handlers)
        self.all_no_method = self._combine(self.no_method_handlers)

    def no_route(self, *args: Callable) -> None:
        """Set the handlers for unmatched routes."""
        self.no_route_handlers = HandlersChain(args)
        self._rebuild()

    def no_method(self, *args: Callable) -> None:
        """Set the handlers for disallowed methods."""
        self.no_method_handlers = HandlersChain(args)
        self._rebuild()

    def use(self, *args: Callable) -> "Engine":
        """Attach global middleware."""
        self.handlers.extend(args)
        self._rebuild()
        return self

    def add_route(self, method: str, path: str, handlers: Sequence[Callable]) -> None:
        """Register ``handlers`` for an absolute path."""
        if not path.startswith("/"):
            raise ValueError("path must begin with '/'")
        if not method:
            raise ValueError("HTTP method can not be empty")
        if not handlers:
            raise ValueError("there must be at least one handler")
        debug_print_route(method, path, list(handlers))
        tree = self.trees.get(method)
        if tree is None:
            tree = self.trees[method] = _Tree(method)
        tree.add(path, HandlersChain(handlers))

    def handle(self, http_method: str, relative_path: str, *args: Callable) -> "Engine":
        """Register handlers for a method and a path relative to the engine."""
        if not _METHOD.match(http_method):
            raise ValueError(f"http method {http_method} is not valid")
        absolute = _join_paths(self.base_path, relative_path)
        self.add_route(http_method, absolute, self._combine(args))
        return self

    def get(self, relative_path: str, *args: Callable) -> "Engine":
        return self.handle("GET", relative_path, *args)

    def post(self, relative_path: str, *args: Callable) -> "Engine":
        return self.handle("POST", relative_path, *args)

    def routes(self) -> list[RouteInfo]:
        """List every registered route."""
        return [
            RouteInfo(tree.method, route.path, name_of_function(route.handlers.last()),
                      route.handlers.last())
            for tree in self.trees.values()
            for route in tree.routes
        ]

    # Trusted proxies

    def _prepare_trusted_cidrs(self) -> Optional[list[_Net]]:
        if self.trusted_proxies is None:
            return None
        cidrs: list[_Net] = []
        for proxy in self.trusted_proxies:
            if "/" not in proxy:
                ip = parse_ip(proxy)
                if ip is None:
                    raise ValueError(f"invalid IP address: {proxy}")
                proxy = f"{ip}/{32 if ip.version == 4 else 128}"
            cidrs.append(ipaddress.ip_network(proxy, strict=False))
        return cidrs

    def set_trusted_proxies(self, trusted_proxies: Optional[list[str]]) -> None:
        """Set the addresses or networks whose forwarding headers are trusted."""
        self.trusted_proxies = trusted_proxies
        self.trusted_cidrs = None
        self.trusted_cidrs = self._prepare_trusted_cidrs()

    def is_trusted_proxy(self, ip: Union[str, _IP, None]) -> bool:
        if isinstance(ip, str):
            ip = parse_ip(ip)
        if ip is None or self.trusted_cidrs is None:
            return False
        mapped = getattr(ip, "ipv4_mapped", None)
        if mapped is not None:
            ip = mapped
        return any(ip.version == net.version and ip in net for net in self.trusted_cidrs)

    def is_unsafe_trusted_proxies(self) -> bool:
        return self.is_trusted_proxy("0.0.0.0") or self.is_trusted_proxy("::")

    def validate_header(self, header: str) -> tuple[str, bool]:
        """Return the client address from a forwarding header and whether it was found."""
        if not header:
            return "", False
        items = header.split(",")
        for i in range(len(items) - 1, -1, -1):
            text = items[i].strip()
            ip = parse_ip(text)
            if ip is None:
                break
            if i == 0 or not self.is_trusted_proxy(ip):
                return text, True
        return "", False

    # Serving

    def serve(self, request: Request) -> ResponseWriter:
        """Handle a request and return the written response."""
        c = self.allocate_context()
        c.request = request
        self._handle_http_request(c)
        return c.writer

    def handle_context(self, c: Context) -> None:
        """Dispatch a context again after its request path was rewritten."""
        old_index = c.index
        c.reset()
        self._handle_http_request(c)
        c.index = old_index

    def _handle_http_request(self, c: Context) -> None:
        request = c.request
        method = request.method
        path = request.path
        unescape = False
        if self.use_raw_path and request.raw_path:
            path = request.raw_path
            unescape = self.unescape_path_values
        if self.remove_extra_slash:
            path = _clean_path(path)

        tree = self.trees.get(method)
        if tree is not None:
            found = tree.find(path, unescape)
            if found is not None:
                route, params = found
                c.params = params
                c.handlers = route.handlers
                c.matched_path = route.path
                c.next()
                c.writer.write_header_now()
                return
            if method != "CONNECT" and path != "/":
                if self.redirect_trailing_slash and tree.trailing_slash_redirect(path):
                    self._redirect_trailing_slash(c)
                    return
                if self.redirect_fixed_path:
                    fixed = tree.find_case_insensitive(
                        _clean_path(request.path), self.redirect_fixed_path
                    )
                    if fixed is not None:
                        request.path = fixed
                        self._redirect_request(c)
                        return

        if self.handle_method_not_allowed:
            for other in self.trees.values():
                if other.method != method and other.find(path, unescape) is not None:
                    c.handlers = self.all_no_method
                    self._serve_error(c, 405, DEFAULT_405_BODY)
                    return
        c.handlers = self.all_no_route
        self._serve_error(c, 404, DEFAULT_404_BODY)

    @staticmethod
    def _serve_error(c: Context, code: int, message: bytes) -> None:
        c.writer.status = code
        c.next()
        if c.writer.written:
            return
        if c.writer.status == code:
            c.writer.headers["Content-Type"] = ["text/plain"]
            c.writer.write(message)
            return
        c.writer.write_header_now()

    def _redirect_trailing_slash(self, c: Context) -> None:
        request = c.request
        p = request.path
        prefix = posixpath.normpath(request.headers.get("X-Forwarded-Prefix"))
        if prefix != ".":
            p = prefix + "/" + request.path
        request.path = p + "/"
        if len(p) > 1 and p.endswith("/"):
            request.path = p[:-1]
        self._redirect_request(c)

    @staticmethod
    def _redirect_request(c: Context) -> None:
        request = c.request
        target = request.url
        code = 301 if request.method == "GET" else 307
        debug_print("redirecting request %d: %s --> %s", code, request.path, target)
        writer = c.writer
        writer.headers.set("Location", target)
        if request.method == "GET":
            writer.headers.set("Content-Type", "text/html; charset=utf-8")
        writer.write_header(code)
        if request.method == "GET":
            writer.write(f'<a href="{html.escape(target)}">Moved Permanently</a>.\n\n')
        writer.write_header_now()

    def _request_handler(self) -> type:
        engine = self

        class _Handler(BaseHTTPRequestHandler):
            def __getattr__(self, name: str) -> Any:
                if name.startswith("do_"):
                    return self._dispatch
                raise AttributeError(name)

            def _dispatch(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length > 0 else b""
                host, port = self.client_address[:2]
                remote = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
                request = Request(self.command, self.path, body,
                                  headers=list(self.headers.items()), remote_addr=remote)
                writer = engine.serve(request)
                payload = writer.body
                self.send_response(writer.status)
                for key, values in writer.headers.items():
                    for item in values:
                        self.send_header(key, item)
                if "Content-Length" not in writer.headers:
                    self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                if self.command != "HEAD":
                    self.wfile.write(payload)

            def log_message(self, format: str, *args: Any) -> None:
                _log.debug(format, *args)

        return _Handler

    def run(self, *args: str) -> None:
        """Listen on the given address (default ``:8080``) and serve until stopped."""
        try:
            if self.is_unsafe_trusted_proxies():
                debug_print(_UNSAFE_PROXIES_WARNING)
            address = _resolve_address(args)
            debug_print("Listening and serving HTTP on %s\n", address)
            host, _, port = address.rpartition(":")
            with ThreadingHTTPServer((host or "0.0.0.0", int(port)),
                                     self._request_handler()) as server:
                server.serve_forever()
        except Exception as err:
            debug_print_error(err)
            raise


def new() -> Engine:
    """Return a blank engine without middleware."""
    debug_print_warning_new()
    return Engine()


def default() -> Engine:
    """Return an engine with logging and recovery middleware attached."""
    debug_print_warning_default()
    engine = new()
    engine.use(_logger, _recovery)
    return engine