"""Request input helpers: path parameters, query, form, files, headers and client address."""

from __future__ import annotations

import ipaddress
import logging
import re
import shutil
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import unquote_plus

from .debug import debug_print
from .http import MultipartForm, NotMultipartError, Request, UploadedFile

MIME_OCTET_STREAM = "application/octet-stream"
DEFAULT_MULTIPART_MEMORY = 32 << 20

_PAYLOAD_METHODS = ("POST", "PATCH", "PUT")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

_log = logging.getLogger(__name__)

_IP = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class MissingFileError(LookupError):
    """No file was uploaded under the requested form key."""

    def __init__(self, name: str) -> None:
        super().__init__(f"http: no such file: {name}")
        self.name = name


@dataclass
class Param:
    """A single URL parameter: a key and a value."""

    key: str
    value: str


class Params(list):
    """An ordered list of :class:`Param` values."""

    def get(self, name: str) -> tuple[str, bool]:
        """Return the value of the first parameter named ``name`` and whether it exists."""
        for param in self:
            if param.key == name:
                return param.value, True
        return "", False

    def by_name(self, name: str) -> str:
        """Return the value of the first parameter named ``name``, or ""."""
        return self.get(name)[0]


def _parse_ip(text: str) -> Optional[_IP]:
    if not text or "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _format_ip(ip: _IP) -> str:
    mapped = getattr(ip, "ipv4_mapped", None)
    return str(mapped if mapped is not None else ip)


def _split_host(addr: str) -> str:
    """Return the host part of ``host:port`` or ``[host]:port``."""
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or addr[end + 1 : end + 2] != ":":
            raise ValueError(f"address {addr}: missing port in address")
        rest = addr[end + 2 :]
        if "[" in rest or "]" in rest or ":" in rest:
            raise ValueError(f"address {addr}: too many colons in address")
        return addr[1:end]
    host, sep, _ = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {addr}: too many colons in address")
    if "[" in host or "]" in host:
        raise ValueError(f"address {addr}: unexpected bracket")
    return host


def _filter_flags(content: str) -> str:
    return re.split(r"[ ;]", content, maxsplit=1)[0]


def _bracket_map(values: dict[str, list[str]], key: str) -> tuple[dict[str, str], bool]:
    dicts: dict[str, str] = {}
    exist = False
    for name, items in values.items():
        i = name.find("[")
        if i >= 1 and name[:i] == key:
            rest = name[i + 1 :]
            j = rest.find("]")
            if j >= 1:
                exist = True
                dicts[rest[:j]] = items[0]
    return dicts, exist


class RequestInput:
    """Read access to everything a request carries.

    ``engine`` is any object offering the engine settings used here:
    ``max_multipart_memory``, ``trusted_platform``, ``app_engine``,
    ``forwarded_by_client_ip``, ``remote_ip_headers``, ``is_trusted_proxy(ip)``
    and ``validate_header(header)``.
    """

    def __init__(self, request: Optional[Request] = None, engine: Any = None):
        self.request = request
        self.engine = engine
        self.params = Params()
        self._query_cache: Optional[dict[str, list[str]]] = None
        self._form_cache: Optional[dict[str, list[str]]] = None

    def _reset_inputs(self) -> None:
        self.params = Params()
        self._query_cache = None
        self._form_cache = None

    @property
    def _max_memory(self) -> int:
        return getattr(self.engine, "max_multipart_memory", DEFAULT_MULTIPART_MEMORY)

    def _request_header(self, key: str) -> str:
        if self.request is None:
            return ""
        return self.request.headers.get(key)

    # Path parameters

    def param(self, key: str) -> str:
        """Return the value of the URL parameter ``key``."""
        return self.params.by_name(key)

    def add_param(self, key: str, value: str) -> None:
        """Append a URL parameter."""
        self.params.append(Param(key, value))

    # Query string

    def _queries(self) -> dict[str, list[str]]:
        if self._query_cache is None:
            self._query_cache = self.request.query_params() if self.request is not None else {}
        return self._query_cache

    def query(self, key: str) -> str:
        """Return the first query value of ``key``, or ""."""
        return self.get_query(key)[0]

    def default_query(self, key: str, default_value: str) -> str:
        """Return the first query value of ``key``, or ``default_value`` when absent."""
        value, found = self.get_query(key)
        return value if found else default_value

    def get_query(self, key: str) -> tuple[str, bool]:
        """Return the first query value of ``key`` and whether it exists."""
        values, found = self.get_query_array(key)
        return (values[0], True) if found else ("", False)

    def query_array(self, key: str) -> list[str]:
        """Return all query values of ``key``."""
        return self.get_query_array(key)[0]

    def get_query_array(self, key: str) -> tuple[list[str], bool]:
        """Return all query values of ``key`` and whether there is at least one."""
        values = self._queries().get(key)
        return (values, True) if values is not None else ([], False)

    def query_map(self, key: str) -> dict[str, str]:
        """Return the ``key[name]=value`` query entries as a mapping."""
        return self.get_query_map(key)[0]

    def get_query_map(self, key: str) -> tuple[dict[str, str], bool]:
        """Return the ``key[name]=value`` query entries and whether any exists."""
        return _bracket_map(self._queries(), key)

    # Form body

    def _forms(self) -> dict[str, list[str]]:
        if self._form_cache is None:
            request = self.request
            if request is None:
                self._form_cache = {}
                return self._form_cache
            try:
                request.parse_multipart_form(self._max_memory)
            except NotMultipartError:
                pass
            except ValueError as err:
                debug_print("error on parse multipart form array: %s", err)
            self._form_cache = request.post_form if request.post_form is not None else {}
        return self._form_cache

    def post_form(self, key: str) -> str:
        """Return the first form value of ``key``, or ""."""
        return self.get_post_form(key)[0]

    def default_post_form(self, key: str, default_value: str) -> str:
        """Return the first form value of ``key``, or ``default_value`` when absent."""
        value, found = self.get_post_form(key)
        return value if found else default_value

    def get_post_form(self, key: str) -> tuple[str, bool]:
        """Return the first form value of ``key`` and whether it exists."""
        values, found = self.get_post_form_array(key)
        return (values[0], True) if found else ("", False)

    def post_form_array(self, key: str) -> list[str]:
        """Return all form values of ``key``."""
        return self.get_post_form_array(key)[0]

    def get_post_form_array(self, key: str) -> tuple[list[str], bool]:
        """Return all form values of ``key`` and whether there is at least one."""
        values = self._forms().get(key)
        return (values, True) if values is not None else ([], False)

    def post_form_map(self, key: str) -> dict[str, str]:
        """Return the ``key[name]=value`` form entries as a mapping."""
        return self.get_post_form_map(key)[0]

    def get_post_form_map(self, key: str) -> tuple[dict[str, str], bool]:
        """Return the ``key[name]=value`` form entries and whether any exists."""
        return _bracket_map(self._forms(), key)

    # Files

    def form_file(self, name: str) -> UploadedFile:
        """Return the first file uploaded under ``name``."""
        request = self.request
        if request.multipart_form is None:
            request.parse_multipart_form(self._max_memory)
        files = request.multipart_form.file.get(name) if request.multipart_form else None
        if not files:
            raise MissingFileError(name)
        return files[0]

    def multipart_form(self) -> MultipartForm:
        """Return the parsed multipart form, including uploaded files."""
        return self.request.parse_multipart_form(self._max_memory)

    def save_uploaded_file(self, file: UploadedFile, dst: str) -> None:
        """Write an uploaded file to ``dst``."""
        with file.open() as src, open(dst, "wb") as out:
            shutil.copyfileobj(src, out)

    def save_octet_stream_file(self, dst: str, mode: str = "wb") -> None:
        """Copy an ``application/octet-stream`` request body into ``dst``."""
        if self.get_header("Content-Type") != MIME_OCTET_STREAM:
            raise ValueError(f"octet stream required {MIME_OCTET_STREAM} data format")
        if self.request.method not in _PAYLOAD_METHODS:
            raise ValueError("invalid http request method, only support POST/PATCH/PUT")
        with open(dst, mode) as out:
            shutil.copyfileobj(self.request.body, out)

    # Addresses and headers

    def client_ip(self) -> str:
        """Return the best guess of the real client address."""
        engine = self.engine
        platform = getattr(engine, "trusted_platform", "")
        if platform:
            addr = self._request_header(platform)
            if addr:
                return addr

        if getattr(engine, "app_engine", False):
            _log.warning(
                "The app_engine flag is going to be deprecated. "
                "Use trusted_platform with the App Engine header instead."
            )
            addr = self._request_header("X-Appengine-Remote-Addr")
            if addr:
                return addr

        remote = _parse_ip(self.remote_ip())
        if remote is None:
            return ""
        trusted = engine is not None and engine.is_trusted_proxy(remote)
        headers = getattr(engine, "remote_ip_headers", None)
        if trusted and getattr(engine, "forwarded_by_client_ip", False) and headers is not None:
            for header_name in headers:
                ip, valid = engine.validate_header(self._request_header(header_name))
                if valid:
                    return ip
        return _format_ip(remote)

    def remote_ip(self) -> str:
        """Return the host part of the request's remote address, or ""."""
        if self.request is None:
            return ""
        try:
            return _split_host(self.request.remote_addr.strip())
        except ValueError:
            return ""

    def content_type(self) -> str:
        """Return the request's Content-Type without parameters."""
        return _filter_flags(self._request_header("Content-Type"))

    def is_websocket(self) -> bool:
        """Tell whether the request asks for a websocket upgrade."""
        return (
            "upgrade" in self._request_header("Connection").lower()
            and self._request_header("Upgrade").casefold() == "websocket"
        )

    def get_header(self, key: str) -> str:
        """Return the first value of a request header, or ""."""
        return self._request_header(key)

    def get_raw_data(self) -> bytes:
        """Read the rest of the request body."""
        return self.request.read_body()

    def cookie(self, name: str) -> str:
        """Return the unescaped value of the named request cookie."""
        raw = self.request.cookie(name)
        if _BAD_ESCAPE.search(raw):
            return ""
        return unquote_plus(raw)