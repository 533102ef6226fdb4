"""Minimal HTTP request and response objects used by request contexts."""

from __future__ import annotations

import io
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from email import policy
from email.message import Message
from email.parser import BytesParser
from typing import Any, BinaryIO, Optional, Union
from urllib.parse import parse_qsl, quote, unquote, urlsplit, urlunsplit

from .debug import debug_print

_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)
_PATH_SAFE = "/:@!$&'()*+,;=-._~"
_MAX_FORM_SIZE = 10 << 20
_FORM_METHODS = ("POST", "PUT", "PATCH")


class MultipartError(ValueError):
    """A multipart body could not be parsed."""


class NotMultipartError(MultipartError):
    """The request body is not multipart/form-data."""

    def __init__(self) -> None:
        super().__init__("request Content-Type isn't multipart/form-data")


class NoCookieError(LookupError):
    """The named cookie is not in the request."""

    def __init__(self, name: str) -> None:
        super().__init__(f"named cookie not present: {name}")
        self.name = name


def canonical_header_key(key: str) -> str:
    """Return the canonical form of a header name, e.g. ``Content-Type``."""
    if not key or any(ch not in _TOKEN_CHARS for ch in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _media_type(value: str) -> str:
    return value.split(";", 1)[0].strip().lower()


class Headers:
    """Case-insensitive, multi-valued HTTP headers."""

    def __init__(self, initial: Union[Mapping, Iterable, None] = None):
        self._values: dict[str, list[str]] = {}
        if initial is None:
            return
        items = initial.items() if isinstance(initial, Mapping) else initial
        for key, value in items:
            if isinstance(value, (list, tuple)):
                for item in value:
                    self.add(key, str(item))
            else:
                self.add(key, str(value))

    def get(self, key: str) -> str:
        """Return the first value of ``key`` or an empty string."""
        values = self._values.get(canonical_header_key(key))
        return values[0] if values else ""

    def set(self, key: str, value: str) -> None:
        self._values[canonical_header_key(key)] = [value]

    def add(self, key: str, value: str) -> None:
        self._values.setdefault(canonical_header_key(key), []).append(value)

    def delete(self, key: str) -> None:
        self._values.pop(canonical_header_key(key), None)

    def values(self, key: str) -> list[str]:
        """Return all values of ``key``."""
        return list(self._values.get(canonical_header_key(key), []))

    def items(self) -> list[tuple[str, list[str]]]:
        return [(key, list(values)) for key, values in self._values.items()]

    def __getitem__(self, key: str) -> list[str]:
        return self._values[canonical_header_key(key)]

    def __setitem__(self, key: str, values: list[str]) -> None:
        self._values[canonical_header_key(key)] = list(values)

    def __delitem__(self, key: str) -> None:
        del self._values[canonical_header_key(key)]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and canonical_header_key(key) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Headers({self._values!r})"


@dataclass
class UploadedFile:
    """A file part of a multipart form."""

    filename: str
    headers: Headers = field(default_factory=Headers)
    content: Optional[bytes] = None

    @property
    def size(self) -> int:
        return len(self.content or b"")

    def open(self) -> BinaryIO:
        """Return a readable stream of the file's content."""
        if self.content is None:
            raise FileNotFoundError(f"no content for uploaded file {self.filename!r}")
        return io.BytesIO(self.content)


@dataclass
class MultipartForm:
    """Values and files of a parsed multipart form."""

    value: dict[str, list[str]] = field(default_factory=dict)
    file: dict[str, list[UploadedFile]] = field(default_factory=dict)


def _merge(target: dict[str, list[str]], source: Mapping[str, list[str]]) -> None:
    for key, values in source.items():
        target.setdefault(key, []).extend(values)


class Request:
    """An incoming HTTP request."""

    def __init__(
        self,
        method: str = "GET",
        url: str = "/",
        body: Union[bytes, str, BinaryIO, None] = b"",
        headers: Union[Headers, Mapping, Iterable, None] = None,
        remote_addr: str = "",
        context_values: Optional[Mapping[Any, Any]] = None,
    ):
        self.method = method
        parts = urlsplit(url)
        self.scheme = parts.scheme
        self.host = parts.netloc
        self.path = unquote(parts.path)
        self.raw_path = (
            parts.path if parts.path and quote(self.path, safe=_PATH_SAFE) != parts.path else ""
        )
        self.raw_query = parts.query
        self.fragment = parts.fragment
        self.headers = headers if isinstance(headers, Headers) else Headers(headers)
        if body is None:
            body = b""
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.body: BinaryIO = io.BytesIO(body) if isinstance(body, (bytes, bytearray)) else body
        self.remote_addr = remote_addr
        self.context_values: dict[Any, Any] = dict(context_values or {})
        self.post_form: Optional[dict[str, list[str]]] = None
        self.form: Optional[dict[str, list[str]]] = None
        self.multipart_form: Optional[MultipartForm] = None

    @property
    def url(self) -> str:
        """The request target rebuilt from its parts."""
        if self.raw_path and unquote(self.raw_path) == self.path:
            path = self.raw_path
        else:
            path = quote(self.path, safe=_PATH_SAFE)
        return urlunsplit((self.scheme, self.host, path, self.raw_query, self.fragment))

    def query_params(self) -> dict[str, list[str]]:
        """Parse the query string into lists of values per key."""
        values: dict[str, list[str]] = {}
        for key, value in parse_qsl(self.raw_query, keep_blank_values=True):
            values.setdefault(key, []).append(value)
        return values

    def read_body(self) -> bytes:
        """Read what is left of the body."""
        return self.body.read()

    def parse_form(self) -> dict[str, list[str]]:
        """Parse a url-encoded body and combine it with the query values."""
        if self.post_form is None:
            self.post_form = {}
            content_type = _media_type(self.headers.get("Content-Type"))
            if self.method in _FORM_METHODS and content_type == "application/x-www-form-urlencoded":
                raw = self.body.read(_MAX_FORM_SIZE + 1)
                if len(raw) > _MAX_FORM_SIZE:
                    raise ValueError("POST too large")
                text = raw.decode("utf-8", "replace")
                for key, value in parse_qsl(text, keep_blank_values=True):
                    self.post_form.setdefault(key, []).append(value)
        if self.form is None:
            self.form = {key: list(values) for key, values in self.post_form.items()}
            _merge(self.form, self.query_params())
        return self.post_form

    def parse_multipart_form(self, max_memory: int) -> MultipartForm:
        """Parse a multipart/form-data body.

        Non-file values may take at most ``max_memory`` plus 10 MiB.
        """
        if self.form is None:
            self.parse_form()
        if self.multipart_form is not None:
            return self.multipart_form
        content_type = self.headers.get("Content-Type")
        if _media_type(content_type) != "multipart/form-data":
            raise NotMultipartError()
        header = Message()
        header["Content-Type"] = content_type
        if not header.get_param("boundary"):
            raise MultipartError("no multipart boundary param in Content-Type")

        raw = self.read_body()
        message = BytesParser(policy=policy.HTTP).parsebytes(
            b"Content-Type: " + content_type.encode("latin-1") + b"\r\n\r\n" + raw
        )
        form = MultipartForm()
        budget = max_memory + _MAX_FORM_SIZE
        for part in message.iter_parts():
            name = part.get_param("name", header="content-disposition")
            if not name:
                continue
            name = str(name)
            filename = part.get_filename()
            payload = part.get_payload(decode=True) or b""
            if not filename:
                budget -= len(payload)
                if budget < 0:
                    raise MultipartError("multipart: message too large")
                form.value.setdefault(name, []).append(payload.decode("utf-8", "replace"))
            else:
                headers = Headers((key, str(value)) for key, value in part.items())
                form.file.setdefault(name, []).append(
                    UploadedFile(filename=filename, headers=headers, content=payload)
                )
        assert self.form is not None and self.post_form is not None
        _merge(self.form, form.value)
        _merge(self.post_form, form.value)
        self.multipart_form = form
        return form

    def cookie(self, name: str) -> str:
        """Return the raw value of the named cookie."""
        for line in self.headers.values("Cookie"):
            for piece in line.split(";"):
                key, sep, value = piece.strip().partition("=")
                if sep and key == name:
                    if len(value) > 1 and value[0] == value[-1] == '"':
                        value = value[1:-1]
                    return value
        raise NoCookieError(name)


class ResponseWriter:
    """Collects the status, headers and body of a response."""

    def __init__(self) -> None:
        self.headers = Headers()
        self.status = 200
        self.size = -1
        self.client_gone = False
        self.flushes = 0
        self._body = bytearray()

    @property
    def written(self) -> bool:
        """Whether the headers were committed."""
        return self.size != -1

    @property
    def body(self) -> bytes:
        return bytes(self._body)

    def write_header(self, code: int) -> None:
        """Set the status code unless the headers were already committed."""
        if code > 0 and self.status != code:
            if self.written:
                debug_print(
                    "[WARNING] Headers were already written. Wanted to override status code %d with %d",
                    self.status,
                    code,
                )
                return
            self.status = code

    def write_header_now(self) -> None:
        """Commit the headers and status."""
        if not self.written:
            self.size = 0

    def write(self, data: Union[bytes, str]) -> int:
        """Append data to the body and return its length."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.write_header_now()
        self._body.extend(data)
        self.size += len(data)
        return len(data)

    def flush(self) -> None:
        self.write_header_now()
        self.flushes += 1

    def close_client(self) -> None:
        """Mark the client as disconnected."""
        self.client_gone = True