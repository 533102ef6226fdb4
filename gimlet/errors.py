"""Errors collected while a request is handled, and lists of them."""

from __future__ import annotations

import dataclasses
import enum
import json as _json
from collections.abc import Mapping
from typing import Any


class ErrorType(enum.IntFlag):
    """Bit flags that classify an :class:`Error`."""

    PRIVATE = 1 << 0
    PUBLIC = 1 << 1
    NU = 2
    RENDER = 1 << 62
    BIND = 1 << 63
    ANY = (1 << 64) - 1


def _is_struct(value: Any) -> bool:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return True
    return isinstance(value, tuple) and hasattr(value, "_fields")


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, tuple) and hasattr(value, "_fields"):
        return value._asdict()
    return str(value)


def dumps(value: Any) -> str:
    """Encode ``value`` as compact JSON with sorted keys and HTML-safe escapes."""
    text = _json.dumps(
        value,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
        default=_json_default,
    )
    for raw, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(raw, escaped)
    return text


def format_value(value: Any) -> str:
    """Render a value in the plain style used by error listings."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda item: str(item[0]))
        inner = " ".join(f"{format_value(k)}:{format_value(v)}" for k, v in items)
        return f"map[{inner}]"
    if isinstance(value, (list, tuple)) and not hasattr(value, "_fields"):
        return "[" + " ".join(format_value(v) for v in value) + "]"
    return str(value)


class Error(Exception):
    """An error attached to a request context, with a type and metadata."""

    def __init__(self, err: Any, type: ErrorType = ErrorType.PRIVATE, meta: Any = None):
        super().__init__(err)
        self.err = err
        self.type = type
        self.meta = meta
        if isinstance(err, BaseException):
            self.__cause__ = err

    def __str__(self) -> str:
        return str(self.err)

    def set_type(self, flags: ErrorType) -> "Error":
        """Set the error's type and return the error."""
        self.type = flags
        return self

    def set_meta(self, data: Any) -> "Error":
        """Set the error's metadata and return the error."""
        self.meta = data
        return self

    def json(self) -> Any:
        """Return a JSON-ready view of the error."""
        data: dict[str, Any] = {}
        meta = self.meta
        if meta is not None:
            if _is_struct(meta):
                return meta
            if isinstance(meta, Mapping):
                data.update((str(key), value) for key, value in meta.items())
            else:
                data["meta"] = meta
        data.setdefault("error", str(self))
        return data

    def marshal_json(self) -> str:
        """Encode :meth:`json` as a JSON string."""
        return dumps(self.json())

    def is_type(self, flags: ErrorType) -> bool:
        """Tell whether the error has any of the given type bits."""
        return (int(self.type) & int(flags)) > 0


class ErrorMsgs(list):
    """A list of :class:`Error` values."""

    def by_type(self, typ: ErrorType) -> "ErrorMsgs":
        """Return the errors whose type matches ``typ``."""
        if not self:
            return ErrorMsgs()
        if typ == ErrorType.ANY:
            return self
        return ErrorMsgs(msg for msg in self if msg.is_type(typ))

    def last(self) -> Error | None:
        """Return the last error, or None when the list is empty."""
        return self[-1] if self else None

    def errors(self) -> list[str]:
        """Return the messages of all errors."""
        return [str(msg) for msg in self]

    def json(self) -> Any:
        """Return None, a single error's JSON, or a list of them."""
        if not self:
            return None
        if len(self) == 1:
            return self[0].json()
        return [msg.json() for msg in self]

    def marshal_json(self) -> str:
        """Encode :meth:`json` as a JSON string."""
        return dumps(self.json())

    def __str__(self) -> str:
        lines = []
        for number, msg in enumerate(self, start=1):
            lines.append(f"Error #{number:02d}: {msg.err}\n")
            if msg.meta is not None:
                lines.append(f"     Meta: {format_value(msg.meta)}\n")
        return "".join(lines)