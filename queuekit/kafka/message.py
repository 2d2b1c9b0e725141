"""Kafka messages, their headers and headers carried along the current context."""

from __future__ import annotations

import contextlib
import contextvars
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field


@dataclass
class Header:
    """One key/value header of a message."""

    key: str
    value: bytes


@dataclass
class Message:
    """A message written to or read from a topic."""

    key: bytes | None = None
    value: bytes = b""
    headers: list[Header] = field(default_factory=list)
    topic: str = ""
    partition: int = 0
    offset: int = 0


class Headers:
    """A string view over a mutable list of :class:`Header`."""

    def __init__(self, headers: list[Header]) -> None:
        self._headers = headers

    def get(self, key: str) -> str:
        """The value of the first header named ``key``, or an empty string."""
        for header in self._headers:
            if header.key == key:
                return header.value.decode("utf-8", "replace")
        return ""

    def set(self, key: str, value: str) -> None:
        """Replace the value of header ``key``, appending it if it is absent."""
        encoded = value.encode("utf-8")
        for header in self._headers:
            if header.key == key:
                header.value = encoded
                return
        self._headers.append(Header(key, encoded))

    def keys(self) -> list[str]:
        return [header.key for header in self._headers]


_current_headers: contextvars.ContextVar[tuple[Header, ...] | None] = contextvars.ContextVar(
    "kafka_headers", default=None
)


@contextlib.contextmanager
def headers_context(headers: Iterable[Header]) -> Iterator[None]:
    """Make ``headers`` the headers of the current context while the block runs."""
    token = _current_headers.set(tuple(headers))
    try:
        yield
    finally:
        _current_headers.reset(token)


def headers_from_context() -> list[Header] | None:
    """The headers set by the innermost :func:`headers_context`, or None."""
    headers = _current_headers.get()
    return None if headers is None else list(headers)