"""Core consumer and pusher interfaces shared by every queue backend."""

from __future__ import annotations

import abc
from collections.abc import Callable
from typing import Any


class NotSupportedError(Exception):
    """Raised when an option is given to a backend that does not support it."""

    def __init__(self, message: str = "not support") -> None:
        super().__init__(message)


class Consumer(abc.ABC):
    """Something that handles a message taken from a queue."""

    @abc.abstractmethod
    def consume(self, key: bytes | None, value: bytes) -> Any:
        """Handle one message; raising signals that it was not consumed."""


class ConsumeHandle(Consumer):
    """Adapts a plain callable ``(key, value)`` to the :class:`Consumer` interface."""

    def __init__(self, handle: Callable[[bytes | None, bytes], Any]) -> None:
        self._handle = handle

    def consume(self, key: bytes | None, value: bytes) -> Any:
        return self._handle(key, value)


class Pusher(abc.ABC):
    """Something that publishes messages to a queue."""

    @abc.abstractmethod
    def push(self, key: bytes | None, body: bytes, **kwargs: Any) -> Any:
        """Publish one message; backend specific options come as keywords."""

    @abc.abstractmethod
    def name(self) -> str:
        """The topic or tube the pusher writes to."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the resources held by the pusher."""

    def __enter__(self) -> "Pusher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()