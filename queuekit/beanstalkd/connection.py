"""Beanstalkd configuration, a small protocol client and a lazily dialled connection."""

from __future__ import annotations

import socket
import string
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

PRI_HIGH = 1
PRI_NORMAL = 2
PRI_LOW = 3

DEFAULT_TIME_TO_RUN = timedelta(seconds=5)
RESERVE_TIMEOUT = timedelta(seconds=5)

ID_SEP = ","
TIME_SEP = b"/"

DEFAULT_TUBE = "default"
NAME_MAX_LEN = 200
NAME_CHARS = frozenset("\\-+/;.$_()" + string.digits + string.ascii_letters)

# Errors after which the connection is still usable.
KEEP_CONNECTION = frozenset(
    {
        "BAD_CHAR",
        "BAD_FORMAT",
        "BURIED",
        "DEADLINE_SOON",
        "DRAINING",
        "EMPTY",
        "INTERNAL_ERROR",
        "JOB_TOO_BIG",
        "EXPECTED_CRLF",
        "NOT_FOUND",
        "NOT_IGNORED",
        "TOO_LONG",
    }
)

_SERVER_ERRORS = frozenset(
    {
        "OUT_OF_MEMORY",
        "INTERNAL_ERROR",
        "BAD_FORMAT",
        "UNKNOWN_COMMAND",
        "EXPECTED_CRLF",
        "JOB_TOO_BIG",
        "DRAINING",
        "BURIED",
        "TIMED_OUT",
        "DEADLINE_SOON",
        "NOT_FOUND",
        "NOT_IGNORED",
    }
)


@dataclass
class BeanstalkdConf:
    """The beanstalkd servers to use and the tube to work on."""

    endpoints: list[str]
    tube: str


@dataclass
class Conf(BeanstalkdConf):
    """Consumer configuration: beanstalkd servers plus the redis used for de-duplication."""

    redis_url: str = field(default="redis://localhost:6379/0")


class BeanstalkError(Exception):
    """A beanstalkd failure, named by the protocol status that caused it."""

    def __init__(self, status: str, detail: str | None = None) -> None:
        self.status = status
        self.detail = detail
        super().__init__(f"{status}: {detail}" if detail else status)

    @property
    def keeps_connection(self) -> bool:
        """Whether the connection may be reused after this error."""
        return self.status in KEEP_CONNECTION


def _check_name(name: str) -> None:
    if not name:
        raise BeanstalkError("EMPTY", "tube name is empty")
    if len(name) >= NAME_MAX_LEN:
        raise BeanstalkError("TOO_LONG", name)
    if not set(name) <= NAME_CHARS:
        raise BeanstalkError("BAD_CHAR", name)


def _split_endpoint(endpoint: str) -> tuple[str, int]:
    host, sep, port = endpoint.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid endpoint: {endpoint!r}")
    return host.strip("[]"), int(port)


def _seconds(duration: timedelta) -> int:
    return max(0, int(duration.total_seconds()))


class BeanstalkClient:
    """A connection to one beanstalkd server speaking the text protocol."""

    def __init__(self, endpoint: str, *, timeout: float | None = None) -> None:
        host, port = _split_endpoint(endpoint)
        try:
            self._sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise BeanstalkError("CONNECTION", str(exc)) from exc
        self._sock.settimeout(None)
        self._reader = self._sock.makefile("rb")
        self._tube = DEFAULT_TUBE
        self._used = DEFAULT_TUBE
        self._watching = {DEFAULT_TUBE}
        self._watched = {DEFAULT_TUBE}

    def use(self, tube: str) -> None:
        """Select the tube that ``put`` writes to; sent with the next put."""
        _check_name(tube)
        self._tube = tube

    def watch(self, tube: str) -> None:
        """Add a tube that ``reserve`` takes jobs from; sent with the next reserve."""
        _check_name(tube)
        self._watching.add(tube)

    def put(self, body: bytes, priority: int, delay: timedelta, ttr: timedelta) -> int:
        """Insert a job and return its id."""
        if self._tube != self._used:
            self._expect(self._request(f"use {self._tube}"), "USING", 1)
            self._used = self._tube
        command = f"put {priority} {_seconds(delay)} {_seconds(ttr)} {len(body)}"
        words = self._expect(self._request(command, body), "INSERTED", 1)
        return int(words[1])

    def reserve(self, timeout: timedelta) -> tuple[int, bytes]:
        """Wait up to ``timeout`` for a job and return its id and body."""
        for tube in sorted(self._watching - self._watched):
            self._expect(self._request(f"watch {tube}"), "WATCHING", 1)
            self._watched.add(tube)
        words = self._expect(
            self._request(f"reserve-with-timeout {_seconds(timeout)}"), "RESERVED", 2
        )
        size = int(words[2])
        try:
            data = self._reader.read(size + 2)
        except OSError as exc:
            raise BeanstalkError("CONNECTION", str(exc)) from exc
        if len(data) != size + 2 or not data.endswith(b"\r\n"):
            raise BeanstalkError("CONNECTION", "truncated job body")
        return int(words[1]), data[:-2]

    def delete(self, job_id: int) -> None:
        self._expect(self._request(f"delete {job_id}"), "DELETED", 0)

    def close(self) -> None:
        try:
            self._reader.close()
        finally:
            self._sock.close()

    def __enter__(self) -> "BeanstalkClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, command: str, body: bytes | None = None) -> list[str]:
        payload = command.encode("ascii") + b"\r\n"
        if body is not None:
            payload += body + b"\r\n"
        try:
            self._sock.sendall(payload)
            line = self._reader.readline()
        except OSError as exc:
            raise BeanstalkError("CONNECTION", str(exc)) from exc
        if not line.endswith(b"\r\n"):
            raise BeanstalkError("CONNECTION", "connection closed")
        words = line[:-2].decode("ascii", "replace").split()
        if not words:
            raise BeanstalkError("UNEXPECTED_RESPONSE", "empty reply")
        if words[0] in _SERVER_ERRORS:
            raise BeanstalkError(words[0])
        return words

    @staticmethod
    def _expect(words: list[str], keyword: str, count: int) -> list[str]:
        if words[0] != keyword or len(words) != count + 1:
            raise BeanstalkError("UNEXPECTED_RESPONSE", " ".join(words))
        return words


class Connection:
    """A beanstalkd connection that is dialled on first use and can be reset."""

    def __init__(
        self,
        endpoint: str,
        tube: str,
        *,
        dial: Callable[[str], BeanstalkClient] = BeanstalkClient,
    ) -> None:
        self.endpoint = endpoint
        self.tube = tube
        self._dial = dial
        self._lock = threading.Lock()
        self._client: BeanstalkClient | None = None

    def get(self) -> BeanstalkClient:
        """Return the open client, dialling the server if needed."""
        with self._lock:
            if self._client is None:
                client = self._dial(self.endpoint)
                try:
                    client.use(self.tube)
                except BeanstalkError:
                    client.close()
                    raise
                self._client = client
            return self._client

    def reset(self) -> None:
        """Drop the current client so the next ``get`` dials again."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except OSError:
                pass

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()