"""Kafka consumer configuration and producer acknowledgement levels."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

FIRST_OFFSET = "first"
LAST_OFFSET = "last"


class RequiredAcks(enum.IntEnum):
    """How many replicas must acknowledge a write before it counts as done."""

    NONE = 0
    ONE = 1
    ALL = -1


@dataclass
class Conf:
    """Where and how a consumer group reads a topic."""

    brokers: list[str] = field(default_factory=list)
    group: str = ""
    topic: str = ""
    offset: str = LAST_OFFSET
    conns: int = 1
    consumers: int = 8
    processors: int = 8
    min_bytes: int = 10240
    max_bytes: int = 10485760
    username: str = ""
    password: str = ""

    def __post_init__(self) -> None:
        if self.offset not in (FIRST_OFFSET, LAST_OFFSET):
            raise ValueError(
                f"offset must be {FIRST_OFFSET!r} or {LAST_OFFSET!r}, got {self.offset!r}"
            )

    @property
    def has_auth(self) -> bool:
        """Whether both a user name and a password were configured."""
        return bool(self.username) and bool(self.password)