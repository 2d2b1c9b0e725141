"""Publishes messages to a pulsar topic, synchronously or in batches."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from queuekit.batching import ChunkExecutor
from queuekit.pulsar.config import service_url
from queuekit.queue import Pusher as BasePusher

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 5.0
OPERATION_TIMEOUT = 5.0


@dataclass
class Message:
    """Per-message settings a caller may attach to a push."""

    payload: bytes = b""
    value: Any = None
    key: str = ""
    ordering_key: str = ""
    properties: dict[str, str] = field(default_factory=dict)
    event_time: datetime | None = None
    replication_clusters: list[str] = field(default_factory=list)
    disable_replication: bool = False
    sequence_id: int | None = None
    deliver_after: timedelta = field(default_factory=timedelta)
    deliver_at: datetime | None = None


@dataclass
class ProducerMessage:
    """A message as handed to the pulsar producer."""

    payload: bytes = b""
    value: Any = None
    key: str = ""
    ordering_key: str = ""
    properties: dict[str, str] = field(default_factory=dict)
    event_time: datetime | None = None
    replication_clusters: list[str] = field(default_factory=list)
    disable_replication: bool = False
    sequence_id: int | None = None
    deliver_after: timedelta = field(default_factory=timedelta)
    deliver_at: datetime | None = None


class Producer(Protocol):
    def send(self, message: ProducerMessage) -> Any: ...

    def close(self) -> None: ...


class Client(Protocol):
    def create_producer(self, topic: str) -> Producer: ...

    def close(self) -> None: ...


Connect = Callable[..., Client]


class Pusher(BasePusher):
    """Pushes messages to one topic, directly or through a chunk executor."""

    def __init__(
        self,
        addrs: Sequence[str],
        topic: str,
        *,
        connect: Connect,
        chunk_size: int = 0,
        flush_interval: float = 0.0,
    ) -> None:
        self.topic = topic
        self.url = service_url(list(addrs))
        self.client = connect(
            self.url,
            connection_timeout=CONNECTION_TIMEOUT,
            operation_timeout=OPERATION_TIMEOUT,
        )
        try:
            self.producer = self.client.create_producer(topic)
        except Exception:
            self.client.close()
            raise

        executor_options: dict[str, Any] = {}
        if chunk_size > 0:
            executor_options["chunk_bytes"] = chunk_size
        if flush_interval > 0:
            executor_options["flush_interval"] = flush_interval
        self._executor = ChunkExecutor(self._send_batch, **executor_options)

    def push(
        self,
        key: bytes | None,
        value: bytes,
        sync: bool = False,
        message: Message | None = None,
        deliver_at: datetime | None = None,
        deliver_after: timedelta | None = None,
        ordering_key: str | None = None,
    ) -> Any:
        """Publish ``value``; with ``sync`` it is sent now and its message id returned."""
        options = replace(message) if message is not None else Message()
        if deliver_at is not None:
            options.deliver_at = deliver_at
        if deliver_after is not None:
            options.deliver_after = deliver_after
        if ordering_key is not None:
            options.ordering_key = ordering_key

        outgoing = ProducerMessage(
            payload=value,
            value=options.value,
            key=(key or b"").decode("utf-8", "surrogateescape"),
            ordering_key=options.ordering_key,
            properties=dict(options.properties),
            event_time=options.event_time,
            replication_clusters=list(options.replication_clusters),
            disable_replication=options.disable_replication,
            sequence_id=options.sequence_id,
            deliver_after=options.deliver_after,
            deliver_at=options.deliver_at,
        )

        if sync:
            return self.producer.send(outgoing)
        self._executor.add(outgoing, len(value))
        return None

    def name(self) -> str:
        return self.topic

    def close(self) -> None:
        """Send what is still buffered, then close the producer and the client."""
        self._executor.flush()
        self._executor.wait()
        try:
            self.producer.close()
        finally:
            self.client.close()

    def _send_batch(self, messages: list[ProducerMessage]) -> None:
        for message in messages:
            try:
                self.producer.send(message)
            except Exception as exc:
                logger.error("sending to %s failed: %s", self.topic, exc)