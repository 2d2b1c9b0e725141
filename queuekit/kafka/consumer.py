"""Consumes a kafka topic with a group of fetchers feeding keyed processors."""

from __future__ import annotations

import contextlib
import logging
import queue
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from queuekit.kafka.balancer import xxhash64
from queuekit.kafka.config import FIRST_OFFSET, Conf
from queuekit.kafka.message import Message, headers_context
from queuekit.queue import Consumer
from queuekit.stats import Metrics, Task

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_INTERVAL = 1.0
DEFAULT_MAX_WAIT = 1.0
DEFAULT_QUEUE_CAPACITY = 1000
CHANNEL_CAPACITY = 8

START_FIRST = -2
START_LAST = -1

FetchFunc = Callable[[float], "Message | None"]
CommitFunc = Callable[[list[Message]], Any]


@dataclass
class ReaderConfig:
    """Everything a reader needs to join a consumer group on a topic."""

    brokers: list[str] = field(default_factory=list)
    group_id: str = ""
    topic: str = ""
    start_offset: int = START_LAST
    min_bytes: int = 10240
    max_bytes: int = 10485760
    max_wait: float = DEFAULT_MAX_WAIT
    commit_interval: float = DEFAULT_COMMIT_INTERVAL
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY
    sasl: tuple[str, str] | None = None


class Reader:
    """Fetches messages through ``fetch`` and commits their offsets through ``commit``.

    ``fetch`` waits at most the given number of seconds and returns a message
    or None. Commits are collected per partition and sent at most once every
    ``commit_interval`` seconds, and once more when the reader is closed.
    """

    def __init__(self, config: ReaderConfig, fetch: FetchFunc, commit: CommitFunc) -> None:
        self.config = config
        self._fetch = fetch
        self._commit = commit
        self._lock = threading.Lock()
        self._closed = False
        self._pending: dict[tuple[str, int], Message] = {}
        self._last_commit = time.monotonic()

    def fetch_message(self) -> Message:
        """Wait for the next message; raises EOFError once the reader is closed."""
        while True:
            with self._lock:
                if self._closed:
                    raise EOFError("kafka reader is closed")
            message = self._fetch(self.config.max_wait)
            if message is not None:
                return message

    def commit_messages(self, messages: Sequence[Message]) -> None:
        """Mark ``messages`` as processed; raises BrokenPipeError once closed."""
        with self._lock:
            if self._closed:
                raise BrokenPipeError("kafka reader is closed")
            for message in messages:
                slot = (message.topic, message.partition)
                current = self._pending.get(slot)
                if current is None or message.offset > current.offset:
                    self._pending[slot] = message
            interval = self.config.commit_interval
            if interval <= 0 or time.monotonic() - self._last_commit >= interval:
                self._flush_locked()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._flush_locked()
            except Exception as exc:
                logger.error("committing offsets on close failed: %s", exc)

    def _flush_locked(self) -> None:
        self._last_commit = time.monotonic()
        if not self._pending:
            return
        batch = list(self._pending.values())
        self._pending = {}
        self._commit(batch)


class KafkaQueue:
    """One reader whose messages are spread by key over a set of processors."""

    def __init__(
        self,
        conf: Conf,
        handler: Consumer,
        reader: Reader,
        metrics: Metrics,
    ) -> None:
        if conf.processors < 1:
            raise ValueError("processors must be at least 1")
        self.conf = conf
        self.reader = reader
        self.metrics = metrics
        self._handler = handler
        self._channels: list[queue.Queue[Message | None]] = [
            queue.Queue(maxsize=CHANNEL_CAPACITY) for _ in range(conf.processors)
        ]

    def start(self) -> None:
        """Fetch and process messages; blocks until :meth:`stop` is called."""
        consumers = [
            threading.Thread(target=self._process, args=(channel,), daemon=True)
            for channel in self._channels
        ]
        producers = [
            threading.Thread(target=self._fetch_loop, daemon=True)
            for _ in range(self.conf.consumers)
        ]
        for thread in consumers + producers:
            thread.start()
        for thread in producers:
            thread.join()
        for channel in self._channels:
            channel.put(None)
        for thread in consumers:
            thread.join()

    def stop(self) -> None:
        self.reader.close()

    def _fetch_loop(self) -> None:
        while True:
            try:
                message = self.reader.fetch_message()
            except (EOFError, BrokenPipeError):
                return
            except Exception as exc:
                logger.error("Error on reading message, %r", str(exc))
                continue
            index = xxhash64(message.key or b"") % len(self._channels)
            self._channels[index].put(message)

    def _process(self, channel: queue.Queue[Message | None]) -> None:
        while (message := channel.get()) is not None:
            self._consume(message)

    def _consume(self, message: Message) -> None:
        scope = (
            headers_context(message.headers) if message.headers else contextlib.nullcontext()
        )
        with scope:
            try:
                self._consume_one(message.key, message.value)
            except Exception as exc:
                logger.error("error on consuming: %r, error: %s", message.value, exc)
                return
        try:
            self.reader.commit_messages([message])
        except Exception as exc:
            logger.error("committing message failed: %s", exc)

    def _consume_one(self, key: bytes | None, value: bytes) -> None:
        started = time.monotonic()
        try:
            self._handler.consume(key, value)
        except Exception:
            self.metrics.add_drop()
            raise
        self.metrics.add(Task(duration=time.monotonic() - started))


class Queues:
    """Runs several :class:`KafkaQueue` side by side."""

    def __init__(self, queues: Sequence[KafkaQueue]) -> None:
        self.queues = list(queues)

    def start(self) -> None:
        """Run every queue; blocks until all of them have stopped."""
        threads = [
            threading.Thread(target=each.start, daemon=True) for each in self.queues
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def stop(self) -> None:
        for each in self.queues:
            each.stop()


def new_queue(
    conf: Conf,
    handler: Consumer,
    reader_factory: Callable[[ReaderConfig], Reader],
    commit_interval: float = 0.0,
    queue_capacity: int = 0,
    max_wait: float = 0.0,
    metrics: Metrics | None = None,
) -> Queues:
    """Build ``conf.conns`` queues (at least one), each with its own reader."""
    if commit_interval == 0:
        commit_interval = DEFAULT_COMMIT_INTERVAL
    if queue_capacity == 0:
        queue_capacity = DEFAULT_QUEUE_CAPACITY
    if max_wait == 0:
        max_wait = DEFAULT_MAX_WAIT
    if metrics is None:
        metrics = Metrics("kafka-consumer")

    conns = max(1, conf.conns)
    queues = []
    for _ in range(conns):
        config = ReaderConfig(
            brokers=list(conf.brokers),
            group_id=conf.group,
            topic=conf.topic,
            start_offset=START_FIRST if conf.offset == FIRST_OFFSET else START_LAST,
            min_bytes=conf.min_bytes,
            max_bytes=conf.max_bytes,
            max_wait=max_wait,
            commit_interval=commit_interval,
            queue_capacity=queue_capacity,
            sasl=(conf.username, conf.password) if conf.has_auth else None,
        )
        queues.append(KafkaQueue(conf, handler, reader_factory(config), metrics))
    return Queues(queues)