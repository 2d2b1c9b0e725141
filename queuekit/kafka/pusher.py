"""Publishes messages to a kafka topic, synchronously or in batches."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from typing import Any, Protocol

from queuekit.batching import ChunkExecutor
from queuekit.kafka.config import RequiredAcks
from queuekit.kafka.message import Message, headers_from_context
from queuekit.queue import Pusher as BasePusher
from queuekit.stats import Metrics, Task

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_BATCH_BYTES = 1048576

SendFunc = Callable[[str, int, list[Message]], Any]
Completion = Callable[[list[Message], "Exception | None"], Any]


class Balancer(Protocol):
    def balance(self, message: Message, partitions: Sequence[int]) -> int: ...


def _message_size(message: Message) -> int:
    size = len(message.key or b"") + len(message.value)
    return size + sum(len(h.key) + len(h.value) for h in message.headers)


class _LeastBytes:
    """Picks the partition that has been given the fewest bytes so far."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[int, int] = {}

    def balance(self, message: Message, partitions: Sequence[int]) -> int:
        with self._lock:
            best = min(partitions, key=lambda p: self._counters.get(p, 0))
            self._counters[best] = self._counters.get(best, 0) + len(message.key or b"") + len(
                message.value
            )
            return best


class Writer:
    """Assigns partitions to messages and sends them in bounded batches via ``send``."""

    def __init__(
        self,
        addrs: Sequence[str],
        topic: str,
        send: SendFunc,
        *,
        partitions: Sequence[int] = (0,),
        balancer: Balancer | None = None,
        required_acks: RequiredAcks = RequiredAcks.NONE,
        allow_auto_topic_creation: bool = True,
        completion: Completion | None = None,
        batch_size: int = 0,
        batch_bytes: int = 0,
        sasl: tuple[str, str] | None = None,
    ) -> None:
        if not partitions:
            raise ValueError("at least one partition is required")
        self.addrs = list(addrs)
        self.topic = topic
        self.partitions = list(partitions)
        self.balancer: Balancer = balancer if balancer is not None else _LeastBytes()
        self.required_acks = required_acks
        self.allow_auto_topic_creation = allow_auto_topic_creation
        self.completion = completion
        self.batch_size = batch_size if batch_size > 0 else DEFAULT_BATCH_SIZE
        self.batch_bytes = batch_bytes if batch_bytes > 0 else DEFAULT_BATCH_BYTES
        self.sasl = sasl
        self._send = send
        self._lock = threading.Lock()
        self._closed = False

    def write_messages(self, messages: Sequence[Message]) -> None:
        """Send ``messages``; raises the first failure after trying every batch."""
        with self._lock:
            if self._closed:
                raise BrokenPipeError("kafka writer is closed")
        if not messages:
            return
        for message in messages:
            if self.topic and message.topic:
                raise ValueError("topic must not be specified for both writer and message")
            if not self.topic and not message.topic:
                raise ValueError("topic must be specified for writer or message")

        groups: dict[tuple[str, int], list[Message]] = {}
        for message in messages:
            message.topic = message.topic or self.topic
            message.partition = self.balancer.balance(message, self.partitions)
            groups.setdefault((message.topic, message.partition), []).append(message)

        errors: list[Exception] = []
        for (topic, partition), group in groups.items():
            for batch in self._batches(group):
                error: Exception | None = None
                try:
                    self._send(topic, partition, batch)
                except Exception as exc:
                    error = exc
                    errors.append(exc)
                if self.completion is not None:
                    self.completion(batch, error)
        if errors:
            raise errors[0]

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def _batches(self, messages: list[Message]) -> Iterator[list[Message]]:
        batch: list[Message] = []
        size = 0
        for message in messages:
            message_size = _message_size(message)
            if batch and (len(batch) >= self.batch_size or size + message_size > self.batch_bytes):
                yield batch
                batch, size = [], 0
            batch.append(message)
            size += message_size
        if batch:
            yield batch


class Pusher(BasePusher):
    """Pushes messages to one topic, directly or through a chunk executor."""

    def __init__(
        self,
        addrs: Sequence[str],
        topic: str,
        *,
        send: SendFunc,
        partitions: Sequence[int] = (0,),
        completion: Completion | None = None,
        balancer: Balancer | None = None,
        disable_auto_topic_creation: bool = False,
        batch_size: int = 0,
        batch_bytes: int = 0,
        required_acks: RequiredAcks = RequiredAcks.NONE,
        chunk_size: int = 0,
        flush_interval: float = 0.0,
        username: str = "",
        password: str = "",
    ) -> None:
        sasl = (username, password) if username and password else None
        self.topic = topic
        self.writer = Writer(
            addrs,
            topic,
            send,
            partitions=partitions,
            balancer=balancer,
            required_acks=required_acks,
            allow_auto_topic_creation=not disable_auto_topic_creation,
            completion=completion,
            batch_size=batch_size,
            batch_bytes=batch_bytes,
            sasl=sasl,
        )
        self.metrics = Metrics("kafka-pusher")
        executor_options: dict[str, Any] = {}
        if chunk_size > 0:
            executor_options["chunk_bytes"] = chunk_size
        if flush_interval > 0:
            executor_options["flush_interval"] = flush_interval
        self._executor = ChunkExecutor(self._do_task, **executor_options)
        self._stop_lock = threading.Lock()
        self._stopped = False

    def push(self, key: bytes | None, value: bytes, sync: bool = False) -> None:
        """Publish a message; with ``sync`` it is written before returning."""
        message = Message(key=key, value=value)
        headers = headers_from_context()
        if headers is not None:
            message.headers = headers

        if not sync:
            self._executor.add(message, len(value))
            return None

        started = time.monotonic()
        try:
            self.writer.write_messages([message])
        except Exception:
            self.metrics.add_drop()
            raise
        self.metrics.add(Task(duration=time.monotonic() - started))
        return None

    def name(self) -> str:
        return self.topic

    def start(self) -> None:
        """Nothing to start; present so the pusher can run as a service."""

    def stop(self) -> None:
        self._stop_once()

    def close(self) -> None:
        self._stop_once()

    def _stop_once(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        self._executor.flush()
        self._executor.wait()
        try:
            self.writer.close()
        except Exception as exc:
            logger.error("closing kafka writer failed: %s", exc)

    def _do_task(self, tasks: list[Message]) -> None:
        started = time.monotonic()
        try:
            self.writer.write_messages(tasks)
        except Exception as exc:
            logger.error("send failed, total size:%d, err:%s", len(tasks), exc)
            for _ in tasks:
                self.metrics.add_drop()
            return
        logger.info("send successful,total size:%d", len(tasks))
        duration = time.monotonic() - started
        for _ in tasks:
            self.metrics.add(Task(duration=duration))