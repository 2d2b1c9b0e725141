"""Consumes a pulsar topic through a shared subscription with a pool of processors."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Sequence
from typing import Any, Protocol

from queuekit.pulsar.config import Conf
from queuekit.queue import Consumer
from queuekit.stats import Metrics, Task

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 1000
SHARED = "shared"


class ReceivedMessage(Protocol):
    key: str
    payload: bytes


class Subscription(Protocol):
    def ack(self, message: Any) -> None: ...

    def unsubscribe(self) -> None: ...

    def close(self) -> None: ...


class Client(Protocol):
    def subscribe(
        self,
        topic: str,
        subscription_name: str,
        channel: queue.Queue,
        *,
        subscription_type: str,
    ) -> Subscription: ...

    def close(self) -> None: ...


class PulsarQueue:
    """One subscription whose messages are handled by ``conf.processors`` workers."""

    def __init__(
        self,
        conf: Conf,
        client: Client,
        handler: Consumer,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        metrics: Metrics | None = None,
        *,
        poll_interval: float = 0.1,
    ) -> None:
        self.conf = conf
        self.metrics = metrics if metrics is not None else Metrics("pulsar-consumer")
        self.channel: queue.Queue[Any] = queue.Queue(maxsize=queue_capacity)
        self.consumer = client.subscribe(
            conf.topic,
            conf.subscription_name,
            self.channel,
            subscription_type=SHARED,
        )
        self._handler = handler
        self._poll_interval = poll_interval
        self._closed = threading.Event()

    def start(self) -> None:
        """Process messages; returns once stopped and the channel is drained."""
        workers = [
            threading.Thread(target=self._work, daemon=True)
            for _ in range(self.conf.processors)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

    def stop(self) -> None:
        try:
            self.consumer.unsubscribe()
        except Exception as exc:
            logger.error("unsubscribing from %s failed: %s", self.conf.topic, exc)
        self._closed.set()
        self.consumer.close()

    def _work(self) -> None:
        while True:
            try:
                message = self.channel.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue
            self._consume(message)

    def _consume(self, message: ReceivedMessage) -> None:
        key = message.key.encode("utf-8", "surrogateescape")
        started = time.monotonic()
        try:
            self._handler.consume(key, message.payload)
        except Exception as exc:
            logger.error("Error on consuming: %r, error: %s", message.payload, exc)
        finally:
            self.metrics.add(Task(duration=time.monotonic() - started))
        self.consumer.ack(message)


class Queues:
    """Runs several :class:`PulsarQueue` sharing one client."""

    def __init__(self, queues: Sequence[PulsarQueue], client: Client) -> None:
        self.queues = list(queues)
        self.client = client

    def start(self) -> None:
        """Run every queue; blocks until all of them have stopped."""
        threads = [threading.Thread(target=each.start, daemon=True) for each in self.queues]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def stop(self) -> None:
        for each in self.queues:
            each.stop()
        self.client.close()


def new_queue(
    conf: Conf,
    handler: Consumer,
    client: Client,
    queue_capacity: int = 0,
    metrics: Metrics | None = None,
) -> Queues:
    """Build ``conf.conns`` queues (at least one) subscribed through ``client``."""
    if queue_capacity == 0:
        queue_capacity = DEFAULT_QUEUE_CAPACITY
    if metrics is None:
        metrics = Metrics("pulsar-consumer")
    conns = max(1, conf.conns)
    queues = [
        PulsarQueue(conf, client, handler, queue_capacity, metrics) for _ in range(conns)
    ]
    return Queues(queues, client)