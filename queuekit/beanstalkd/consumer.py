"""Consumes delayed jobs from beanstalkd, dropping stale and duplicate ones."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import redis

from queuekit.beanstalkd.connection import (
    RESERVE_TIMEOUT,
    TIME_SEP,
    BeanstalkClient,
    BeanstalkError,
    Conf,
    Connection,
)
from queuekit.queue import Consumer
from queuekit.stats import Metrics, Task

logger = logging.getLogger(__name__)

EXPIRATION = 3600  # seconds
GUARD_VALUE = "1"
TOLERANCE = timedelta(minutes=30)
MAX_CHECK_BYTES = len(str(time.time_ns())) + 2

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INTEGER = re.compile(rb"[+-]?[0-9]+")
_TOLERANCE_NANOS = (TOLERANCE // timedelta(microseconds=1)) * 1000

ConsumeHandler = Callable[[bytes], Any]


def _unix_nanos(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def unwrap(body: bytes, now: datetime | None = None) -> bytes | None:
    """Strip the scheduling stamp from ``body``.

    Returns the payload, or None when the stamp is missing, malformed or
    older than :data:`TOLERANCE` relative to ``now``.
    """
    pos = body.find(TIME_SEP, 0, MAX_CHECK_BYTES)
    if pos < 0:
        return None

    stamp = body[:pos]
    if not _INTEGER.fullmatch(stamp):
        logger.error("invalid time stamp: %r", stamp)
        return None
    nanos = int(stamp)
    if not _INT64_MIN <= nanos <= _INT64_MAX:
        logger.error("time stamp out of range: %r", stamp)
        return None

    now_nanos = time.time_ns() if now is None else _unix_nanos(now)
    if nanos + _TOLERANCE_NANOS < now_nanos:
        return None
    return body[pos + 1 :]


class _BodyConsumer(Consumer):
    def __init__(self, handle: ConsumeHandler) -> None:
        self._handle = handle

    def consume(self, key: bytes | None, value: bytes) -> None:
        self._handle(value)


def with_handle(handle: ConsumeHandler) -> Consumer:
    """Wrap a callable taking only the message body as a :class:`Consumer`."""
    return _BodyConsumer(handle)


class ConsumerNode:
    """Reserves jobs from one beanstalkd server until disposed."""

    def __init__(
        self,
        endpoint: str,
        tube: str,
        *,
        dial: Callable[[str], BeanstalkClient] = BeanstalkClient,
        retry_delay: float = 1.0,
    ) -> None:
        self.endpoint = endpoint
        self.tube = tube
        self._conn = Connection(endpoint, tube, dial=dial)
        self._retry_delay = retry_delay
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def dispose(self) -> None:
        """Ask the consuming loop to finish after the current job."""
        self._stopped.set()

    def consume_events(self, consume: ConsumeHandler) -> None:
        """Reserve, delete and hand over jobs until :meth:`dispose` is called."""
        while not self._stopped.is_set():
            self._consume_one(consume)
        try:
            self._conn.close()
        except Exception as exc:
            logger.error("closing connection to %s failed: %s", self.endpoint, exc)

    def _consume_one(self, consume: ConsumeHandler) -> None:
        try:
            client = self._conn.get()
        except Exception as exc:
            logger.error("connecting to %s failed: %s", self.endpoint, exc)
            self._stopped.wait(self._retry_delay)
            return
        # Reserving may block for a while, so do not start once asked to stop.
        if self._stopped.is_set():
            return

        try:
            client.watch(self.tube)
            job_id, body = client.reserve(RESERVE_TIMEOUT)
        except BeanstalkError as exc:
            if exc.status == "TIMED_OUT":
                return
            logger.error("reserving from %s failed: %s", self.endpoint, exc)
            if not exc.keeps_connection:
                self._conn.reset()
                self._stopped.wait(self._retry_delay)
            return

        try:
            client.delete(job_id)
        except BeanstalkError as exc:
            logger.debug("deleting job %d on %s failed: %s", job_id, self.endpoint, exc)

        try:
            consume(body)
        except Exception:
            logger.exception("consuming job %d from %s failed", job_id, self.endpoint)


class ConsumerCluster:
    """Consumes one tube on several beanstalkd servers, handling each job once."""

    def __init__(
        self,
        conf: Conf,
        handle: Consumer,
        *,
        metrics: Metrics | None = None,
        redis_client: Any = None,
        dial: Callable[[str], BeanstalkClient] = BeanstalkClient,
        retry_delay: float = 1.0,
    ) -> None:
        self.nodes = [
            ConsumerNode(endpoint, conf.tube, dial=dial, retry_delay=retry_delay)
            for endpoint in conf.endpoints
        ]
        if redis_client is None:
            redis_client = redis.Redis.from_url(conf.redis_url)
        self._redis = redis_client
        self._handle = handle
        self.metrics = metrics if metrics is not None else Metrics("beanstalkd-consumer")

    def start(self) -> None:
        """Consume on every node; blocks until :meth:`stop` is called."""
        threads = [
            threading.Thread(
                target=node.consume_events,
                args=(self._guarded_consume,),
                name=f"beanstalkd-consumer-{node.endpoint}",
                daemon=True,
            )
            for node in self.nodes
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def stop(self) -> None:
        for node in self.nodes:
            node.dispose()

    def _guarded_consume(self, body: bytes) -> None:
        key = hashlib.md5(body).hexdigest()

        payload = unwrap(body)
        if payload is None:
            logger.error("discarded: %r", body)
            return

        started = time.monotonic()
        try:
            try:
                fresh = self._redis.set(key, GUARD_VALUE, nx=True, ex=EXPIRATION)
            except redis.RedisError as exc:
                logger.error("guarding job failed: %s", exc)
                return
            if fresh:
                try:
                    self._handle.consume(None, payload)
                except Exception:
                    logger.exception("handling job failed")
        finally:
            self.metrics.add(Task(duration=time.monotonic() - started))