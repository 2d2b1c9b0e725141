"""Writes each delayed job to several beanstalkd servers for redundancy."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from queuekit.beanstalkd.connection import ID_SEP, TIME_SEP, BeanstalkdConf
from queuekit.beanstalkd.producernode import DelayPusher, ProducerNode
from queuekit.queue import NotSupportedError, Pusher

logger = logging.getLogger(__name__)

REPLICA_NODES = 3
MIN_WRITTEN_NODES = 2

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

T = TypeVar("T")


class _BatchError(Exception):
    """Several failures collected from different nodes."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(str(error) for error in self.errors))


def _raise_all(errors: Sequence[Exception]) -> None:
    if not errors:
        return
    if len(errors) == 1:
        raise errors[0]
    raise _BatchError(errors)


def _unix_nanos(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def wrap(body: bytes, at: datetime) -> bytes:
    """Prefix ``body`` with the scheduled time in Unix nanoseconds."""
    return str(_unix_nanos(at)).encode("ascii") + TIME_SEP + body


class ProducerCluster(Pusher):
    """Schedules every job on up to three servers and needs two to succeed."""

    def __init__(
        self,
        conf: BeanstalkdConf,
        *,
        node_factory: Callable[[str, str], DelayPusher] = ProducerNode,
        rng: random.Random | None = None,
    ) -> None:
        if len(conf.endpoints) < MIN_WRITTEN_NODES:
            raise ValueError(f"nodes must be equal or greater than {MIN_WRITTEN_NODES}")
        if len(set(conf.endpoints)) != len(conf.endpoints):
            raise ValueError("all node endpoints must be different")
        self.tube = conf.tube
        self.nodes: list[DelayPusher] = [
            node_factory(endpoint, conf.tube) for endpoint in conf.endpoints
        ]
        self._random = rng if rng is not None else random.Random()

    def push(self, key: bytes | None, body: bytes, **kwargs: Any) -> str:
        """Schedule ``body``; needs ``at`` (a datetime) or ``duration`` (a timedelta)."""
        at: datetime | None = None
        for option, value in kwargs.items():
            if option == "at":
                at = value
            elif option == "duration":
                at = datetime.now(timezone.utc) + value
            else:
                raise NotSupportedError()
        if at is None:
            raise ValueError("expiration time must be set")
        return self.at(body, at)

    def name(self) -> str:
        return self.tube

    def at(self, body: bytes, at: datetime) -> str:
        """Schedule ``body`` for ``at``; return the joined ids of the written jobs."""
        wrapped = wrap(body, at)
        return self._insert(lambda node: node.at(wrapped, at))

    def delay(self, body: bytes, delay: timedelta) -> str:
        """Schedule ``body`` ``delay`` from now; return the joined ids of the written jobs."""
        wrapped = wrap(body, datetime.now(timezone.utc) + delay)
        return self._insert(lambda node: node.delay(wrapped, delay))

    def revoke(self, ids: str) -> None:
        """Remove the jobs named in ``ids`` from every node that holds one."""
        results = self._each(self.nodes, lambda node: node.revoke(ids))
        _raise_all([error for _, error in results if error is not None])

    def close(self) -> None:
        errors: list[Exception] = []
        for node in self.nodes:
            try:
                node.close()
            except Exception as exc:
                errors.append(exc)
        _raise_all(errors)

    def _write_nodes(self) -> list[DelayPusher]:
        if len(self.nodes) <= REPLICA_NODES:
            return list(self.nodes)
        return self._random.sample(self.nodes, REPLICA_NODES)

    @staticmethod
    def _each(
        nodes: Sequence[DelayPusher], fn: Callable[[DelayPusher], T]
    ) -> list[tuple[T | None, Exception | None]]:
        def call(node: DelayPusher) -> tuple[T | None, Exception | None]:
            try:
                return fn(node), None
            except Exception as exc:
                return None, exc

        with ThreadPoolExecutor(max_workers=max(1, len(nodes))) as pool:
            return list(pool.map(call, nodes))

    def _insert(self, fn: Callable[[DelayPusher], str]) -> str:
        results = self._each(self._write_nodes(), fn)
        ids = [job_id for job_id, error in results if error is None and job_id is not None]
        errors = [error for _, error in results if error is not None]

        joint_id = ID_SEP.join(ids)
        if len(ids) >= MIN_WRITTEN_NODES:
            return joint_id

        try:
            self.revoke(joint_id)
        except Exception as exc:
            logger.error("revoking %r failed: %s", joint_id, exc)

        _raise_all(errors)
        raise RuntimeError(f"only {len(ids)} nodes written")