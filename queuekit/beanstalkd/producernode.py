"""Writes delayed jobs to a single beanstalkd server."""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from queuekit.beanstalkd.connection import (
    DEFAULT_TIME_TO_RUN,
    ID_SEP,
    PRI_NORMAL,
    BeanstalkClient,
    BeanstalkError,
    Connection,
)

logger = logging.getLogger(__name__)


class TimeBeforeNowError(ValueError):
    """Raised when a job is scheduled for a time already past."""

    def __init__(self, message: str = "can't schedule task to past time") -> None:
        super().__init__(message)


class DelayPusher(abc.ABC):
    """Something that schedules jobs for later and can revoke them."""

    @abc.abstractmethod
    def at(self, body: bytes, at: datetime) -> str:
        """Schedule a job for the moment ``at``; return its id."""

    @abc.abstractmethod
    def delay(self, body: bytes, delay: timedelta) -> str:
        """Schedule a job ``delay`` from now; return its id."""

    @abc.abstractmethod
    def revoke(self, ids: str) -> None:
        """Remove previously scheduled jobs named in ``ids``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the underlying connection."""


class ProducerNode(DelayPusher):
    """A :class:`DelayPusher` bound to one beanstalkd endpoint and tube."""

    def __init__(
        self,
        endpoint: str,
        tube: str,
        *,
        dial: Callable[[str], BeanstalkClient] = BeanstalkClient,
    ) -> None:
        self.endpoint = endpoint
        self.tube = tube
        self._conn = Connection(endpoint, tube, dial=dial)

    def at(self, body: bytes, at: datetime) -> str:
        now = datetime.now(at.tzinfo)
        if at < now:
            raise TimeBeforeNowError()
        return self.delay(body, at - now)

    def delay(self, body: bytes, delay: timedelta) -> str:
        try:
            client = self._conn.get()
        except Exception as exc:
            logger.error("connecting to %s failed: %s", self.endpoint, exc)
            raise
        try:
            job_id = client.put(body, PRI_NORMAL, delay, DEFAULT_TIME_TO_RUN)
        except BeanstalkError as exc:
            logger.error("put to %s failed: %s", self.endpoint, exc)
            if not exc.keeps_connection:
                self._conn.reset()
            raise
        return f"{self.endpoint}/{self.tube}/{job_id}"

    def revoke(self, ids: str) -> None:
        for job in ids.split(ID_SEP):
            fields = job.split("/")
            if len(fields) < 3:
                continue
            if fields[0] != self.endpoint or fields[1] != self.tube:
                continue
            client = self._conn.get()
            client.delete(int(fields[2]))
            return

    def close(self) -> None:
        self._conn.close()