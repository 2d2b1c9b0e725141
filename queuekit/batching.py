"""Collects tasks into byte-bounded chunks and hands them to a callback."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 1024 * 1024
DEFAULT_FLUSH_INTERVAL = 1.0


class ChunkExecutor:
    """Buffers tasks and runs ``execute`` on them in batches.

    A batch is handed over once the accumulated size reaches ``chunk_bytes``
    or when no batch was handed over for ``flush_interval`` seconds.
    Batches run one at a time on a background thread.
    """

    def __init__(
        self,
        execute: Callable[[list[Any]], Any],
        *,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        if chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be positive")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self._execute = execute
        self._chunk_bytes = chunk_bytes
        self._flush_interval = flush_interval
        self._cond = threading.Condition()
        self._pending: list[Any] = []
        self._size = 0
        self._inflight = 0
        self._batches: queue.SimpleQueue[list[Any]] = queue.SimpleQueue()
        self._worker: threading.Thread | None = None

    def add(self, task: Any, size: int) -> None:
        """Buffer a task that accounts for ``size`` bytes."""
        with self._cond:
            self._pending.append(task)
            self._size += size
            if self._size >= self._chunk_bytes:
                self._batches.put(self._take_locked())
            self._ensure_worker_locked()

    def flush(self) -> bool:
        """Run the buffered tasks now, in the caller; False if there were none."""
        with self._cond:
            if not self._pending:
                return False
            batch = self._take_locked()
        self._run_batch(batch)
        return True

    def wait(self) -> None:
        """Block until every batch handed over so far has finished."""
        with self._cond:
            self._cond.wait_for(lambda: self._inflight == 0)

    def _take_locked(self) -> list[Any]:
        batch = self._pending
        self._pending = []
        self._size = 0
        self._inflight += 1
        return batch

    def _ensure_worker_locked(self) -> None:
        if self._worker is None:
            self._worker = threading.Thread(target=self._loop, daemon=True)
            self._worker.start()

    def _loop(self) -> None:
        while True:
            try:
                batch = self._batches.get(timeout=self._flush_interval)
            except queue.Empty:
                with self._cond:
                    if not self._pending:
                        if self._batches.empty():
                            self._worker = None
                            return
                        continue
                    batch = self._take_locked()
            self._run_batch(batch)

    def _run_batch(self, batch: list[Any]) -> None:
        try:
            self._execute(batch)
        except Exception:
            logger.exception("executing a batch of %d tasks failed", len(batch))
        finally:
            with self._cond:
                self._inflight -= 1
                self._cond.notify_all()