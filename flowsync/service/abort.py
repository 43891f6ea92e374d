"""Abort in-flight prediction runs by execution id.

An execution id is ``f"{chatflow_id}_{chat_id}"``. The deployment runs in one
of two modes, chosen once at startup:

- MAIN: runs execute in this process and register an ``AbortHandle`` in the
  ``AbortControllerPool``; aborting signals that handle.
- QUEUE: runs execute on workers; aborting publishes an ``abort`` event on
  the prediction event channel and each worker's ``AbortEventConsumer``
  signals its own pool.

Aborting an unknown or finished execution is a silent no-op in both modes.
"""

from __future__ import annotations

import asyncio
import json
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Union

from flowsync.config import ExecutionMode
from flowsync.logging import get_logger, sanitize_error_message
from flowsync.service.errors import PublishFailure

if TYPE_CHECKING:
    from flowsync.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

ABORT_EVENT = "abort"


def execution_id(chatflow_id: str, chat_id: str) -> str:
    return f"{chatflow_id}_{chat_id}"


class AbortHandle:
    """Cancellation signal owned by one running execution."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if self.reason is None:
            self.reason = reason
        self._event.set()

    async def wait(self, timeout: float, *, poll_interval: float = 0.1) -> bool:
        """Wait until aborted or ``timeout`` elapses; returns whether aborted.

        The blocking wait runs in worker threads in slices of at most
        ``poll_interval`` seconds, so a cancelled caller never leaves a
        thread parked for longer than one slice.
        """
        if timeout is None or timeout < 0:
            raise ValueError("timeout must be a non-negative number of seconds")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return self._event.is_set()
            if await asyncio.to_thread(self._event.wait, min(poll_interval, remaining)):
                return True


class AbortControllerPool:
    """Registry of abort handles for executions running in this process.

    Thread-safe: register, lookup+signal and remove each hold the same lock,
    so concurrent requests cannot lose an entry.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, AbortHandle] = {}
        self._lock = threading.Lock()

    def register(self, execution_id: str) -> AbortHandle:
        handle = AbortHandle(execution_id)
        with self._lock:
            previous = self._handles.get(execution_id)
            self._handles[execution_id] = handle
        if previous is not None:
            logger.warning("abort_handle_replaced", execution_id=execution_id)
        return handle

    def lookup(self, execution_id: str) -> Optional[AbortHandle]:
        with self._lock:
            return self._handles.get(execution_id)

    def signal(self, handle: AbortHandle, reason: str = "aborted") -> None:
        handle.abort(reason)

    def abort(self, execution_id: str, reason: str = "aborted") -> bool:
        """Signal and drop the handle for ``execution_id``; False if none is registered."""
        with self._lock:
            handle = self._handles.pop(execution_id, None)
        if handle is None:
            logger.debug("abort_unknown_execution", execution_id=execution_id)
            return False
        self.signal(handle, reason)
        logger.info("execution_aborted", execution_id=execution_id, reason=reason)
        return True

    def remove(self, execution_id: str, handle: Optional[AbortHandle] = None) -> None:
        """Drop the entry; with ``handle`` given, only if it is still the registered one."""
        with self._lock:
            current = self._handles.get(execution_id)
            if current is not None and (handle is None or current is handle):
                del self._handles[execution_id]

    @contextmanager
    def track(self, execution_id: str) -> Iterator[AbortHandle]:
        """Register a handle for the duration of a run."""
        handle = self.register(execution_id)
        try:
            yield handle
        finally:
            self.remove(execution_id, handle)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class PredictionEventsProducer:
    """Publishes prediction control events for queue workers."""

    def __init__(self, cache: "RedisCache | SyncRedisCache", channel: str) -> None:
        self.cache = cache
        self.channel = channel

    async def publish_event(self, event_name: str, execution_id: str) -> int:
        return await self.cache.publish_event(
            self.channel, {"event_name": event_name, "id": execution_id}
        )


class LocalAbortCoordinator:
    mode = ExecutionMode.MAIN

    def __init__(self, pool: AbortControllerPool) -> None:
        self.pool = pool

    async def abort(self, execution_id: str) -> None:
        self.pool.abort(execution_id)


class QueueAbortCoordinator:
    mode = ExecutionMode.QUEUE

    def __init__(self, producer: PredictionEventsProducer) -> None:
        self.producer = producer

    async def abort(self, execution_id: str) -> None:
        try:
            receivers = await self.producer.publish_event(ABORT_EVENT, execution_id)
        except Exception as exc:
            logger.error(
                "abort_publish_failed",
                execution_id=execution_id,
                channel=self.producer.channel,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise PublishFailure(execution_id, sanitize_error_message(str(exc))) from exc
        logger.info(
            "abort_published",
            execution_id=execution_id,
            channel=self.producer.channel,
            receivers=receivers,
        )


AbortCoordinator = Union[LocalAbortCoordinator, QueueAbortCoordinator]


def build_abort_coordinator(
    mode: ExecutionMode,
    pool: AbortControllerPool,
    producer: Optional[PredictionEventsProducer] = None,
) -> AbortCoordinator:
    if mode == ExecutionMode.QUEUE:
        if producer is None:
            raise RuntimeError("queue mode requires a prediction events producer")
        return QueueAbortCoordinator(producer)
    return LocalAbortCoordinator(pool)


class AbortEventConsumer:
    """Worker-side listener that applies published abort events to the local pool."""

    def __init__(
        self,
        cache: "RedisCache | SyncRedisCache",
        pool: AbortControllerPool,
        channel: str,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self.cache = cache
        self.pool = pool
        self.channel = channel
        self.poll_timeout = poll_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("abort_consumer_already_running")
            return
        pubsub = await self.cache.subscribe(self.channel)
        self._running = True
        self._task = asyncio.create_task(self._run_loop(pubsub))
        logger.info("abort_consumer_started", channel=self.channel)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("abort_consumer_stopped")

    def handle_message(self, message: Optional[dict]) -> bool:
        """Apply one pub/sub message; returns True when a local run was aborted."""
        if not message or message.get("type") != "message":
            return False
        try:
            event = json.loads(message.get("data") or "")
        except (TypeError, ValueError):
            logger.warning("abort_event_malformed", channel=self.channel)
            return False
        if not isinstance(event, dict) or event.get("event_name") != ABORT_EVENT:
            return False
        target = event.get("id")
        if not isinstance(target, str) or not target:
            logger.warning("abort_event_missing_id", channel=self.channel)
            return False
        return self.pool.abort(target)

    async def _run_loop(self, pubsub) -> None:
        consecutive_errors = 0
        try:
            while self._running:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_timeout
                    )
                    consecutive_errors = 0
                except Exception as exc:
                    consecutive_errors += 1
                    logger.error(
                        "abort_consumer_loop_error",
                        error=str(exc),
                        error_type=type(exc).__name__,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(min(30.0, self.poll_timeout * 2**consecutive_errors))
                    continue
                if message is None:
                    await asyncio.sleep(0.05)
                    continue
                self.handle_message(message)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()
