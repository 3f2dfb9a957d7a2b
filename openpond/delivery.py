"""
Message delivery for OpenPond.

The engine registers the agent, then runs exactly one delivery strategy in a
background task until stopped:

- StreamDelivery consumes the server-push event stream and reconnects on
  failure after a fixed delay.
- PollingDelivery asks for messages newer than the delivery cursor on a
  fixed interval.

Both report loop errors through the error callback and keep going; only
registration failures reach the caller of start().
"""

import json
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from typing import Optional, Dict, Any

from .api import ApiClient, EventStream, MessageBatch
from .callbacks import CallbackRegistry
from .config import OpenPondConfig, TRANSPORT_POLL, DEFAULT_DEDUP_WINDOW
from .cursor import DeliveryCursor
from .errors import OpenPondError, NetworkError, SerializationError
from .identity import Identity
from .schemas import Message
from .sse import ServerSentEvent

logger = logging.getLogger(__name__)

KEEPALIVE_EVENTS = frozenset({'ping', 'heartbeat', 'keepalive'})


class DeliveryState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SeenMessageIds:
    """LRU set of recently delivered message ids."""

    def __init__(self, max_entries: int):
        self.max_entries = max_entries
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, message_id: str) -> bool:
        """Record an id. Returns False if it was already present."""
        if self.max_entries <= 0:
            return True

        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return False

        self._ids[message_id] = None
        while len(self._ids) > self.max_entries:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


async def wait_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep for `delay` seconds. Returns True early if stop was requested."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


class DeliveryStrategy(ABC):
    """A way of getting inbound messages from the service to the callbacks."""

    name = "base"

    def __init__(
        self,
        api: ApiClient,
        callbacks: CallbackRegistry,
        cursor: DeliveryCursor,
        recipient_id: Optional[str] = None,
        seen_ids: Optional[SeenMessageIds] = None,
    ):
        self.api = api
        self.callbacks = callbacks
        self.cursor = cursor
        # None means hosted mode: every message is relevant
        self.recipient_id = recipient_id
        self.seen_ids = seen_ids if seen_ids is not None else SeenMessageIds(DEFAULT_DEDUP_WINDOW)
        self.delivered_count = 0
        self.error_count = 0
        self.duplicate_count = 0

    def is_relevant(self, message: Message) -> bool:
        return self.recipient_id is None or message.to_agent_id == self.recipient_id

    def is_duplicate(self, message: Message) -> bool:
        if message.id in self.seen_ids:
            self.duplicate_count += 1
            logger.debug(f"Suppressed duplicate message {message.id}")
            return True
        return False

    async def deliver(self, message: Message, stop_event: asyncio.Event) -> bool:
        """Dispatch one message unless stop has been requested."""
        if stop_event.is_set():
            return False
        await self.callbacks.dispatch_message(message)
        self.seen_ids.add(message.id)
        self.delivered_count += 1
        return True

    async def report(self, error: OpenPondError, stop_event: asyncio.Event) -> None:
        """Send a loop error to the error callback."""
        self.error_count += 1
        logger.warning(f"{self.name} delivery error: {error}")
        if stop_event.is_set():
            return
        await self.callbacks.dispatch_error(error)

    def unexpected(self, error: Exception) -> OpenPondError:
        """Wrap a non-SDK exception raised inside the loop so it can be reported."""
        logger.exception(f"Unexpected error in {self.name} delivery")
        wrapped = OpenPondError(f"Unexpected {type(error).__name__}: {error}")
        wrapped.__cause__ = error
        return wrapped

    @abstractmethod
    async def run(self, stop_event: asyncio.Event) -> None:
        """Deliver messages until `stop_event` is set."""

    async def close(self) -> None:
        """Release any held connection so run() can notice the stop."""

    def get_stats(self) -> Dict[str, Any]:
        return {
            'strategy': self.name,
            'delivered': self.delivered_count,
            'errors': self.error_count,
            'duplicates_suppressed': self.duplicate_count,
        }


class PollingDelivery(DeliveryStrategy):
    """Fetches messages newer than the cursor every `interval` seconds."""

    name = "poll"

    def __init__(
        self,
        api: ApiClient,
        callbacks: CallbackRegistry,
        cursor: DeliveryCursor,
        recipient_id: Optional[str] = None,
        interval: float = 5.0,
        seen_ids: Optional[SeenMessageIds] = None,
    ):
        super().__init__(api, callbacks, cursor, recipient_id, seen_ids)
        self.interval = interval
        self.tick_count = 0

    async def run(self, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()

        while not stop_event.is_set():
            started = loop.time()
            try:
                await self.poll_once(stop_event)
            except Exception as e:
                await self.report(self.unexpected(e), stop_event)

            # Ticks are scheduled from their start, not their end
            remaining = max(0.0, self.interval - (loop.time() - started))
            if await wait_or_stop(stop_event, remaining):
                break

    async def poll_once(self, stop_event: Optional[asyncio.Event] = None) -> int:
        """
        Run one tick. Returns the number of messages delivered.

        A failed fetch reports one error and leaves the cursor where it was.
        """
        if stop_event is None:
            stop_event = asyncio.Event()
        self.tick_count += 1

        since = self.cursor.read()
        try:
            batch = await self.api.fetch_message_batch(since)
        except OpenPondError as e:
            await self.report(e, stop_event)
            return 0

        for error in batch.errors:
            await self.report(error, stop_event)

        delivered = 0
        stopped_at: Optional[int] = None

        for index, message in enumerate(batch.messages):
            if stop_event.is_set():
                stopped_at = index
                break

            if (
                message.timestamp > since
                and self.is_relevant(message)
                and not self.is_duplicate(message)
            ):
                if not await self.deliver(message, stop_event):
                    stopped_at = index
                    break
                delivered += 1
            else:
                logger.debug(f"Skipping message {message.id} (ts={message.timestamp})")

        if stopped_at is None:
            # Whole batch handled: move past everything the service returned
            if batch.max_timestamp is not None:
                self.cursor.advance_to(batch.max_timestamp)
        else:
            self.cursor.advance_to(self._partial_cursor(batch, stopped_at, since))

        if delivered:
            logger.debug(f"Delivered {delivered} messages, cursor={self.cursor.read()}")
        return delivered

    @staticmethod
    def _partial_cursor(batch: MessageBatch, stopped_at: int, since: int) -> int:
        """
        Cursor for a batch cut short by stop.

        Batches are not sorted, so the cursor stays below the oldest message
        left undelivered. Delivered messages above it are refetched next time
        and skipped through the seen-id cache.
        """
        handled = [m.timestamp for m in batch.messages[:stopped_at]]
        pending = [m.timestamp for m in batch.messages[stopped_at:] if m.timestamp > since]

        target = max(handled, default=since)
        if pending:
            target = min(target, min(pending) - 1)
        return target

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats['ticks'] = self.tick_count
        stats['interval'] = self.interval
        return stats


class StreamDelivery(DeliveryStrategy):
    """
    Consumes the server-push message stream.

    The stream carries no cursor, so messages sent while disconnected are
    not recovered here. Replays after a reconnect are suppressed by the
    seen-id cache and the Last-Event-ID header. A `retry:` field from the
    server replaces the configured reconnect delay.
    """

    name = "stream"

    def __init__(
        self,
        api: ApiClient,
        callbacks: CallbackRegistry,
        cursor: DeliveryCursor,
        recipient_id: Optional[str] = None,
        reconnect_delay: float = 1.0,
        seen_ids: Optional[SeenMessageIds] = None,
    ):
        super().__init__(api, callbacks, cursor, recipient_id, seen_ids)
        self.reconnect_delay = reconnect_delay
        self.last_event_id: Optional[str] = None
        self.reconnect_count = 0
        self._stream: Optional[EventStream] = None

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self._consume(stop_event)
                error: OpenPondError = NetworkError("Message stream closed by server")
            except OpenPondError as e:
                error = e
            except Exception as e:
                error = self.unexpected(e)

            if stop_event.is_set():
                break

            await self.report(error, stop_event)
            if await wait_or_stop(stop_event, self.reconnect_delay):
                break

            self.reconnect_count += 1
            logger.info(f"Reconnecting message stream (attempt {self.reconnect_count})")

    async def _consume(self, stop_event: asyncio.Event) -> None:
        async with self.api.open_message_stream(
            last_event_id=self.last_event_id,
            agent_id=self.recipient_id,
        ) as stream:
            self._stream = stream
            try:
                # close() may have raced with the connect
                if stop_event.is_set():
                    return
                async for event in stream:
                    if stream.last_event_id:
                        self.last_event_id = stream.last_event_id
                    if stop_event.is_set():
                        return
                    await self.handle_event(event, stop_event)
            finally:
                self._stream = None
                if stream.retry is not None:
                    self.reconnect_delay = stream.retry / 1000.0

    async def handle_event(self, event: ServerSentEvent, stop_event: asyncio.Event) -> bool:
        """Parse, filter and dispatch one event. Returns True if delivered."""
        if event.event in KEEPALIVE_EVENTS or not event.data.strip():
            return False

        try:
            message = Message.from_dict(json.loads(event.data))
        except json.JSONDecodeError as e:
            await self.report(
                SerializationError(f"Malformed stream event: {e}", payload=event.data),
                stop_event,
            )
            return False
        except SerializationError as e:
            e.payload = event.data
            await self.report(e, stop_event)
            return False

        if not self.is_relevant(message):
            logger.debug(f"Ignoring message {message.id} addressed to {message.to_agent_id}")
            return False

        if self.is_duplicate(message):
            return False

        if not await self.deliver(message, stop_event):
            return False

        self.cursor.advance_to(message.timestamp)
        return True

    async def close(self) -> None:
        if self._stream is not None:
            self._stream.close()

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats['reconnects'] = self.reconnect_count
        stats['reconnect_delay'] = self.reconnect_delay
        stats['last_event_id'] = self.last_event_id
        return stats


class DeliveryEngine:
    """
    Owns the delivery loop of one client.

    State machine: IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE.
    The cursor and seen-id cache outlive individual start/stop cycles.
    """

    def __init__(
        self,
        config: OpenPondConfig,
        api: ApiClient,
        callbacks: CallbackRegistry,
        identity: Optional[Identity] = None,
    ):
        self.config = config
        self.api = api
        self.callbacks = callbacks
        self.identity = identity
        self.cursor = DeliveryCursor()
        self.seen_ids = SeenMessageIds(config.dedup_window)
        self.agent_id: Optional[str] = identity.agent_id if identity else None

        self._state = DeliveryState.IDLE
        self._lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._strategy: Optional[DeliveryStrategy] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> DeliveryState:
        return self._state

    @property
    def is_running(self) -> bool:
        return (
            self._state is DeliveryState.RUNNING
            and self._task is not None
            and not self._task.done()
        )

    @property
    def strategy(self) -> Optional[DeliveryStrategy]:
        return self._strategy

    def _create_strategy(self) -> DeliveryStrategy:
        # Filter by recipient only when we own the identity
        recipient_id = self.agent_id if self.config.owns_identity else None

        if self.config.transport == TRANSPORT_POLL:
            return PollingDelivery(
                self.api,
                self.callbacks,
                self.cursor,
                recipient_id=recipient_id,
                interval=self.config.poll_interval,
                seen_ids=self.seen_ids,
            )
        return StreamDelivery(
            self.api,
            self.callbacks,
            self.cursor,
            recipient_id=recipient_id,
            reconnect_delay=self.config.reconnect_delay,
            seen_ids=self.seen_ids,
        )

    async def start(self) -> None:
        """
        Register the agent and launch the delivery loop.

        Returns once the loop task exists. Calling it while already running
        is a no-op. Registration errors are raised, never retried.
        """
        async with self._lock:
            if self.is_running:
                logger.debug("Delivery already running")
                return

            if self._task is not None:
                logger.warning("Previous delivery loop ended unexpectedly, restarting")
                self._reset()

            self._state = DeliveryState.STARTING
            stop_event = asyncio.Event()
            self._stop_event = stop_event

            try:
                registration = await self.api.register_agent()
            except OpenPondError as e:
                logger.error(f"Agent registration failed: {e}")
                self._reset()
                raise
            except BaseException:
                self._reset()
                raise

            registered_id = registration.get('agentId') or registration.get('id')
            if registered_id:
                self.agent_id = str(registered_id)

            if stop_event.is_set():
                logger.info("Stop requested during startup")
                self._reset()
                return

            self._strategy = self._create_strategy()
            self._task = asyncio.create_task(self._run(self._strategy, stop_event))
            self._state = DeliveryState.RUNNING
            logger.info(
                f"Delivery started (transport={self._strategy.name}, "
                f"agent={self.agent_id or 'hosted'})"
            )

    async def _run(self, strategy: DeliveryStrategy, stop_event: asyncio.Event) -> None:
        try:
            await strategy.run(stop_event)
        except asyncio.CancelledError:
            logger.debug("Delivery loop cancelled")
            raise
        except Exception:
            logger.exception("Delivery loop crashed")
            raise
        finally:
            logger.debug(f"{strategy.name} delivery loop exited")

    async def stop(self) -> None:
        """
        Stop the delivery loop. Safe to call in any state, more than once,
        and from inside a callback. No dispatch happens after this begins.
        """
        # Set before taking the lock so a pending start() sees it
        if self._stop_event is not None:
            self._stop_event.set()

        async with self._lock:
            if self._state is DeliveryState.IDLE:
                return

            self._state = DeliveryState.STOPPING
            strategy, task = self._strategy, self._task

            if strategy is not None:
                await strategy.close()

            if task is not None and task is not asyncio.current_task():
                done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_timeout)
                if not done:
                    logger.warning("Delivery loop did not stop in time, cancelling")
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
                elif not task.cancelled() and task.exception() is not None:
                    logger.error(f"Delivery loop had failed: {task.exception()}")

            self._reset()
            logger.info("Delivery stopped")

    def _reset(self) -> None:
        self._state = DeliveryState.IDLE
        self._stop_event = None
        self._strategy = None
        self._task = None

    def get_status(self) -> Dict[str, Any]:
        status = {
            'state': self._state.value,
            'transport': self.config.transport,
            'agent_id': self.agent_id,
            'cursor': self.cursor.read(),
        }
        if self._strategy is not None:
            status.update(self._strategy.get_stats())
        return status
