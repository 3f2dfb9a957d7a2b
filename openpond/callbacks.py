"""
Callback slots shared between the public client and the delivery loop.
"""

import inspect
import logging
import threading
from typing import Optional, Callable, Any

from .errors import OpenPondError
from .schemas import Message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Any]
ErrorCallback = Callable[[OpenPondError], Any]


class CallbackRegistry:
    """
    Holds at most one message callback and one error callback.

    The last registration wins and applies from the next dispatch on;
    nothing dispatched earlier is replayed. Callbacks may be plain
    functions or coroutine functions. A slot is snapshotted under the lock
    and invoked outside it, so a callback can safely replace itself.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._message_callback: Optional[MessageCallback] = None
        self._error_callback: Optional[ErrorCallback] = None

    def set_message_callback(self, callback: Optional[MessageCallback]) -> None:
        with self._lock:
            self._message_callback = callback

    def set_error_callback(self, callback: Optional[ErrorCallback]) -> None:
        with self._lock:
            self._error_callback = callback

    @property
    def message_callback(self) -> Optional[MessageCallback]:
        with self._lock:
            return self._message_callback

    @property
    def error_callback(self) -> Optional[ErrorCallback]:
        with self._lock:
            return self._error_callback

    async def dispatch_message(self, message: Message) -> bool:
        """Hand a message to the callback. Returns False if none is set."""
        callback = self.message_callback
        if callback is None:
            logger.debug(f"No message callback, message {message.id} not delivered")
            return False

        await self._invoke(callback, message, "message")
        return True

    async def dispatch_error(self, error: OpenPondError) -> bool:
        """Hand an error to the callback. Returns False if none is set."""
        callback = self.error_callback
        if callback is None:
            logger.debug(f"No error callback, absorbed: {error}")
            return False

        await self._invoke(callback, error, "error")
        return True

    @staticmethod
    async def _invoke(callback: Callable, value: Any, kind: str) -> None:
        # User code must not take the delivery loop down with it
        try:
            result = callback(value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Handler error in {kind} callback")
