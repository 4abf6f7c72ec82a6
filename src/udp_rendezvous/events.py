"""
Minimal publish/subscribe registry used for protocol notifications.
"""
import asyncio
import inspect
from typing import Callable, List, Optional

import structlog


class Event:
    """
    A named list of subscriber callbacks.

    Callbacks may be plain functions or coroutine functions. Coroutines are
    scheduled on the running loop. Exceptions raised by subscribers are logged
    and never reach the code that emitted the event.
    """

    def __init__(
        self,
        name: str,
        on_subscribe: Optional[Callable[[Callable], None]] = None,
        on_unsubscribe: Optional[Callable[[Callable], None]] = None,
    ):
        """
        Args:
            name: Event name used in log records
            on_subscribe: Hook called with each newly added callback
            on_unsubscribe: Hook called with each removed callback
        """
        self.name = name
        self._subscribers: List[Callable] = []
        self._on_subscribe = on_subscribe
        self._on_unsubscribe = on_unsubscribe
        self.logger = structlog.get_logger().bind(event_name=name)

    @property
    def subscribers(self) -> List[Callable]:
        return list(self._subscribers)

    def subscribe(self, callback: Callable) -> Callable:
        """Add a callback. Returns it so the method works as a decorator."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)
            if self._on_subscribe:
                self._on_subscribe(callback)
        return callback

    def unsubscribe(self, callback: Callable):
        if callback in self._subscribers:
            self._subscribers.remove(callback)
            if self._on_unsubscribe:
                self._on_unsubscribe(callback)

    def emit(self, *args):
        """Invoke every subscriber with the given arguments."""
        for callback in list(self._subscribers):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    task.add_done_callback(self._log_task_error)
            except Exception as e:
                self.logger.error("event_subscriber_failed", error=str(e))

    def _log_task_error(self, task: "asyncio.Future"):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("event_subscriber_failed", error=str(exc))

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, callback: Callable) -> bool:
        return callback in self._subscribers
