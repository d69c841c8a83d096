import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

from ..utils.logger import get_logger

logger = get_logger(__name__)

LIBRARY_UPDATED = "library-updated"
PLAYBACK_ENDED = "playback-ended"
SCAN_COMPLETE = "scan-complete"

Listener = Callable[[str, Dict[str, Any]], Any]


class EventBus:
    """
    Fan-out of UI events.
    Listeners are plain or async callables; subscribers get their own queue
    (used by the server-sent events endpoint).
    """

    def __init__(self, queue_size: int = 256):
        self._listeners: List[Listener] = []
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    async def emit(self, name: str, payload: Optional[Dict[str, Any]] = None):
        payload = payload or {}
        logger.debug(f"Event {name}: {payload}")

        for listener in list(self._listeners):
            try:
                result = listener(name, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event listener failed for {name}")

        for queue in list(self._queues):
            try:
                queue.put_nowait((name, payload))
            except asyncio.QueueFull:
                logger.warning(f"Dropping {name} event for a slow subscriber")
