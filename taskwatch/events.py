"""In-process publish/subscribe for persisted record sets.

Delivery guarantee: best effort, at most once per publish, no replay. A
subscriber that joins after a publish never sees it. When an asyncio event
loop is running, delivery is deferred to the next loop iteration so a
publisher is never re-entered by its own subscribers; without a loop,
delivery happens immediately.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

HISTORY_EVENT = "taskwatch:history-update"
LIFE_ROUTINES_EVENT = "taskwatch:life-routines-update"
REPEATING_RULES_EVENT = "taskwatch:repeating-rules-update"


class Broadcaster:
    """Named-event publish/subscribe channel."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``callback`` for ``event``.

        Returns:
            A function that removes the subscription. Calling it twice is harmless.
        """
        self._subscribers.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    def publish(self, event: str, payload: Any) -> None:
        """Deliver ``payload`` to every current subscriber of ``event``."""
        callbacks = list(self._subscribers.get(event, []))
        if not callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            self._deliver(event, callbacks, payload)
        else:
            loop.call_soon(self._deliver, event, callbacks, payload)

    @staticmethod
    def _deliver(event: str, callbacks: List[Callable[[Any], None]], payload: Any) -> None:
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.warning(f"Subscriber for {event} failed: {e}", exc_info=True)
