"""
Topic-based publish/subscribe for live hole media updates.

Viewers of a hole page subscribe to two topics:

- `hole_<id>_images`: tile events. A newly created image is prepended to the
  grid; an updated image replaces its own tile.
- `hole_<id>_flash`: the "processing..." notice, cleared once an image is ready.

Publishing happens from worker threads as well as request handlers, so the
subscriber registry is guarded by a lock and callbacks are invoked outside it.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Subscriber = Callable[[Event], None]

IMAGES_GRID_TARGET = "hole_images_grid"
FLASH_TARGET = "hole_flash"


def image_stream(hole_id: int) -> str:
    return f"hole_{hole_id}_images"


def flash_stream(hole_id: int) -> str:
    return f"hole_{hole_id}_flash"


def tile_target(image_id: int) -> str:
    return f"hole_image_{image_id}"


class Broadcaster:
    """Thread-safe in-process topic broadcaster."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for `topic`. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(topic, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(topic, None)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, event: Event) -> int:
        """
        Deliver `event` to every subscriber of `topic`.

        A subscriber that raises is logged and skipped. Returns the number of
        successful deliveries.
        """
        with self._lock:
            callbacks = list(self._subscribers.get(topic, []))

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Subscriber on '{topic}' failed: {exc}")
        logger.debug(f"Published {event.get('action')} to '{topic}' ({delivered} subscribers)")
        return delivered

    def prepend_tile(self, hole_id: int, image: Dict[str, Any]) -> int:
        return self.publish(
            image_stream(hole_id),
            {"action": "prepend", "target": IMAGES_GRID_TARGET, "image": image},
        )

    def replace_tile(self, hole_id: int, image: Dict[str, Any]) -> int:
        return self.publish(
            image_stream(hole_id),
            {"action": "replace", "target": tile_target(image["id"]), "image": image},
        )

    def clear_flash(self, hole_id: int) -> int:
        return self.publish(
            flash_stream(hole_id),
            {"action": "replace", "target": FLASH_TARGET, "html": ""},
        )


_broadcaster: Optional[Broadcaster] = None


def get_broadcaster() -> Broadcaster:
    """Get or create the global broadcaster instance."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = Broadcaster()
    return _broadcaster
