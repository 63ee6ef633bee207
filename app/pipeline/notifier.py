"""In-process status notifier: fans status transitions out to subscribed observers (e.g. WebSocket clients)."""

import asyncio
import logging
from collections import defaultdict

from app.schemas.pipeline import StatusUpdate

logger = logging.getLogger(__name__)

# Subscription key that receives updates for every review.
ALL_REVIEWS = "*"


class StatusNotifier:
    """
    Publish/subscribe over asyncio queues, keyed by review id.

    publish never blocks: a subscriber whose queue is full misses the update (it can re-read the
    review status) instead of stalling the pipeline.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: defaultdict[str, set[asyncio.Queue[StatusUpdate]]] = defaultdict(set)

    def subscribe(self, review_id: str = ALL_REVIEWS) -> asyncio.Queue[StatusUpdate]:
        queue: asyncio.Queue[StatusUpdate] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[review_id].add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusUpdate], review_id: str = ALL_REVIEWS) -> None:
        queues = self._subscribers.get(review_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[review_id]

    def subscriber_count(self, review_id: str = ALL_REVIEWS) -> int:
        return len(self._subscribers.get(review_id, ()))

    def publish(self, update: StatusUpdate) -> int:
        """Deliver to the review's subscribers and the wildcard subscribers; returns deliveries made."""
        delivered = 0
        for key in (update.review_id, ALL_REVIEWS):
            for queue in list(self._subscribers.get(key, ())):
                try:
                    queue.put_nowait(update)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(
                        "Status subscriber queue full; update dropped",
                        extra={"review_id": update.review_id, "status": update.status.value},
                    )
        return delivered
