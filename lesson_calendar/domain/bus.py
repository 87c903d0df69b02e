"""Simple synchronous in-process bus for post-commit lesson events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventBus:
    """Publish/subscribe bus for lesson events.

    The mutation service publishes only after a commit has been written,
    one event per applied change in the order the changes were made
    (reschedule before field update before cancellation, per lesson), and
    ``ConflictOverridden`` last. Handlers therefore always read the
    committed lesson state and can build a timeline by appending.

    Handlers run synchronously in registration order; a failing handler
    propagates to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Callable[[Any], None]) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event: Any) -> None:
        handlers = self._subscribers.get(type(event), [])
        logger.debug("publishing %s to %d handler(s)", type(event).__name__, len(handlers))
        for handler in handlers:
            handler(event)
