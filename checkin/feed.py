"""In-process change feed for ticket rows.

The synced store publishes one TicketChange per committed write. Subscribers
get an explicit Subscription handle; delivery is synchronous and in publish
order, so the last delivered change for a ticket wins.
"""

import logging
import threading
from typing import Callable, Optional

from checkin.models import TicketChange

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[TicketChange], None]
DisconnectCallback = Callable[[], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe."""

    def __init__(
        self,
        feed: "ChangeFeed",
        callback: ChangeCallback,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> None:
        self._feed = feed
        self.callback = callback
        self.on_disconnect = on_disconnect
        self.active = True

    def close(self) -> None:
        """Stop receiving changes. Does not fire on_disconnect."""
        if self.active:
            self.active = False
            self._feed._remove(self)

    def _drop(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.on_disconnect is not None:
            try:
                self.on_disconnect()
            except Exception:
                logger.exception("Disconnect handler failed")


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: ChangeCallback,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> Subscription:
        subscription = Subscription(self, callback, on_disconnect)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Feed subscriber added (%d total)", len(self._subscriptions))
        return subscription

    def publish(self, change: TicketChange) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                subscription.callback(change)
            except Exception:
                logger.exception("Feed subscriber failed; dropping it")
                self._remove(subscription)
                subscription._drop()

    def disconnect_all(self) -> None:
        """Drop every subscriber, notifying each one that it is disconnected."""
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._drop()
        if subscriptions:
            logger.warning("Change feed disconnected %d subscriber(s)", len(subscriptions))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
