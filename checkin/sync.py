"""Device-side ticket cache kept in step with the store.

With a change feed (synced variant) the cache changes only when the store
echoes a committed write back through the feed. Without one (local variant)
the bridge mutates the cache itself right after each successful write.
Either way the cache is for display; the store decides every write.
"""

import logging
import threading
from enum import Enum
from typing import Iterable, Optional

from checkin.checkin import CheckInOutcome, check_in
from checkin.feed import ChangeFeed, Subscription
from checkin.models import ChangeKind, Ticket, TicketChange
from checkin.store import TicketStore

logger = logging.getLogger(__name__)


class Connectivity(str, Enum):
    LOCAL = "local"
    LIVE = "live"
    STALE = "stale"


class SyncBridge:
    def __init__(self, store: TicketStore, feed: Optional[ChangeFeed] = None) -> None:
        self.store = store
        self.feed = feed
        self._tickets: list[Ticket] = []
        self._lock = threading.Lock()
        self._subscription: Optional[Subscription] = None
        self.connectivity = Connectivity.LOCAL if feed is None else Connectivity.STALE

    @property
    def optimistic(self) -> bool:
        return self.feed is None

    def start(self) -> None:
        if self.feed is not None:
            self._subscribe()
        self.refresh()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self.feed is not None:
            self.connectivity = Connectivity.STALE

    def reconnect(self) -> None:
        """Resubscribe after a dropped feed and reload the snapshot."""
        self.stop()
        self.start()
        logger.info("Sync bridge reconnected, %d ticket(s) cached", len(self._tickets))

    def refresh(self) -> None:
        # snapshot under the lock so a change published meanwhile is applied after it
        with self._lock:
            self._tickets = self.store.list_all()

    def _subscribe(self) -> None:
        self._subscription = self.feed.subscribe(self.apply, on_disconnect=self._on_disconnect)
        self.connectivity = Connectivity.LIVE

    def _on_disconnect(self) -> None:
        self._subscription = None
        self.connectivity = Connectivity.STALE
        logger.warning("Change feed lost; ticket list is stale until reconnect")

    # --- cache ---

    @property
    def tickets(self) -> list[Ticket]:
        with self._lock:
            return list(self._tickets)

    def find(self, ticket_id: str) -> Ticket | None:
        with self._lock:
            for ticket in self._tickets:
                if ticket.id == ticket_id:
                    return ticket
        return None

    def apply(self, change: TicketChange) -> None:
        """Apply one change by id; the last delivered change wins."""
        with self._lock:
            if change.kind is ChangeKind.DELETE:
                self._tickets = [t for t in self._tickets if t.id != change.ticket_id]
            elif change.kind is ChangeKind.INSERT:
                self._tickets = [change.ticket] + [
                    t for t in self._tickets if t.id != change.ticket_id
                ]
            else:
                self._tickets = [
                    change.ticket if t.id == change.ticket_id else t for t in self._tickets
                ]

    # --- writes: store first, then the cache ---

    def create(self, ticket: Ticket) -> Ticket:
        created = self.store.create(ticket)
        if self.optimistic:
            self.apply(TicketChange.insert(created))
        return created

    def delete(self, ticket_id: str) -> None:
        self.store.delete(ticket_id)
        if self.optimistic:
            self.apply(TicketChange.delete(ticket_id))

    def delete_many(self, ticket_ids: Iterable[str]) -> int:
        ticket_ids = set(ticket_ids)
        removed = self.store.delete_many(ticket_ids)
        if self.optimistic:
            for ticket_id in ticket_ids:
                self.apply(TicketChange.delete(ticket_id))
        return removed

    def check_in(self, ticket_id: str) -> CheckInOutcome:
        outcome = check_in(self.store, ticket_id)
        if self.optimistic and outcome.granted:
            self.apply(TicketChange.update(outcome.ticket))
        return outcome
