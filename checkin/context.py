"""Application context: owns the stores, the sync bridge and the scanner gates."""

import logging
import threading
from typing import Callable, Iterable, Optional

from checkin.admin import check_event_name
from checkin.checkin import CheckInOutcome, ScanDebouncer, now_ms
from checkin.config import BACKEND_LOCAL, MAX_ID_ATTEMPTS, AppConfig
from checkin.errors import DuplicateIdError, PermissionDeniedError, TicketNotFoundError
from checkin.feed import ChangeFeed
from checkin.ids import generate_ticket_id
from checkin.models import EventSettings, EventSettingsIn, Ticket, TicketIn
from checkin.store import (
    LocalSettingsStore,
    LocalTicketStore,
    SettingsStore,
    SqliteSettingsStore,
    SqliteTicketStore,
    TicketStore,
)
from checkin.sync import Connectivity, SyncBridge

logger = logging.getLogger(__name__)


class AppContext:
    def __init__(
        self,
        store: TicketStore,
        settings_store: SettingsStore,
        feed: Optional[ChangeFeed] = None,
        scan_cooldown_ms: int = 2000,
        id_factory: Callable[[], str] = generate_ticket_id,
    ) -> None:
        self.store = store
        self.settings_store = settings_store
        self.feed = feed
        self.bridge = SyncBridge(store, feed)
        self.scan_cooldown_ms = scan_cooldown_ms
        self.id_factory = id_factory
        self._debouncers: dict[str, ScanDebouncer] = {}
        self._scan_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: AppConfig) -> "AppContext":
        if config.backend == BACKEND_LOCAL:
            return cls(
                LocalTicketStore(config.data_dir),
                LocalSettingsStore(config.data_dir),
                scan_cooldown_ms=config.scan_cooldown_ms,
            )
        feed = ChangeFeed()
        return cls(
            SqliteTicketStore(config.db_path, feed=feed),
            SqliteSettingsStore(config.db_path),
            feed=feed,
            scan_cooldown_ms=config.scan_cooldown_ms,
        )

    def start(self) -> None:
        self.bridge.start()

    def stop(self) -> None:
        self.bridge.stop()
        if self.feed is not None:
            self.feed.disconnect_all()

    # --- tickets ---

    def register_ticket(self, data: TicketIn) -> Ticket:
        """Mint an id and store a booked ticket, regenerating the id on collision."""
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            ticket = Ticket.book(self.id_factory(), data)
            try:
                created = self.bridge.create(ticket)
            except DuplicateIdError:
                logger.warning(
                    "Ticket id %s already taken (attempt %d/%d)",
                    ticket.id,
                    attempt,
                    MAX_ID_ATTEMPTS,
                )
                if attempt == MAX_ID_ATTEMPTS:
                    raise
                continue
            logger.info("Registered ticket %s for %s", created.id, created.full_name)
            return created

    def tickets(self, refresh: bool = False) -> list[Ticket]:
        if refresh:
            if self.bridge.connectivity is Connectivity.STALE:
                self.bridge.reconnect()
            else:
                self.bridge.refresh()
        return self.bridge.tickets

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.store.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    def delete_ticket(self, ticket_id: str) -> None:
        self.bridge.delete(ticket_id)
        logger.info("Deleted ticket %s", ticket_id)

    def delete_tickets(self, ticket_ids: Iterable[str]) -> int:
        removed = self.bridge.delete_many(ticket_ids)
        logger.info("Bulk deleted %d ticket(s)", removed)
        return removed

    # --- scanning ---

    def check_in(self, ticket_id: str) -> CheckInOutcome:
        return self.bridge.check_in(ticket_id)

    def scan(
        self, payload: str, device_id: str = "default", now: Optional[float] = None
    ) -> Optional[CheckInOutcome]:
        """Run a decoded payload through the device's debouncer and check in.

        Returns None when the scan falls inside the device's cooldown.
        """
        if now is None:
            now = now_ms()
        with self._scan_lock:
            self._evict_idle_debouncers(now)
            debouncer = self._debouncers.get(device_id)
            if debouncer is None:
                debouncer = self._debouncers[device_id] = ScanDebouncer(self.scan_cooldown_ms)
            accepted = debouncer.should_process(payload, now)
        if not accepted:
            logger.debug("Scan from %s ignored during cooldown", device_id)
            return None
        return self.check_in(payload)

    def _evict_idle_debouncers(self, now: float) -> None:
        # a debouncer past its window would accept anyway, so it can be forgotten
        idle = [
            device_id
            for device_id, debouncer in self._debouncers.items()
            if debouncer.last_accepted_at is None
            or now - debouncer.last_accepted_at >= debouncer.window_ms
        ]
        for device_id in idle:
            del self._debouncers[device_id]

    @property
    def active_scanners(self) -> int:
        with self._scan_lock:
            return len(self._debouncers)

    def report_camera_error(self, device_id: str, detail: str) -> PermissionDeniedError:
        error = PermissionDeniedError(detail)
        logger.warning("Scanner %s cannot use its camera: %s", device_id, detail or "no detail")
        return error

    # --- settings ---

    def load_settings(self) -> EventSettings:
        return self.settings_store.load()

    def save_settings(self, update: EventSettingsIn) -> EventSettings:
        settings = update.merge_into(self.settings_store.load())
        check_event_name(settings.event_name)
        saved = self.settings_store.save(settings)
        logger.info("Saved settings for event '%s'", saved.event_name)
        return saved
