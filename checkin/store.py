"""Ticket and settings stores.

Two backends honour the same contract:

- LocalTicketStore keeps serialized JSON text under fixed keys (one file per
  key), for a single scanner device.
- SqliteTicketStore is the synced backend: a uniqueness constraint on ``id``,
  conditional UPDATE for status transitions, and a change feed for pushing
  committed writes to connected devices.

Writes are serialized with a FileLock, as every other writer in this app is.
"""

import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from filelock import FileLock, Timeout

from checkin.config import LOCK_TIMEOUT, SETTINGS_ROW_KEY
from checkin.errors import (
    DuplicateIdError,
    InvalidTransitionError,
    StatusConflictError,
    StoreUnavailableError,
    TicketNotFoundError,
)
from checkin.feed import ChangeFeed
from checkin.models import EventSettings, Ticket, TicketChange, TicketStatus

logger = logging.getLogger(__name__)

TICKETS_KEY = "tickets"
SETTINGS_KEY = "eventSettings"

ALLOWED_TRANSITIONS = {(TicketStatus.BOOKED, TicketStatus.ARRIVED)}


def check_transition(current: TicketStatus, new: TicketStatus) -> None:
    if (current, new) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(current, new)


@contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Translate backend I/O failures into StoreUnavailableError."""
    try:
        yield
    except (sqlite3.Error, OSError, Timeout, ValueError) as exc:
        if isinstance(exc, InvalidTransitionError):
            raise
        logger.exception("Store operation '%s' failed", operation)
        raise StoreUnavailableError(operation) from exc


class TicketStore(ABC):
    """Interface for ticket persistence operations."""

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed

    @abstractmethod
    def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket as booked.

        Raises:
            DuplicateIdError: If the id already exists.
        """
        ...

    @abstractmethod
    def get(self, ticket_id: str) -> Ticket | None:
        """Return a ticket by id, or None if not found."""
        ...

    @abstractmethod
    def list_all(self) -> list[Ticket]:
        """Return all tickets ordered by created_at descending."""
        ...

    @abstractmethod
    def set_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        expected: TicketStatus = TicketStatus.BOOKED,
    ) -> Ticket:
        """Atomically move a ticket from ``expected`` to ``new_status``.

        Exactly one of several concurrent callers succeeds.

        Raises:
            TicketNotFoundError: If the ticket does not exist.
            StatusConflictError: If the stored status is not ``expected``.
            InvalidTransitionError: If the transition is not booked -> arrived.
        """
        ...

    @abstractmethod
    def delete(self, ticket_id: str) -> None:
        """Delete one ticket.

        Raises:
            TicketNotFoundError: If the ticket does not exist.
        """
        ...

    @abstractmethod
    def delete_many(self, ticket_ids: Iterable[str]) -> int:
        """Delete the given tickets, ignoring unknown ids. Returns the count removed."""
        ...

    def _publish(self, change: TicketChange) -> None:
        if self.feed is not None:
            self.feed.publish(change)


class SettingsStore(ABC):
    """Interface for the singleton event settings."""

    @abstractmethod
    def load(self) -> EventSettings:
        """Return stored settings, or defaults when none are stored."""
        ...

    @abstractmethod
    def save(self, settings: EventSettings) -> EventSettings:
        ...


# -------------------
# --- LOCAL (JSON) ---
# -------------------
class JsonKeyValue:
    """Serialized text stored under fixed keys, one file per key."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.directory / "local.lock"

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def lock(self) -> FileLock:
        return FileLock(self.lock_path, timeout=LOCK_TIMEOUT)

    def read(self, key: str):
        path = self.path_for(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write(self, key: str, value) -> None:
        path = self.path_for(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)


class LocalTicketStore(TicketStore):
    """Single-device store; the ticket list is kept newest first."""

    def __init__(self, directory: Path, feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(feed)
        self.kv = JsonKeyValue(directory)

    def _load(self) -> list[Ticket]:
        raw = self.kv.read(TICKETS_KEY) or []
        return [Ticket.model_validate(item) for item in raw]

    def _dump(self, tickets: list[Ticket]) -> None:
        self.kv.write(TICKETS_KEY, [t.model_dump(mode="json") for t in tickets])

    def create(self, ticket: Ticket) -> Ticket:
        ticket = ticket.with_status(TicketStatus.BOOKED)
        with store_guard("create"), self.kv.lock():
            tickets = self._load()
            if any(t.id == ticket.id for t in tickets):
                raise DuplicateIdError(ticket.id)
            tickets.insert(0, ticket)
            self._dump(tickets)
            self._publish(TicketChange.insert(ticket))
        return ticket

    def get(self, ticket_id: str) -> Ticket | None:
        with store_guard("get"):
            for ticket in self._load():
                if ticket.id == ticket_id:
                    return ticket
        return None

    def list_all(self) -> list[Ticket]:
        with store_guard("list"):
            tickets = self._load()
        # stable sort keeps newest-inserted first on equal timestamps
        return sorted(tickets, key=lambda t: t.created_at, reverse=True)

    def set_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        expected: TicketStatus = TicketStatus.BOOKED,
    ) -> Ticket:
        check_transition(expected, new_status)
        with store_guard("set_status"), self.kv.lock():
            tickets = self._load()
            for index, ticket in enumerate(tickets):
                if ticket.id != ticket_id:
                    continue
                if ticket.status != expected:
                    raise StatusConflictError(ticket)
                updated = ticket.with_status(new_status)
                tickets[index] = updated
                self._dump(tickets)
                self._publish(TicketChange.update(updated))
                return updated
        raise TicketNotFoundError(ticket_id)

    def delete(self, ticket_id: str) -> None:
        with store_guard("delete"), self.kv.lock():
            tickets = self._load()
            remaining = [t for t in tickets if t.id != ticket_id]
            if len(remaining) == len(tickets):
                raise TicketNotFoundError(ticket_id)
            self._dump(remaining)
            self._publish(TicketChange.delete(ticket_id))

    def delete_many(self, ticket_ids: Iterable[str]) -> int:
        wanted = set(ticket_ids)
        with store_guard("delete_many"), self.kv.lock():
            tickets = self._load()
            removed = [t.id for t in tickets if t.id in wanted]
            if removed:
                self._dump([t for t in tickets if t.id not in wanted])
            for ticket_id in removed:
                self._publish(TicketChange.delete(ticket_id))
        return len(removed)


class LocalSettingsStore(SettingsStore):
    def __init__(self, directory: Path) -> None:
        self.kv = JsonKeyValue(directory)

    def load(self) -> EventSettings:
        with store_guard("load_settings"):
            raw = self.kv.read(SETTINGS_KEY)
        return EventSettings.model_validate(raw) if raw else EventSettings()

    def save(self, settings: EventSettings) -> EventSettings:
        with store_guard("save_settings"), self.kv.lock():
            self.kv.write(SETTINGS_KEY, settings.model_dump(mode="json"))
        return settings


# -------------------
# --- SQLITE (SYNCED) ---
# -------------------
TICKET_COLUMNS = "id, full_name, gender, age, phone_number, status, created_at, event_id"


def init_db(db_path: Path) -> None:
    """Create the tickets and settings tables if they don't exist."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                gender TEXT NOT NULL,
                age INTEGER NOT NULL CHECK (age > 0),
                phone_number TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'booked'
                    CHECK (status IN ('booked', 'arrived')),
                created_at TEXT NOT NULL,
                event_id TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                event_name TEXT NOT NULL,
                event_place TEXT NOT NULL,
                arrival_deadline TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tickets_created_at ON tickets (created_at)"
        )
        conn.commit()
    finally:
        conn.close()


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        full_name=row["full_name"],
        gender=row["gender"],
        age=row["age"],
        phone_number=row["phone_number"],
        status=TicketStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        event_id=row["event_id"],
    )


class SqliteDatabase:
    """Connection and lock factory shared by the SQLite stores."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.lock_path = Path(str(self.db_path) + ".lock")
        init_db(self.db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=LOCK_TIMEOUT)
        conn.row_factory = sqlite3.Row
        return conn

    def lock(self) -> FileLock:
        return FileLock(self.lock_path, timeout=LOCK_TIMEOUT)


class SqliteTicketStore(TicketStore):
    """Synced backend. Status transitions are conditional UPDATEs."""

    def __init__(self, db_path: Path, feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(feed)
        self.db = SqliteDatabase(db_path)

    def create(self, ticket: Ticket) -> Ticket:
        ticket = ticket.with_status(TicketStatus.BOOKED)
        with store_guard("create"), self.db.lock():
            conn = self.db.connect()
            try:
                conn.execute(
                    f"INSERT INTO tickets ({TICKET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        ticket.id,
                        ticket.full_name,
                        ticket.gender,
                        ticket.age,
                        ticket.phone_number,
                        ticket.status.value,
                        ticket.created_at.isoformat(timespec="microseconds"),
                        ticket.event_id,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                raise DuplicateIdError(ticket.id) from exc
            finally:
                conn.close()
            self._publish(TicketChange.insert(ticket))
        return ticket

    def get(self, ticket_id: str) -> Ticket | None:
        with store_guard("get"):
            conn = self.db.connect()
            try:
                row = conn.execute(
                    f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,)
                ).fetchone()
            finally:
                conn.close()
        return _row_to_ticket(row) if row else None

    def list_all(self) -> list[Ticket]:
        with store_guard("list"):
            conn = self.db.connect()
            try:
                rows = conn.execute(
                    f"SELECT {TICKET_COLUMNS} FROM tickets "
                    "ORDER BY created_at DESC, rowid DESC"
                ).fetchall()
            finally:
                conn.close()
        return [_row_to_ticket(r) for r in rows]

    def set_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        expected: TicketStatus = TicketStatus.BOOKED,
    ) -> Ticket:
        check_transition(expected, new_status)
        with store_guard("set_status"), self.db.lock():
            conn = self.db.connect()
            try:
                cur = conn.execute(
                    "UPDATE tickets SET status = ? WHERE id = ? AND status = ?",
                    (new_status.value, ticket_id, expected.value),
                )
                updated = cur.rowcount == 1
                row = conn.execute(
                    f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = ?", (ticket_id,)
                ).fetchone()
                conn.commit()
            finally:
                conn.close()
            if row is None:
                raise TicketNotFoundError(ticket_id)
            ticket = _row_to_ticket(row)
            if not updated:
                raise StatusConflictError(ticket)
            self._publish(TicketChange.update(ticket))
        return ticket

    def delete(self, ticket_id: str) -> None:
        with store_guard("delete"), self.db.lock():
            conn = self.db.connect()
            try:
                cur = conn.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
                conn.commit()
            finally:
                conn.close()
            if cur.rowcount == 0:
                raise TicketNotFoundError(ticket_id)
            self._publish(TicketChange.delete(ticket_id))

    def delete_many(self, ticket_ids: Iterable[str]) -> int:
        wanted = sorted(set(ticket_ids))
        if not wanted:
            return 0
        with store_guard("delete_many"), self.db.lock():
            conn = self.db.connect()
            try:
                placeholders = ", ".join("?" for _ in wanted)
                rows = conn.execute(
                    f"SELECT id FROM tickets WHERE id IN ({placeholders})", wanted
                ).fetchall()
                removed = [r["id"] for r in rows]
                conn.execute(f"DELETE FROM tickets WHERE id IN ({placeholders})", wanted)
                conn.commit()
            finally:
                conn.close()
            for ticket_id in removed:
                self._publish(TicketChange.delete(ticket_id))
        return len(removed)


class SqliteSettingsStore(SettingsStore):
    """Settings mirrored to a single row under a fixed key."""

    def __init__(self, db_path: Path) -> None:
        self.db = SqliteDatabase(db_path)

    def load(self) -> EventSettings:
        with store_guard("load_settings"):
            conn = self.db.connect()
            try:
                row = conn.execute(
                    "SELECT event_name, event_place, arrival_deadline FROM settings WHERE key = ?",
                    (SETTINGS_ROW_KEY,),
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return EventSettings()
        return EventSettings(
            event_name=row["event_name"],
            event_place=row["event_place"],
            arrival_deadline=row["arrival_deadline"],
        )

    def save(self, settings: EventSettings) -> EventSettings:
        deadline = settings.arrival_deadline.isoformat() if settings.arrival_deadline else None
        with store_guard("save_settings"), self.db.lock():
            conn = self.db.connect()
            try:
                conn.execute(
                    "INSERT INTO settings (key, event_name, event_place, arrival_deadline) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET event_name = excluded.event_name, "
                    "event_place = excluded.event_place, "
                    "arrival_deadline = excluded.arrival_deadline",
                    (SETTINGS_ROW_KEY, settings.event_name, settings.event_place, deadline),
                )
                conn.commit()
            finally:
                conn.close()
        return settings
