"""Check-in state machine and scan debouncer.

A ticket is ``booked`` until its first accepted scan moves it to ``arrived``.
The move is one conditional write against the store rather than a read
followed by a write: when two door devices scan the same ticket at once,
the store lets exactly one of them through and the other sees the ticket
as already arrived.
"""

import logging
import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from checkin.errors import StatusConflictError, TicketNotFoundError
from checkin.models import Ticket, TicketStatus
from checkin.store import TicketStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 2000


class CheckInResult(str, Enum):
    GRANTED = "granted"
    ALREADY_ARRIVED = "already_arrived"
    NOT_FOUND = "not_found"


class CheckInOutcome(BaseModel):
    result: CheckInResult
    ticket_id: str
    ticket: Optional[Ticket] = None

    @property
    def granted(self) -> bool:
        return self.result is CheckInResult.GRANTED

    @property
    def message(self) -> str:
        if self.result is CheckInResult.GRANTED:
            return f"Welcome, {self.ticket.full_name}!"
        if self.result is CheckInResult.ALREADY_ARRIVED:
            return f"Already Used: {self.ticket.full_name}"
        return "Invalid Ticket!"


def check_in(store: TicketStore, ticket_id: str) -> CheckInOutcome:
    """Admit the ticket behind a scanned payload, at most once.

    Only the granted path mutates the store.
    """
    ticket_id = ticket_id.strip()
    if not ticket_id:
        return CheckInOutcome(result=CheckInResult.NOT_FOUND, ticket_id=ticket_id)

    try:
        ticket = store.set_status(ticket_id, TicketStatus.ARRIVED, expected=TicketStatus.BOOKED)
    except TicketNotFoundError:
        logger.info("Check-in rejected, unknown ticket %s", ticket_id)
        return CheckInOutcome(result=CheckInResult.NOT_FOUND, ticket_id=ticket_id)
    except StatusConflictError as exc:
        logger.info("Check-in rejected, ticket %s already arrived", ticket_id)
        return CheckInOutcome(
            result=CheckInResult.ALREADY_ARRIVED, ticket_id=ticket_id, ticket=exc.ticket
        )

    logger.info("Check-in granted for ticket %s", ticket_id)
    return CheckInOutcome(result=CheckInResult.GRANTED, ticket_id=ticket_id, ticket=ticket)


def now_ms() -> float:
    return time.monotonic() * 1000


class ScanDebouncer:
    """Global cooldown after each accepted scan, whatever the payload.

    Consecutive camera frames of one code must not each trigger a check-in.
    The cooldown is per device, not per ticket.
    """

    def __init__(self, window_ms: float = DEFAULT_COOLDOWN_MS) -> None:
        self.window_ms = window_ms
        self.last_accepted_at: Optional[float] = None

    def should_process(self, payload: str, now: Optional[float] = None) -> bool:
        if now is None:
            now = now_ms()
        if self.last_accepted_at is not None and now - self.last_accepted_at < self.window_ms:
            return False
        self.last_accepted_at = now
        return True
