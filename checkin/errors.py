"""Domain error codes for ticket check-in."""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    DUPLICATE_ID = "DUPLICATE_ID"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    STATUS_CONFLICT = "STATUS_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PROHIBITED_EVENT_NAME = "PROHIBITED_EVENT_NAME"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class DuplicateIdError(DomainError):
    """Raised when a ticket id is already taken."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(ErrorCode.DUPLICATE_ID, "Ticket id already exists")
        self.ticket_id = ticket_id


class TicketNotFoundError(DomainError):
    """Raised when a ticket does not exist."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(ErrorCode.TICKET_NOT_FOUND, "Ticket not found")
        self.ticket_id = ticket_id


class StatusConflictError(DomainError):
    """Raised when a conditional status update finds an unexpected status.

    Carries the ticket as it is currently stored.
    """

    def __init__(self, ticket) -> None:
        super().__init__(
            ErrorCode.STATUS_CONFLICT,
            f"Ticket is already {ticket.status.value}",
        )
        self.ticket = ticket


class InvalidTransitionError(DomainError, ValueError):
    """Raised for any status change other than booked -> arrived."""

    def __init__(self, current, new) -> None:
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot move ticket from {current.value} to {new.value}",
        )


class StoreUnavailableError(DomainError):
    """Raised when the backing store cannot be reached or written."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            ErrorCode.STORE_UNAVAILABLE,
            "Ticket store is unavailable, please retry",
        )
        self.operation = operation


class PermissionDeniedError(DomainError):
    """Raised when a scanner device reports it cannot use its camera."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(
            ErrorCode.PERMISSION_DENIED,
            "Camera access denied or not supported",
        )
        self.detail = detail


class ProhibitedEventNameError(DomainError):
    """Raised when an event name fails the profanity filter."""

    def __init__(self, event_name: str) -> None:
        super().__init__(
            ErrorCode.PROHIBITED_EVENT_NAME,
            f"Event '{event_name}' is prohibited",
        )
        self.event_name = event_name
