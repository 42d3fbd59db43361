"""QR ticket check-in: ticket store, check-in state machine and sync bridge."""

__version__ = "0.1.0"
