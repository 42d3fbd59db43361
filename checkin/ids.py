"""Ticket identifier generation."""

import secrets
import string

from checkin.config import TICKET_ID_LENGTH, TICKET_ID_PREFIX

ALPHABET = string.digits + string.ascii_uppercase


def generate_ticket_id() -> str:
    """Return a new id such as ``T-4K9ZQ0B7M``.

    36**9 possible suffixes; uniqueness is enforced by the store, and the
    caller regenerates on DuplicateIdError.
    """
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(TICKET_ID_LENGTH))
    return TICKET_ID_PREFIX + suffix


def is_ticket_id(value: str) -> bool:
    if not value.startswith(TICKET_ID_PREFIX):
        return False
    suffix = value[len(TICKET_ID_PREFIX):]
    return len(suffix) == TICKET_ID_LENGTH and all(c in ALPHABET for c in suffix)
