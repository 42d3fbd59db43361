"""QR images, share links and CSV export."""

import csv
from io import BytesIO, StringIO
from typing import Iterable
from urllib.parse import quote

import qrcode

from checkin.models import EventSettings, Ticket

SHARE_BASE_URL = "https://wa.me/"
CSV_HEADER = ["ID", "Full Name", "Gender", "Age", "Phone", "Status", "Created At", "Event"]


def qr_png(payload: str) -> BytesIO:
    """Render the QR code for a payload as a PNG buffer."""
    img = qrcode.make(payload)
    buf = BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return buf


def share_message(settings: EventSettings) -> str:
    return f"Here is your ticket for {settings.event_name}!"


def share_link(settings: EventSettings) -> str:
    return f"{SHARE_BASE_URL}?text={quote(share_message(settings))}"


def download_filename(ticket_id: str) -> str:
    return f"ticket-{ticket_id}.png"


def tickets_csv(tickets: Iterable[Ticket]) -> StringIO:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for t in tickets:
        writer.writerow(
            [
                t.id,
                t.full_name,
                t.gender,
                t.age,
                t.phone_number,
                t.status.value,
                t.created_at.isoformat(),
                t.event_id,
            ]
        )
    output.seek(0)
    return output
