"""Unit tests for ticket identifier generation.

Run with: pytest tests/test_ids.py -v
"""

from checkin.ids import ALPHABET, generate_ticket_id, is_ticket_id


class TestGenerateTicketId:
    """Tests for generate_ticket_id."""

    def test_has_prefix_and_nine_char_suffix(self):
        """Ids are T- followed by nine base-36 characters."""
        ticket_id = generate_ticket_id()
        assert ticket_id.startswith("T-")
        assert len(ticket_id) == 11
        assert all(c in ALPHABET for c in ticket_id[2:])

    def test_generated_ids_validate(self):
        assert is_ticket_id(generate_ticket_id())

    def test_no_collisions_at_event_scale(self):
        """A few thousand ids do not collide."""
        ids = {generate_ticket_id() for _ in range(5000)}
        assert len(ids) == 5000


class TestIsTicketId:
    def test_rejects_wrong_prefix(self):
        assert not is_ticket_id("X-ABCDEFGHI")

    def test_rejects_lowercase_suffix(self):
        assert not is_ticket_id("T-abcdefghi")

    def test_rejects_wrong_length(self):
        assert not is_ticket_id("T-ABC")
