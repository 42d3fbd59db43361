"""Tests for the change feed and the sync bridge cache.

Run with: pytest tests/test_sync.py -v
"""

import threading

from checkin.checkin import CheckInResult
from checkin.feed import ChangeFeed
from checkin.models import TicketChange, TicketStatus
from checkin.store import LocalTicketStore
from checkin.sync import Connectivity, SyncBridge
from tests.conftest import make_ticket


class TestChangeFeed:
    def test_delivers_to_every_subscriber(self):
        feed = ChangeFeed()
        first, second = [], []
        feed.subscribe(first.append)
        feed.subscribe(second.append)
        change = TicketChange.delete("T-A00000000")
        feed.publish(change)
        assert first == [change]
        assert second == [change]

    def test_closed_subscription_receives_nothing(self):
        feed = ChangeFeed()
        received = []
        subscription = feed.subscribe(received.append)
        subscription.close()
        feed.publish(TicketChange.delete("T-A00000000"))
        assert received == []
        assert feed.subscriber_count == 0

    def test_failing_subscriber_dropped_and_notified(self):
        """A subscriber that raises is removed; others keep receiving."""
        feed = ChangeFeed()
        dropped, received = [], []

        def explode(change):
            raise RuntimeError("socket gone")

        feed.subscribe(explode, on_disconnect=lambda: dropped.append(True))
        feed.subscribe(received.append)
        feed.publish(TicketChange.delete("T-A00000000"))
        feed.publish(TicketChange.delete("T-B00000000"))
        assert dropped == [True]
        assert len(received) == 2
        assert feed.subscriber_count == 1

    def test_disconnect_all_notifies(self):
        feed = ChangeFeed()
        dropped = []
        feed.subscribe(lambda c: None, on_disconnect=lambda: dropped.append(1))
        feed.disconnect_all()
        assert dropped == [1]
        assert feed.subscriber_count == 0


class TestSyncBridgeApply:
    """Applying change events to the cache by id."""

    def make_bridge(self, sqlite_store, feed):
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()
        return bridge

    def test_insert_prepends(self, sqlite_store, feed):
        bridge = self.make_bridge(sqlite_store, feed)
        bridge.apply(TicketChange.insert(make_ticket("T-A00000000")))
        bridge.apply(TicketChange.insert(make_ticket("T-B00000000")))
        assert [t.id for t in bridge.tickets] == ["T-B00000000", "T-A00000000"]

    def test_repeated_insert_does_not_duplicate(self, sqlite_store, feed):
        bridge = self.make_bridge(sqlite_store, feed)
        ticket = make_ticket("T-A00000000")
        bridge.apply(TicketChange.insert(ticket))
        bridge.apply(TicketChange.insert(ticket))
        assert len(bridge.tickets) == 1

    def test_update_replaces_last_wins(self, sqlite_store, feed):
        bridge = self.make_bridge(sqlite_store, feed)
        ticket = make_ticket("T-A00000000")
        bridge.apply(TicketChange.insert(ticket))
        bridge.apply(TicketChange.update(ticket.with_status(TicketStatus.ARRIVED)))
        assert bridge.find("T-A00000000").status is TicketStatus.ARRIVED

    def test_update_for_unknown_id_ignored(self, sqlite_store, feed):
        bridge = self.make_bridge(sqlite_store, feed)
        bridge.apply(TicketChange.update(make_ticket("T-A00000000")))
        assert bridge.tickets == []

    def test_delete_removes(self, sqlite_store, feed):
        bridge = self.make_bridge(sqlite_store, feed)
        bridge.apply(TicketChange.insert(make_ticket("T-A00000000")))
        bridge.apply(TicketChange.delete("T-A00000000"))
        assert bridge.find("T-A00000000") is None


class TestSyncBridgeRemote:
    """Synced variant: the cache follows the store's echoed changes."""

    def test_start_loads_snapshot_and_goes_live(self, sqlite_store, feed):
        sqlite_store.create(make_ticket("T-A00000000"))
        bridge = SyncBridge(sqlite_store, feed)
        assert bridge.connectivity is Connectivity.STALE
        bridge.start()
        assert bridge.connectivity is Connectivity.LIVE
        assert [t.id for t in bridge.tickets] == ["T-A00000000"]

    def test_other_devices_writes_reach_cache(self, sqlite_store, feed):
        """Writes made straight to the store by another device show up via the feed."""
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()
        sqlite_store.create(make_ticket("T-A00000000"))
        sqlite_store.set_status("T-A00000000", TicketStatus.ARRIVED)
        assert bridge.find("T-A00000000").status is TicketStatus.ARRIVED
        sqlite_store.delete("T-A00000000")
        assert bridge.tickets == []

    def test_bridge_writes_echo_once(self, sqlite_store, feed):
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()
        bridge.create(make_ticket("T-A00000000"))
        assert [t.id for t in bridge.tickets] == ["T-A00000000"]
        assert bridge.check_in("T-A00000000").result is CheckInResult.GRANTED
        assert bridge.find("T-A00000000").status is TicketStatus.ARRIVED

    def test_feed_drop_marks_stale_until_reconnect(self, sqlite_store, feed):
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()
        feed.disconnect_all()
        assert bridge.connectivity is Connectivity.STALE

        sqlite_store.create(make_ticket("T-MISSED000"))
        assert bridge.find("T-MISSED000") is None

        bridge.reconnect()
        assert bridge.connectivity is Connectivity.LIVE
        assert bridge.find("T-MISSED000") is not None

    def test_change_during_refresh_not_lost(self, sqlite_store, feed, monkeypatch):
        """A write committed between the snapshot and the swap still reaches the cache."""
        committed = threading.Event()
        feed.subscribe(lambda change: committed.set())
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()

        snapshot = sqlite_store.list_all
        writer = threading.Thread(
            target=sqlite_store.create, args=(make_ticket("T-RACED0000"),)
        )

        def list_then_write():
            tickets = snapshot()
            writer.start()
            assert committed.wait(5)
            return tickets

        monkeypatch.setattr(sqlite_store, "list_all", list_then_write)
        bridge.refresh()
        writer.join(5)

        assert sqlite_store.get("T-RACED0000") is not None
        assert bridge.find("T-RACED0000") is not None
        assert bridge.connectivity is Connectivity.LIVE

    def test_stop_unsubscribes(self, sqlite_store, feed):
        bridge = SyncBridge(sqlite_store, feed)
        bridge.start()
        bridge.stop()
        assert feed.subscriber_count == 0
        assert bridge.connectivity is Connectivity.STALE


class TestSyncBridgeLocal:
    """Local variant: the bridge updates its own cache after each write."""

    def test_local_connectivity(self, tmp_path):
        bridge = SyncBridge(LocalTicketStore(tmp_path))
        bridge.start()
        assert bridge.connectivity is Connectivity.LOCAL

    def test_optimistic_writes(self, tmp_path):
        bridge = SyncBridge(LocalTicketStore(tmp_path))
        bridge.start()
        bridge.create(make_ticket("T-A00000000"))
        bridge.create(make_ticket("T-B00000000"))
        assert [t.id for t in bridge.tickets] == ["T-B00000000", "T-A00000000"]

        bridge.check_in("T-A00000000")
        assert bridge.find("T-A00000000").status is TicketStatus.ARRIVED

        assert bridge.delete_many({"T-A00000000", "T-B00000000"}) == 2
        assert bridge.tickets == []

    def test_rejected_check_in_leaves_cache(self, tmp_path):
        bridge = SyncBridge(LocalTicketStore(tmp_path))
        bridge.start()
        bridge.create(make_ticket("T-A00000000"))
        bridge.check_in("T-A00000000")
        before = bridge.tickets
        assert bridge.check_in("T-A00000000").result is CheckInResult.ALREADY_ARRIVED
        assert bridge.tickets == before
