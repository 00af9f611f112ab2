"""
Tests for tracker aggregation and the packet log in tracker_store.py

Run: python -m pytest test_tracker_store.py -v
"""

import pytest

from telemetry import FixStatus, PALETTE, make_packet
from tracker_store import TrackerStore, MAX_TRAIL_POINTS, MAX_LOG_PACKETS


def fix_packet(node_id, i=0, ts=None):
    return make_packet(
        node_id=node_id,
        lat=42.7 + i * 1e-5,
        lon=-77.19 - i * 1e-5,
        rssi=-60,
        snr=8,
        fix_status=FixStatus.FIX,
        satellites=9,
        timestamp=ts if ts is not None else 1000 + i,
    )


def nofix_packet(node_id, ts=5000):
    return make_packet(node_id=node_id, rssi=-90, snr=-3, fix_status=FixStatus.NOFIX, timestamp=ts)


@pytest.fixture
def store():
    return TrackerStore()


class TestTrackers:

    def test_first_packet_creates_tracker(self, store):
        store.ingest(fix_packet("3"))
        t = store.get_tracker("3")
        assert t.first_seen_order == 0
        assert t.display_color == PALETTE[0]
        assert len(t.trail) == 1
        assert t.latest.node_id == "3"

    def test_colour_and_order_are_stable(self, store):
        for node in ("1", "2", "3"):
            store.ingest(fix_packet(node))
        colours = {t.node_id: t.display_color for t in store.snapshot()}
        for i in range(20):
            store.ingest(fix_packet("2", i))
        assert {t.node_id: t.display_color for t in store.snapshot()} == colours
        assert [t.node_id for t in store.snapshot()] == ["1", "2", "3"]

    def test_colours_past_palette_are_generated(self, store):
        for n in range(len(PALETTE) + 2):
            store.ingest(fix_packet(str(n)))
        snapshot = store.snapshot()
        assert [t.display_color for t in snapshot[:len(PALETTE)]] == PALETTE
        assert snapshot[len(PALETTE)].display_color.startswith("hsl(")
        assert len({t.display_color for t in snapshot}) == len(snapshot)

    def test_trail_is_capped(self, store):
        for i in range(MAX_TRAIL_POINTS + 50):
            store.ingest(fix_packet("7", i))
        trail = store.get_tracker("7").trail
        assert len(trail) == MAX_TRAIL_POINTS
        # oldest points dropped first
        assert trail[0].timestamp == 1000 + 50
        assert trail[-1].timestamp == 1000 + MAX_TRAIL_POINTS + 49

    def test_packet_without_fix_updates_latest_only(self, store):
        store.ingest(fix_packet("5"))
        store.ingest(nofix_packet("5"))
        t = store.get_tracker("5")
        assert len(t.trail) == 1
        assert t.latest.fix_status == FixStatus.NOFIX
        assert t.latest.position is None

    def test_fixless_node_still_gets_tracker(self, store):
        store.ingest(nofix_packet("VOID"))
        t = store.get_tracker("VOID")
        assert t is not None
        assert t.trail == ()

    def test_snapshot_is_detached(self, store):
        store.ingest(fix_packet("1"))
        snap = store.get_tracker("1")
        store.ingest(fix_packet("1", 1))
        assert len(snap.trail) == 1

    def test_latest_with_position(self, store):
        assert store.latest_with_position() is None
        store.ingest(fix_packet("1", ts=100))
        store.ingest(fix_packet("2", ts=200))
        store.ingest(nofix_packet("3", ts=300))
        assert store.latest_with_position().node_id == "2"

    def test_to_dict(self, store):
        store.ingest(fix_packet("1", ts=123))
        d = store.get_tracker("1").to_dict()
        assert d['node_id'] == "1"
        assert d['order'] == 0
        assert d['trail'] == [[42.7, -77.19, 123]]
        assert d['latest']['fix_status'] == "FIX"


class TestPacketLog:

    def test_newest_first_and_capped(self, store):
        for i in range(MAX_LOG_PACKETS + 100):
            store.ingest(fix_packet(str(i % 4), i))
        packets = store.packets()
        assert len(packets) == MAX_LOG_PACKETS
        assert packets[0].timestamp == 1000 + MAX_LOG_PACKETS + 99
        assert packets[-1].timestamp == 1000 + 100

    def test_limit(self, store):
        for i in range(10):
            store.ingest(fix_packet("1", i))
        assert [p.timestamp for p in store.packets(3)] == [1009, 1008, 1007]

    def test_clear_keeps_trackers(self, store):
        store.ingest(fix_packet("1"))
        store.ingest(fix_packet("2"))
        store.clear_packets()
        assert store.packets() == []
        assert len(store) == 2
        assert len(store.get_tracker("1").trail) == 1

    def test_packet_from_before_clear_stays_out_of_log(self, store):
        gen = store.generation
        store.clear_packets()
        store.ingest(fix_packet("1", ts=42), generation=gen)

        assert store.packets() == []
        assert store.get_tracker("1").latest.timestamp == 42
        assert store.stats['stale_log_inserts'] == 1

    def test_packet_after_clear_is_logged(self, store):
        store.clear_packets()
        store.ingest(fix_packet("1", ts=42), generation=store.generation)
        assert [p.timestamp for p in store.packets()] == [42]

    def test_reset_forgets_trackers(self, store):
        store.ingest(fix_packet("1"))
        store.reset()
        assert len(store) == 0
        store.ingest(fix_packet("9"))
        assert store.get_tracker("9").first_seen_order == 0
