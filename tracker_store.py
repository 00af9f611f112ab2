"""
Tracker store - live per-node state for the Dispatch ground station.

Turns the unbounded packet stream into:
- one Tracker per node (bounded position trail, latest packet, colour)
- a bounded newest-first packet log

The packet log can be cleared independently of the trackers. Each clear
bumps a generation counter; packets captured under an older generation
still update their tracker but are kept out of the log, so a packet that
was queued before a clear never shows up after it.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional, List, Dict, Tuple, Any

from telemetry import TelemetryPacket, color_for_index

logger = logging.getLogger(__name__)

MAX_TRAIL_POINTS = 200
MAX_LOG_PACKETS = 500


@dataclass(frozen=True)
class TrailPoint:
    lat: float
    lon: float
    timestamp: int


@dataclass(frozen=True)
class TrackerSnapshot:
    """Read-only view of one tracker."""
    node_id: str
    display_color: str
    first_seen_order: int
    trail: Tuple[TrailPoint, ...]
    latest: Optional[TelemetryPacket]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'node_id': self.node_id,
            'color': self.display_color,
            'order': self.first_seen_order,
            'trail': [[p.lat, p.lon, p.timestamp] for p in self.trail],
            'latest': self.latest.to_dict() if self.latest else None,
        }


class Tracker:
    """Mutable tracker state. Only the TrackerStore touches these."""

    def __init__(self, node_id: str, display_color: str, first_seen_order: int,
                 max_points: int = MAX_TRAIL_POINTS):
        self.node_id = node_id
        self.display_color = display_color
        self.first_seen_order = first_seen_order
        self.trail: deque = deque(maxlen=max_points)
        self.latest: Optional[TelemetryPacket] = None

    def snapshot(self) -> TrackerSnapshot:
        return TrackerSnapshot(
            node_id=self.node_id,
            display_color=self.display_color,
            first_seen_order=self.first_seen_order,
            trail=tuple(self.trail),
            latest=self.latest,
        )


class TrackerStore:
    """
    Telemetry aggregator.

    ingest() is called by a single writer in arrival order; the lock only
    makes snapshots safe to take from other threads (e.g. the dashboard).
    """

    def __init__(self, max_trail_points: int = MAX_TRAIL_POINTS, max_packets: int = MAX_LOG_PACKETS):
        self.max_trail_points = max_trail_points
        self.max_packets = max_packets

        self._trackers: Dict[str, Tracker] = {}
        self._packets: deque = deque(maxlen=max_packets)  # newest first
        self._generation = 0
        self._lock = threading.Lock()

        self.stats = {
            'packets_ingested': 0,
            'position_updates': 0,
            'stale_log_inserts': 0,
        }

    @property
    def generation(self) -> int:
        """Current packet-log generation. Capture this when a packet arrives."""
        with self._lock:
            return self._generation

    def ingest(self, packet: TelemetryPacket, generation: Optional[int] = None):
        """
        Fold one packet into tracker state and the packet log.

        Args:
            packet: Parsed packet (node_id already validated by the parser).
            generation: Log generation captured when the packet arrived;
                        None means the current generation.
        """
        with self._lock:
            tracker = self._trackers.get(packet.node_id)
            if tracker is None:
                order = len(self._trackers)
                tracker = Tracker(
                    packet.node_id,
                    color_for_index(order),
                    order,
                    max_points=self.max_trail_points,
                )
                self._trackers[packet.node_id] = tracker
                logger.info(f"[AGG] New tracker {packet.node_id} (#{order}, {tracker.display_color})")

            if packet.position is not None:
                tracker.trail.append(TrailPoint(packet.position.lat, packet.position.lon, packet.timestamp))
                self.stats['position_updates'] += 1

            tracker.latest = packet
            self.stats['packets_ingested'] += 1

            if generation is not None and generation < self._generation:
                self.stats['stale_log_inserts'] += 1
                logger.debug(f"[AGG] Dropped stale log insert for {packet.node_id} "
                             f"(gen {generation} < {self._generation})")
                return

            # deque(maxlen) drops from the far end when prepending
            self._packets.appendleft(packet)

    def clear_packets(self):
        """Empty the packet log. Trackers are kept."""
        with self._lock:
            self._packets.clear()
            self._generation += 1
            logger.info(f"[AGG] Packet log cleared (generation {self._generation})")

    def reset(self):
        """Forget everything, including trackers and their colours (operator reset)."""
        with self._lock:
            self._trackers.clear()
            self._packets.clear()
            self._generation += 1
        logger.info("[AGG] Store reset")

    def snapshot(self) -> List[TrackerSnapshot]:
        """Trackers in first-seen order."""
        with self._lock:
            trackers = sorted(self._trackers.values(), key=lambda t: t.first_seen_order)
            return [t.snapshot() for t in trackers]

    def get_tracker(self, node_id: str) -> Optional[TrackerSnapshot]:
        with self._lock:
            tracker = self._trackers.get(node_id)
            return tracker.snapshot() if tracker else None

    def packets(self, limit: Optional[int] = None) -> List[TelemetryPacket]:
        """Packet log, newest first."""
        with self._lock:
            packets = list(self._packets)
        return packets[:limit] if limit is not None else packets

    def latest_with_position(self) -> Optional[TelemetryPacket]:
        """Newest packet across all trackers that carried a fix (map auto-zoom)."""
        with self._lock:
            candidates = [t.latest for t in self._trackers.values()
                          if t.latest is not None and t.latest.position is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.timestamp)

    def __len__(self) -> int:
        with self._lock:
            return len(self._trackers)
