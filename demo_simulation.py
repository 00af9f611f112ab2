"""
Demo simulation - synthetic tracker telemetry without a radio.

Four trackers and one radio-only heartbeat node take turns on a fixed
round-robin schedule, one slot per tick. Each tracker wanders randomly
around the URRG landing area but never leaves a disc of MAX_RADIUS degrees
around it; the VOID node never gets a GPS fix but still reports RSSI/SNR.

Usage:
    sim = DemoSimulation(emit=store.ingest)
    sim.start()      # one packet now, then one per second
    ...
    sim.stop()

For tests, next_packet() / generate() produce packets without a thread.
"""

import logging
import math
import random
import threading
import traceback
from typing import Callable, Dict, List, Optional, Tuple

from telemetry import TelemetryPacket, FixStatus, make_packet, now_ms

logger = logging.getLogger(__name__)

DEMO_PORT = "URRG DEMO"

# URRG Landing Area 42.705122, -77.190666
DEMO_BASE_LAT = 42.705122
DEMO_BASE_LON = -77.190666

DEMO_NODES = ("RISK", "OTIS", "OMEN", "KONG")
SENTINEL_NODE = "VOID"
DEMO_SCHEDULE = DEMO_NODES + (SENTINEL_NODE,)
DEMO_SLOT_MS = 1000

# Random walk, in degrees
SEED_OFFSET = 0.0005
STEP = 0.00008
MAX_RADIUS = 0.0009

RSSI_BASE_RANGE = (-80, -40)
RSSI_JITTER = (-20, 20)
SNR_BASE_RANGE = (-5, 20)
SNR_JITTER = (-5, 5)
BASE_SATELLITES = 8


def clamp_to_disc(dlat: float, dlon: float, radius: float = MAX_RADIUS) -> Tuple[float, float]:
    """Pull an offset radially back onto the circle if it lies outside it."""
    dist = math.hypot(dlat, dlon)
    if dist <= radius:
        return dlat, dlon
    scale = radius / dist
    return dlat * scale, dlon * scale


class DemoSimulation:
    """Synthetic packet generator on a fixed cadence."""

    def __init__(
        self,
        emit: Optional[Callable[[TelemetryPacket], None]] = None,
        seed: Optional[int] = None,
        slot_ms: int = DEMO_SLOT_MS,
        base_lat: float = DEMO_BASE_LAT,
        base_lon: float = DEMO_BASE_LON,
        max_radius: float = MAX_RADIUS,
    ):
        self.emit = emit
        self.slot_ms = slot_ms
        self.base_lat = base_lat
        self.base_lon = base_lon
        self.max_radius = max_radius

        self._rng = random.Random(seed)
        self._slot = 0
        self._offsets: Dict[str, Tuple[float, float]] = {}

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.packets_emitted = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def reset(self):
        """Back to the first slot with no position memory."""
        self._slot = 0
        self._offsets = {}

    def _walk(self, node_id: str) -> Tuple[float, float]:
        previous = self._offsets.get(node_id)
        if previous is None:
            dlat = self._rng.uniform(-SEED_OFFSET, SEED_OFFSET)
            dlon = self._rng.uniform(-SEED_OFFSET, SEED_OFFSET)
        else:
            dlat = previous[0] + self._rng.uniform(-STEP, STEP)
            dlon = previous[1] + self._rng.uniform(-STEP, STEP)
        offset = clamp_to_disc(dlat, dlon, self.max_radius)
        self._offsets[node_id] = offset
        return offset

    def _signal(self) -> Tuple[int, int]:
        rssi = self._rng.randint(*RSSI_BASE_RANGE) + self._rng.randint(*RSSI_JITTER)
        snr = self._rng.randint(*SNR_BASE_RANGE) + self._rng.randint(*SNR_JITTER)
        return rssi, snr

    def next_packet(self, timestamp: Optional[int] = None) -> TelemetryPacket:
        """Produce the packet for the current slot and advance the schedule."""
        ts = timestamp if timestamp is not None else now_ms()
        slot = self._slot % len(DEMO_SCHEDULE)
        node_id = DEMO_SCHEDULE[slot]
        rssi, snr = self._signal()

        if node_id == SENTINEL_NODE:
            packet = make_packet(
                node_id=node_id,
                rssi=rssi,
                snr=snr,
                fix_status=FixStatus.NOFIX,
                timestamp=ts,
            )
        else:
            dlat, dlon = self._walk(node_id)
            packet = make_packet(
                node_id=node_id,
                lat=self.base_lat + dlat,
                lon=self.base_lon + dlon,
                rssi=rssi,
                snr=snr,
                fix_status=FixStatus.FIX,
                satellites=BASE_SATELLITES + slot,
                timestamp=ts,
            )

        self._slot = (slot + 1) % len(DEMO_SCHEDULE)
        return packet

    def generate(self, ticks: int, start_ms: int = 0) -> List[TelemetryPacket]:
        """Packets for `ticks` consecutive slots, timestamps one slot apart."""
        return [self.next_packet(start_ms + i * self.slot_ms) for i in range(ticks)]

    def _emit_next(self):
        packet = self.next_packet()
        self.packets_emitted += 1
        if self.emit:
            try:
                self.emit(packet)
            except Exception as e:
                logger.error(f"[DEMO] Emit failed for {packet.node_id}: {e}")
                logger.error(traceback.format_exc())

    def start(self):
        """Restart the schedule, emit one packet now, then one per slot."""
        self.stop()
        self.reset()
        self._stop_event.clear()
        logger.info(f"[DEMO] Starting simulation ({len(DEMO_NODES)} trackers + {SENTINEL_NODE})")
        self._emit_next()
        self._thread = threading.Thread(target=self._run, daemon=True, name="DemoSimulation")
        self._thread.start()

    def stop(self):
        """Stop emitting. Idempotent; fine to call before start()."""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.slot_ms / 1000 + 1)
            logger.info(f"[DEMO] Simulation stopped after {self.packets_emitted} packets")

    def _run(self):
        interval = self.slot_ms / 1000
        while not self._stop_event.wait(interval):
            self._emit_next()
