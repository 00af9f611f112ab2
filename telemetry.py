"""
Telemetry model for the Dispatch ground station.

Holds the packet types shared by the parser, the channel, the aggregator,
the demo simulation and the export code:

- TelemetryPacket: one observation from one tracker node
- FixStatus: GPS solution quality
- Position / Signal: grouped optional fields
- colour assignment for tracker display identity
"""

import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any


class FixStatus(Enum):
    """GPS solution quality reported by a tracker."""
    NOFIX = "NOFIX"
    FIX = "FIX"
    DIFF = "DIFF"
    EST = "EST"
    UNKNOWN = "UNKNOWN"


# Colour palette for the first trackers seen in a session
PALETTE = [
    "#e41a1c",
    "#377eb8",
    "#4daf4a",
    "#984ea3",
    "#ff7f00",
    "#ffff33",
    "#a65628",
    "#f781bf",
    "#999999",
]
GOLDEN_ANGLE = 137.508


def now_ms() -> int:
    """Wall clock in milliseconds."""
    return int(time.time() * 1000)


def fix_from_string(s: Optional[str]) -> Optional[FixStatus]:
    """
    Normalise a free-form fix string from a device.

    Order matters: "NO FIX" contains "FIX", so the NO check runs first.
    """
    if not s:
        return None
    upper = s.upper()
    if "NO" in upper:
        return FixStatus.NOFIX
    if "DIFF" in upper:
        return FixStatus.DIFF
    if "EST" in upper:
        return FixStatus.EST
    if "FIX" in upper:
        return FixStatus.FIX
    return FixStatus.UNKNOWN


def color_for_index(idx: int) -> str:
    """Display colour for the idx-th tracker seen (0-based)."""
    if idx < len(PALETTE):
        return PALETTE[idx]
    hue = (idx * GOLDEN_ANGLE) % 360
    return f"hsl({hue:g}, 70%, 50%)"


@dataclass(frozen=True)
class Position:
    lat: float
    lon: float


@dataclass(frozen=True)
class Signal:
    rssi: int
    snr: int


@dataclass(frozen=True)
class TelemetryPacket:
    """Represents a single telemetry observation from a tracker node."""
    node_id: str
    timestamp: int
    position: Optional[Position] = None
    signal: Optional[Signal] = None
    fix_status: Optional[FixStatus] = None
    satellites: Optional[int] = None
    raw: Optional[str] = None

    @property
    def lat(self) -> Optional[float]:
        return self.position.lat if self.position else None

    @property
    def lon(self) -> Optional[float]:
        return self.position.lon if self.position else None

    @property
    def rssi(self) -> Optional[int]:
        return self.signal.rssi if self.signal else None

    @property
    def snr(self) -> Optional[int]:
        return self.signal.snr if self.signal else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a flat dictionary for JSON serialization."""
        d = asdict(self)
        d.pop('position')
        d.pop('signal')
        d['lat'] = self.lat
        d['lon'] = self.lon
        d['rssi'] = self.rssi
        d['snr'] = self.snr
        d['fix_status'] = self.fix_status.value if self.fix_status else None
        return d


def make_packet(
    node_id: str,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    rssi: Optional[int] = None,
    snr: Optional[int] = None,
    fix_status: Optional[FixStatus] = None,
    satellites: Optional[int] = None,
    timestamp: Optional[int] = None,
    raw: Optional[str] = None,
) -> TelemetryPacket:
    """
    Build a packet from flat optional fields.

    A position is only attached when both lat and lon are given; a signal
    only when both rssi and snr are given. A missing timestamp means
    "now".
    """
    position = Position(lat, lon) if lat is not None and lon is not None else None
    signal = Signal(rssi, snr) if rssi is not None and snr is not None else None
    return TelemetryPacket(
        node_id=node_id,
        timestamp=timestamp if timestamp is not None else now_ms(),
        position=position,
        signal=signal,
        fix_status=fix_status,
        satellites=satellites,
        raw=raw,
    )
