"""
CSV export of the packet log.

One row per packet with fixed columns; missing values are empty fields and
`ts` is the raw millisecond timestamp so an export can be read back without
losing ordering information.
"""

import csv
import io
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from telemetry import TelemetryPacket, FixStatus, make_packet

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["node_id", "lat", "lon", "rssi", "snr", "fix_status", "sats", "ts"]


class ExportError(Exception):
    """Raised when the packet log cannot be exported."""


def _fmt(value) -> str:
    return "" if value is None else str(value)


def packet_to_row(packet: TelemetryPacket) -> List[str]:
    return [
        packet.node_id,
        "" if packet.lat is None else f"{packet.lat:.6f}",
        "" if packet.lon is None else f"{packet.lon:.6f}",
        _fmt(packet.rssi),
        _fmt(packet.snr),
        packet.fix_status.value if packet.fix_status else "",
        _fmt(packet.satellites),
        str(packet.timestamp),
    ]


def write_packets_csv(packets: Iterable[TelemetryPacket], stream) -> int:
    """Write header + rows to an open text stream. Returns the row count."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    count = 0
    for packet in packets:
        writer.writerow(packet_to_row(packet))
        count += 1
    return count


def packets_to_csv(packets: Iterable[TelemetryPacket]) -> str:
    """Render the export as a string (used for HTTP downloads)."""
    packets = list(packets)
    if not packets:
        raise ExportError("No packets to export")
    buf = io.StringIO()
    write_packets_csv(packets, buf)
    return buf.getvalue()


def default_export_path(now: Optional[datetime] = None) -> Path:
    """~/Downloads/packets-<stamp>.csv, falling back to home, then cwd."""
    stamp = (now or datetime.now()).strftime("%Y%m%dT%H%M%S")
    name = f"packets-{stamp}.csv"
    home = Path.home()
    downloads = home / "Downloads"
    if downloads.is_dir():
        return downloads / name
    if home.is_dir():
        return home / name
    return Path(os.getcwd()) / name


def export_packets_csv(packets: Iterable[TelemetryPacket], path: Optional[str] = None) -> str:
    """
    Write the packet log to a CSV file.

    Args:
        packets: Packets to export (newest first, as held in the log).
        path: Target file; defaults to default_export_path().

    Returns:
        The path written, as a string.

    Raises:
        ExportError: if there is nothing to export or the file can't be written.
    """
    packets = list(packets)
    if not packets:
        raise ExportError("No packets to export")

    target = Path(path) if path else default_export_path()
    try:
        with open(target, "w", newline="", encoding="utf-8") as f:
            count = write_packets_csv(packets, f)
    except OSError as e:
        logger.error(f"[EXPORT] Failed to write CSV {target}: {e}")
        raise ExportError(f"Failed to write CSV: {e}") from e

    logger.info(f"[EXPORT] Wrote {count} packets to {target}")
    return str(target)


def _opt_float(value: str) -> Optional[float]:
    return float(value) if value != "" else None


def _opt_int(value: str) -> Optional[int]:
    return int(value) if value != "" else None


def read_packets_csv(stream) -> List[TelemetryPacket]:
    """Parse an export back into packets (row order preserved)."""
    reader = csv.DictReader(stream)
    if reader.fieldnames != CSV_COLUMNS:
        raise ExportError(f"Unexpected CSV header: {reader.fieldnames}")

    packets = []
    for row in reader:
        fix = row["fix_status"]
        packets.append(make_packet(
            node_id=row["node_id"],
            lat=_opt_float(row["lat"]),
            lon=_opt_float(row["lon"]),
            rssi=_opt_int(row["rssi"]),
            snr=_opt_int(row["snr"]),
            fix_status=FixStatus(fix) if fix else None,
            satellites=_opt_int(row["sats"]),
            timestamp=int(row["ts"]),
        ))
    return packets
