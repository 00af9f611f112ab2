"""
Boundary parser for tracker telemetry lines.

The receiver firmware prints one human-readable line per packet, e.g.

    [00:01:02.345] <inf> rx: Node ID: 3 Lat: 42.705122 Lon: -77.190666 RSSI: -61 SNR: 9 Sats: 11 Fix Status: FIX

Fields may appear in any order and use ':' or '=' separators. Lines that do
not describe a packet (boot noise, config replies, shell prompts) raise
ParseError and never reach the aggregator.
"""

import re
from typing import Optional

from telemetry import TelemetryPacket, FixStatus, fix_from_string, make_packet

# CSI / OSC escape sequences emitted by the device shell
ANSI_ESCAPE_RE = re.compile(r'\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07]*\x07|[@-Z\\-_])')

RE_NODE = re.compile(r'node\s*id[:=]?\s*(\d+)', re.IGNORECASE)
RE_LAT = re.compile(r'\blat(?:itude)?[:=]?\s*(-?\d+\.\d+)', re.IGNORECASE)
RE_LON = re.compile(r'\blon(?:gitude)?[:=]?\s*(-?\d+\.\d+)', re.IGNORECASE)
RE_RSSI = re.compile(r'rssi[:=]?\s*(-?\d+)', re.IGNORECASE)
RE_SNR = re.compile(r'snr[:=]?\s*(-?\d+)', re.IGNORECASE)
RE_SATS = re.compile(r'\bsat(?:s|ellites)?[:=]?\s*(\d+)', re.IGNORECASE)
RE_FIX = re.compile(r'fix\s*status[:=]?\s*([A-Z]+)', re.IGNORECASE)
RE_NOFIX = re.compile(r'no\s*fix', re.IGNORECASE)


class ParseError(ValueError):
    """Raised when a line does not carry a usable telemetry packet."""


def strip_control_sequences(line: str) -> str:
    """Remove terminal escape sequences and trailing CR/LF."""
    return ANSI_ESCAPE_RE.sub('', line).rstrip('\r\n')


def _int(regex: re.Pattern, line: str) -> Optional[int]:
    match = regex.search(line)
    return int(match.group(1)) if match else None


def _float(regex: re.Pattern, line: str) -> Optional[float]:
    match = regex.search(line)
    return float(match.group(1)) if match else None


def parse_line(line: str, timestamp: Optional[int] = None) -> TelemetryPacket:
    """
    Parse one device line into a TelemetryPacket.

    Args:
        line: Raw line as read from the serial port.
        timestamp: Receive time in ms; defaults to now.

    Returns:
        The parsed packet.

    Raises:
        ParseError: if the line has no telemetry fields or no node id.
    """
    text = strip_control_sequences(line)

    node = _int(RE_NODE, text)
    lat = _float(RE_LAT, text)
    lon = _float(RE_LON, text)
    rssi = _int(RE_RSSI, text)
    snr = _int(RE_SNR, text)
    sats = _int(RE_SATS, text)

    fix_status = None
    fix_match = RE_FIX.search(text)
    if fix_match:
        fix_status = fix_from_string(fix_match.group(1))
    elif RE_NOFIX.search(text):
        fix_status = FixStatus.NOFIX

    meaningful = any(v is not None for v in (node, lat, lon, rssi, snr, sats, fix_status))
    if not meaningful:
        raise ParseError(f"No telemetry fields in line: {text[:60]!r}")
    if node is None:
        raise ParseError(f"Telemetry line without node id: {text[:60]!r}")

    return make_packet(
        node_id=str(node),
        lat=lat,
        lon=lon,
        rssi=rssi,
        snr=snr,
        fix_status=fix_status,
        satellites=sats,
        timestamp=timestamp,
        raw=text,
    )
