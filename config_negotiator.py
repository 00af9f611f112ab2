"""
Device configuration over a plain line channel.

The receiver firmware has a tiny text shell. Sending `config` makes it print
its settings; sending `config <key> <value>` changes one setting. Replies
carry no correlation IDs, so this module:

1. probes: sends `config`, collects every line for PROBE_WINDOW seconds and
   marks a key available if its name appears anywhere in what came back;
2. applies: sends one `config <key> <value>` at a time, collects lines for
   SETTLE_WINDOW seconds, and only then moves to the next key, so each reply
   can be attributed to the command that caused it.

Everything is recorded in a timestamped activity log for the operator.
"""

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from line_channel import LineChannel, ChannelError
from line_parser import strip_control_sequences

logger = logging.getLogger(__name__)

CONFIG_KEYS = ("freq", "node_id", "callsign")
PROBE_COMMAND = "config"
PROBE_WINDOW = 2.0
SETTLE_WINDOW = 1.0
OK_PLACEHOLDER = "OK"
NOTHING_REPORTED = "No configurable fields were reported by the device."


class ProbeState(Enum):
    IDLE = "idle"
    PROBING = "probing"
    PROBED = "probed"
    ABORTED = "aborted"


class LogKind(Enum):
    SENT = "sent"
    RECEIVED = "received"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class ConfigAvailability:
    """Which settings the connected device exposes."""
    freq: bool = False
    node_id: bool = False
    callsign: bool = False

    def is_available(self, key: str) -> bool:
        return key in CONFIG_KEYS and getattr(self, key)

    def available_keys(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name)]

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_text(cls, text: str) -> "ConfigAvailability":
        """A key is available if its name appears anywhere in the text."""
        return cls(**{key: key in text for key in CONFIG_KEYS})


NONE_AVAILABLE = ConfigAvailability()


@dataclass(frozen=True)
class ConfigLogEntry:
    sequence_id: int
    time: str
    text: str
    kind: LogKind

    def to_dict(self):
        return {
            'id': self.sequence_id,
            'time': self.time,
            'text': self.text,
            'kind': self.kind.value,
        }


def pick_reply(lines: Iterable[str]) -> Optional[str]:
    """Last non-blank line that isn't a bracketed firmware log line."""
    for line in reversed(list(lines)):
        if line.strip() and not line.startswith("["):
            return line.strip()
    return None


class ConfigNegotiator:
    """
    Probe / apply state machine for one device connection.

    probe() and apply() block for their collection windows; callers that
    must stay responsive run them on a worker thread. Both are no-ops (they
    return None / []) when there is no connection or the same phase is
    already running.
    """

    def __init__(
        self,
        channel: Optional[LineChannel] = None,
        probe_window: float = PROBE_WINDOW,
        settle_window: float = SETTLE_WINDOW,
        log_callback: Optional[Callable[[ConfigLogEntry], None]] = None,
    ):
        self.probe_window = probe_window
        self.settle_window = settle_window
        self.log_callback = log_callback

        self._channel: Optional[LineChannel] = None
        self._state = ProbeState.IDLE
        self._availability = NONE_AVAILABLE
        self._probe_id = 0
        self._sending = False
        self._field_status: Dict[str, str] = {}

        self._log: List[ConfigLogEntry] = []
        self._sequence = itertools.count(1)
        self._disconnected = threading.Event()
        self._disconnected.set()
        self._lock = threading.RLock()

        if channel is not None:
            self.attach(channel)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        channel = self._channel
        return channel is not None and channel.connected

    def attach(self, channel: LineChannel):
        """Bind to a freshly connected channel."""
        with self._lock:
            self._channel = channel
            self._disconnected.clear()
        logger.info(f"[CFG] Attached to {channel.name}")

    def on_disconnect(self):
        """
        Connection dropped. A running probe is aborted and will not
        classify; otherwise the machine returns to IDLE. Availability is
        cleared either way.
        """
        with self._lock:
            self._disconnected.set()
            self._channel = None
            self._availability = NONE_AVAILABLE
            self._field_status = {}
            if self._state == ProbeState.PROBING:
                self._state = ProbeState.ABORTED
                aborted = True
            else:
                self._state = ProbeState.IDLE
                aborted = False
        if aborted:
            self._record(LogKind.INFO, "Probe aborted: device disconnected")
        logger.info(f"[CFG] Disconnected (state={self._state.value})")

    # ------------------------------------------------------------------
    # Probe phase
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProbeState:
        return self._state

    @property
    def availability(self) -> ConfigAvailability:
        return self._availability

    @property
    def probing(self) -> bool:
        return self._state == ProbeState.PROBING

    def probe(self) -> Optional[ConfigAvailability]:
        """
        Discover which settings the device supports.

        Returns:
            The classified availability, or None when the probe was not
            started (no connection / already probing) or was aborted.
        """
        with self._lock:
            if not self.connected:
                logger.info("[CFG] Probe ignored: not connected")
                return None
            if self._state == ProbeState.PROBING:
                logger.info("[CFG] Probe ignored: already probing")
                return None
            self._probe_id += 1
            probe_id = self._probe_id
            self._state = ProbeState.PROBING
            self._availability = NONE_AVAILABLE
            channel = self._channel

        logger.info(f"[CFG] Probe #{probe_id} started ({self.probe_window}s window)")
        self._record(LogKind.INFO, "Probing available configurations...")

        buffer: List[str] = []
        send_failed = False
        with channel.subscribe_lines(lambda line: buffer.append(strip_control_sequences(line))):
            self._record(LogKind.SENT, PROBE_COMMAND)
            try:
                channel.send_line(PROBE_COMMAND)
            except ChannelError as e:
                send_failed = True
                logger.error(f"[CFG] Probe send failed: {e}")
                self._record(LogKind.ERROR, f"Probe failed: {e}")
            if not send_failed:
                # wakes early on disconnect; the abort check below decides
                self._disconnected.wait(self.probe_window)

        with self._lock:
            if self._state != ProbeState.PROBING or self._probe_id != probe_id:
                logger.info(f"[CFG] Probe #{probe_id} aborted, no classification")
                return None
            availability = NONE_AVAILABLE if send_failed else ConfigAvailability.from_text("\n".join(buffer))
            self._availability = availability
            self._state = ProbeState.PROBED

        keys = availability.available_keys()
        logger.info(f"[CFG] Probe #{probe_id} done: {keys or 'nothing'} ({len(buffer)} lines)")
        if keys:
            self._record(LogKind.INFO, f"Available: {', '.join(keys)}")
        elif not send_failed:
            self._record(LogKind.INFO, NOTHING_REPORTED)
        return availability

    # ------------------------------------------------------------------
    # Send phase
    # ------------------------------------------------------------------

    @property
    def sending(self) -> bool:
        return self._sending

    def eligible_pairs(self, values: Union[Mapping[str, str], Iterable[Tuple[str, str]]]) -> List[Tuple[str, str]]:
        """
        Pairs whose key was probed available and whose value is non-empty,
        input order kept. Values with embedded line breaks are dropped: each
        command must go out as exactly one line.
        """
        pairs = values.items() if isinstance(values, Mapping) else values
        availability = self._availability
        eligible = []
        for key, value in pairs:
            if value is None:
                continue
            value = str(value).strip()
            if "\r" in value or "\n" in value:
                logger.warning(f"[CFG] Rejected {key} value with a line break: {value!r}")
                continue
            if value and availability.is_available(key):
                eligible.append((key, value))
        return eligible

    def apply(self, values: Union[Mapping[str, str], Iterable[Tuple[str, str]]]) -> List[ConfigLogEntry]:
        """
        Send each eligible (key, value) pair, one at a time.

        Returns:
            The log entries recorded by this call (empty if nothing was sent).
        """
        with self._lock:
            if self._sending:
                logger.info("[CFG] Apply ignored: already sending")
                return []
            if not self.connected:
                logger.info("[CFG] Apply ignored: not connected")
                return []
            queue = deque(self.eligible_pairs(values))
            if not queue:
                logger.info("[CFG] Apply ignored: no eligible fields")
                return []
            self._sending = True
            channel = self._channel

        logger.info(f"[CFG] Applying {len(queue)} setting(s): {[k for k, _ in queue]}")
        entries: List[ConfigLogEntry] = []
        try:
            while queue:
                key, value = queue.popleft()
                if self._disconnected.is_set():
                    entries.append(self._record(LogKind.INFO, f"Skipped config {key}: disconnected"))
                    continue
                entries.extend(self._send_one(channel, key, value))
        finally:
            with self._lock:
                self._sending = False
        return entries

    def _send_one(self, channel: LineChannel, key: str, value: str) -> List[ConfigLogEntry]:
        command = f"config {key} {value}"
        sent = self._record(LogKind.SENT, command)
        self._set_field_status(key, "Sending...")

        lines: List[str] = []
        error: Optional[ChannelError] = None
        with channel.subscribe_lines(lambda line: lines.append(strip_control_sequences(line))):
            try:
                channel.send_line(command)
            except ChannelError as e:
                error = e
            # the full window elapses even on failure so late replies stay here
            time.sleep(self.settle_window)

        if error is not None:
            logger.error(f"[CFG] {command!r} failed: {error}")
            outcome = self._record(LogKind.ERROR, str(error))
            self._set_field_status(key, f"Error: {error}")
            return [sent, outcome]

        reply = pick_reply(lines) or OK_PLACEHOLDER
        logger.info(f"[CFG] {command!r} -> {reply!r} ({len(lines)} lines)")
        outcome = self._record(LogKind.RECEIVED, reply)
        self._set_field_status(key, reply)
        return [sent, outcome]

    def _set_field_status(self, key: str, status: str):
        with self._lock:
            self._field_status[key] = status

    def field_status(self) -> Dict[str, str]:
        """Last outcome per key, for the settings form."""
        with self._lock:
            return dict(self._field_status)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def _record(self, kind: LogKind, text: str) -> ConfigLogEntry:
        with self._lock:
            entry = ConfigLogEntry(
                sequence_id=next(self._sequence),
                time=datetime.now().strftime('%H:%M:%S'),
                text=text,
                kind=kind,
            )
            self._log.append(entry)
        if self.log_callback:
            try:
                self.log_callback(entry)
            except Exception as e:
                logger.warning(f"[CFG] Log callback failed: {e}")
        return entry

    def log_entries(self) -> List[ConfigLogEntry]:
        with self._lock:
            return list(self._log)

    def clear_log(self):
        with self._lock:
            self._log.clear()
        logger.info("[CFG] Activity log cleared")

    def status(self) -> Dict:
        with self._lock:
            return {
                'connected': self.connected,
                'state': self._state.value,
                'available': self._availability.to_dict(),
                'sending': self._sending,
                'field_status': dict(self._field_status),
            }
