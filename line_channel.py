"""
Line channel for the Dispatch ground station.

A channel carries text lines to and from a receiver device. Every received
line is published on a per-channel "lines" topic; lines that parse as
telemetry are additionally published on a "packets" topic. Consumers attach
with subscribe_lines() / subscribe_packets() and get back a Subscription
that releases itself exactly once, either when called or when used as a
context manager:

    with channel.subscribe_lines(buffer.append):
        channel.send_line("config")
        time.sleep(2.0)

Requirements:
    pip install pyserial pypubsub
"""

import itertools
import logging
import threading
import traceback
from typing import Callable, List, Optional

import serial
import serial.tools.list_ports
from pubsub import pub

from line_parser import parse_line, strip_control_sequences, ParseError
from telemetry import TelemetryPacket

logger = logging.getLogger(__name__)

DEFAULT_BAUD = 9600
LINE_ENDING = "\r\n"

_channel_ids = itertools.count(1)


class ChannelError(Exception):
    """Raised when a line cannot be sent over the channel."""


def _line_topic_proto(line):
    pass


def _packet_topic_proto(packet):
    pass


class Subscription:
    """Release handle for one topic listener. Idempotent."""

    def __init__(self, channel: "LineChannel", topic: str, handler: Callable):
        self._channel = channel
        self.topic = topic
        self.handler = handler
        self.active = False

    def release(self):
        """Unsubscribe. Safe to call any number of times."""
        if not self.active:
            return
        self.active = False
        self._channel._release(self)

    __call__ = release

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.release()
        return False


class LineSubscription(Subscription):
    def _deliver(self, line):
        self.handler(line)


class PacketSubscription(Subscription):
    def _deliver(self, packet):
        self.handler(packet)


class LineChannel:
    """
    Base channel: topic fan-out for received lines and packets.

    A bare LineChannel has no transport. It only fans out what is passed to
    publish_line() and cannot send; send_line() raises NotImplementedError.
    Subclasses implement the transport by overriding send_line() and by
    calling publish_line() for every line read from the device.
    """

    def __init__(self, name: Optional[str] = None):
        channel_id = next(_channel_ids)
        self.name = name or f"channel{channel_id}"
        self.line_topic = f"dispatch_ch{channel_id}_lines"
        self.packet_topic = f"dispatch_ch{channel_id}_packets"

        topic_mgr = pub.getDefaultTopicMgr()
        topic_mgr.getOrCreateTopic(self.line_topic, _line_topic_proto)
        topic_mgr.getOrCreateTopic(self.packet_topic, _packet_topic_proto)

        self._topics_deleted = False

        # pubsub only keeps weak references; live subscriptions are held here
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()

        self.stats = {
            'lines_received': 0,
            'packets_parsed': 0,
            'lines_rejected': 0,
            'lines_sent': 0,
            'send_failures': 0,
        }

    @property
    def connected(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_lines(self, handler: Callable[[str], None]) -> Subscription:
        """Call handler(line) for every received line until released."""
        return self._subscribe(LineSubscription(self, self.line_topic, handler))

    def subscribe_packets(self, handler: Callable[[TelemetryPacket], None]) -> Subscription:
        """Call handler(packet) for every received telemetry packet until released."""
        return self._subscribe(PacketSubscription(self, self.packet_topic, handler))

    def _subscribe(self, subscription: Subscription) -> Subscription:
        with self._lock:
            pub.subscribe(subscription._deliver, subscription.topic)
            self._subscriptions.append(subscription)
            subscription.active = True
        logger.debug(f"[CHAN] {self.name}: subscribed to {subscription.topic}")
        return subscription

    def _release(self, subscription: Subscription):
        with self._lock:
            try:
                pub.unsubscribe(subscription._deliver, subscription.topic)
            finally:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)
        logger.debug(f"[CHAN] {self.name}: released {subscription.topic}")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def release_all(self):
        """Drop every live subscription (channel teardown)."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.release()

    # ------------------------------------------------------------------
    # Receive / send
    # ------------------------------------------------------------------

    def publish_line(self, raw_line: str):
        """Fan out one received line, then its parsed packet if it is telemetry."""
        line = strip_control_sequences(raw_line)
        self.stats['lines_received'] += 1
        logger.debug(f"[CHAN] {self.name} RX: {line}")

        with self._lock:
            pub.sendMessage(self.line_topic, line=raw_line.rstrip("\r\n"))

            try:
                packet = parse_line(line)
            except ParseError as e:
                self.stats['lines_rejected'] += 1
                logger.debug(f"[CHAN] {self.name}: not a packet ({e})")
                return

            self.stats['packets_parsed'] += 1
            pub.sendMessage(self.packet_topic, packet=packet)

    def send_line(self, text: str):
        """Write one line to the device. Raises ChannelError on failure."""
        raise NotImplementedError(f"{type(self).__name__} has no transport")

    def check_single_line(self, text: str):
        """A command must not contain line breaks, or the device sees several."""
        if "\r" in text or "\n" in text:
            self.stats['send_failures'] += 1
            raise ChannelError(f"Refusing to send multi-line command: {text!r}")

    def close(self):
        """Release every subscription and drop this channel's topics."""
        self.release_all()
        if self._topics_deleted:
            return
        self._topics_deleted = True
        topic_mgr = pub.getDefaultTopicMgr()
        for topic in (self.line_topic, self.packet_topic):
            topic_mgr.delTopic(topic)
        logger.debug(f"[CHAN] {self.name}: topics removed")


class SerialLineChannel(LineChannel):
    """
    Line channel over a serial port.

    Usage:
        channel = SerialLineChannel("/dev/ttyUSB0", baud=9600)
        channel.open()
        ...
        channel.close()
    """

    def __init__(
        self,
        port: str,
        baud: int = DEFAULT_BAUD,
        read_timeout: float = 1.0,
        disconnect_callback: Optional[Callable[[], None]] = None,
    ):
        super().__init__(name=port)
        self.port = port
        self.baud = baud
        self.read_timeout = read_timeout
        self.disconnect_callback = disconnect_callback

        self._ser: Optional[serial.Serial] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._write_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self):
        """Open the port and start the reader thread. Raises ChannelError."""
        if self.connected:
            logger.info(f"[CHAN] {self.port} already open")
            return
        logger.info(f"[CHAN] Opening {self.port} @ {self.baud} baud...")
        try:
            self._ser = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                timeout=self.read_timeout,
            )
        except (serial.SerialException, OSError) as e:
            self._ser = None
            logger.error(f"[CHAN] Failed to open port {self.port}: {e}")
            raise ChannelError(f"Failed to open port {self.port}: {e}") from e

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"SerialReader-{self.port}")
        self._thread.start()
        logger.info(f"[CHAN] Connected to {self.port}")

    def close(self):
        """Stop the reader and close the port. Safe to call twice."""
        self._stop_event.set()
        self._close_port()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.read_timeout + 1)
        self._thread = None
        super().close()
        logger.info(f"[CHAN] Closed {self.port}")

    def _close_port(self):
        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.error(f"[CHAN] Error closing {self.port}: {e}")

    def send_line(self, text: str):
        self.check_single_line(text)
        ser = self._ser
        if ser is None or not ser.is_open:
            self.stats['send_failures'] += 1
            raise ChannelError("Not connected to a device")
        try:
            with self._write_lock:
                ser.write((text + LINE_ENDING).encode('utf-8'))
                ser.flush()
        except (serial.SerialException, OSError) as e:
            self.stats['send_failures'] += 1
            logger.error(f"[CHAN] TX failed on {self.port}: {e}")
            raise ChannelError(str(e)) from e
        self.stats['lines_sent'] += 1
        logger.info(f"[CHAN] TX {self.port}: {text}")

    def _run(self):
        """Reader loop: one publish_line() per device line."""
        lost = False
        while not self._stop_event.is_set():
            ser = self._ser
            if ser is None:
                break
            try:
                raw = ser.readline()
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._stop_event.is_set():
                    logger.warning(f"[CHAN] Connection to {self.port} lost: {e}")
                    lost = True
                break
            if not raw:
                continue
            try:
                self.publish_line(raw.decode('utf-8', errors='replace'))
            except Exception as e:
                logger.error(f"[CHAN] Error handling line from {self.port}: {e}")
                logger.error(traceback.format_exc())

        if lost:
            self._close_port()
            if self.disconnect_callback:
                self.disconnect_callback()


def list_serial_ports() -> List[str]:
    """Device names of the serial ports present on this machine."""
    try:
        return sorted(p.device for p in serial.tools.list_ports.comports())
    except Exception as e:
        logger.error(f"[CHAN] Failed to list serial ports: {e}")
        return []
