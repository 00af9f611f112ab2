"""
Dispatch - tracker ground station

Connects to a receiver over serial (or runs the URRG demo simulation),
aggregates tracker telemetry and drives device configuration.

Requirements:
    pip install pyserial pypubsub flask flask-socketio

Usage:
    python ground_station.py --list-ports
    python ground_station.py --serial /dev/ttyUSB0 --baud 9600
    python ground_station.py --demo
    python ground_station.py --demo --no-dashboard
"""

import os
import sys
import time
import signal
import queue
import logging
import threading
import traceback
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from config_negotiator import ConfigNegotiator, ConfigLogEntry, PROBE_WINDOW, SETTLE_WINDOW
from demo_simulation import DemoSimulation, DEMO_PORT
from line_channel import SerialLineChannel, ChannelError, DEFAULT_BAUD, list_serial_ports
from packet_export import export_packets_csv, packets_to_csv
from telemetry import TelemetryPacket
from tracker_store import TrackerStore

logger = logging.getLogger(__name__)

# ==================== CONFIGURATION ====================

LOG_FILE = "dispatch.log"
LOG_LEVEL = logging.DEBUG

DASHBOARD_HOST = "0.0.0.0"
DASHBOARD_PORT = int(os.environ.get("DISPATCH_PORT", "5000"))

# Probe the device's settings as soon as a serial connection opens
AUTO_PROBE = True


def setup_logging(debug: bool = False, log_file: str = LOG_FILE):
    """File handler gets everything; console gets INFO (DEBUG with --debug)."""
    file_formatter = logging.Formatter('%(asctime)s [%(levelname)s] [%(name)s] %(message)s')
    console_formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(console_formatter)

    logging.basicConfig(
        level=LOG_LEVEL,
        handlers=[file_handler, console_handler]
    )


class GroundStation:
    """
    One operator session.

    Owns the tracker store, the configuration negotiator and whichever
    packet source is active (a serial channel or the demo simulation).
    Packets from either source go through a single ingest worker thread,
    tagged with the store's packet-log generation at arrival time.
    """

    def __init__(
        self,
        channel_factory: Callable[..., SerialLineChannel] = SerialLineChannel,
        probe_window: float = PROBE_WINDOW,
        settle_window: float = SETTLE_WINDOW,
        auto_probe: bool = AUTO_PROBE,
        demo_seed: Optional[int] = None,
        packet_callback: Optional[Callable[[TelemetryPacket], None]] = None,
        log_callback: Optional[Callable[[ConfigLogEntry], None]] = None,
        status_callback: Optional[Callable[[Dict], None]] = None,
    ):
        self.channel_factory = channel_factory
        self.auto_probe = auto_probe
        self.demo_seed = demo_seed
        self.packet_callback = packet_callback
        self.status_callback = status_callback

        self.store = TrackerStore()
        self.negotiator = ConfigNegotiator(
            probe_window=probe_window,
            settle_window=settle_window,
            log_callback=log_callback,
        )

        self.channel: Optional[SerialLineChannel] = None
        self.demo: Optional[DemoSimulation] = None
        self.port: Optional[str] = None
        self.baud: int = DEFAULT_BAUD

        self._packet_sub = None
        self._packet_queue: "queue.Queue[Optional[Tuple[TelemetryPacket, int]]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def mode(self) -> Optional[str]:
        if self.demo is not None:
            return "demo"
        if self.channel is not None:
            return "serial"
        return None

    @property
    def connected(self) -> bool:
        return self.mode is not None

    def status_text(self) -> str:
        if self.mode == "demo":
            return "Connected to URRG Demo"
        if self.mode == "serial":
            return f"Connected to {self.port} @ {self.baud}"
        return "Disconnected"

    def connect(self, port: str, baud: int = DEFAULT_BAUD) -> bool:
        """
        Open a serial receiver (or the demo if port is DEMO_PORT).

        Returns:
            True if connected.
        """
        if port == DEMO_PORT:
            return self.connect_demo()

        with self._lock:
            if self.connected:
                logger.info("[STATION] Already connected")
                return True

            logger.info(f"[STATION] Connecting to {port} @ {baud}...")
            channel = self.channel_factory(port, baud=baud, disconnect_callback=self._on_connection_lost)
            try:
                channel.open()
            except ChannelError as e:
                logger.error(f"[STATION] Connection failed: {e}")
                return False

            self._ensure_worker()
            self.channel = channel
            self.port = port
            self.baud = baud
            self._packet_sub = channel.subscribe_packets(self._enqueue)
            self.negotiator.attach(channel)

        logger.info(f"[STATION] {self.status_text()}")
        self._notify_status()
        if self.auto_probe:
            self._spawn(self.negotiator.probe, "ConfigProbe")
        return True

    def connect_demo(self) -> bool:
        with self._lock:
            if self.connected:
                logger.info("[STATION] Already connected")
                return True
            self._ensure_worker()
            self.port = DEMO_PORT
            self.demo = DemoSimulation(emit=self._enqueue, seed=self.demo_seed)
            self.demo.start()
        logger.info(f"[STATION] {self.status_text()}")
        self._notify_status()
        return True

    def disconnect(self):
        """Close the active source. Trackers and the packet log are kept."""
        with self._lock:
            self._teardown()
        self._notify_status()

    def _teardown(self):
        if self.demo is not None:
            self.demo.stop()
            self.demo = None
        if self.channel is not None:
            # negotiator first so a running probe sees the abort
            self.negotiator.on_disconnect()
            if self._packet_sub is not None:
                self._packet_sub.release()
                self._packet_sub = None
            self.channel.close()
            self.channel = None
        logger.info("[STATION] Disconnected")

    def _on_connection_lost(self):
        """Called from the serial reader thread when the port goes away."""
        logger.warning(f"[STATION] Lost connection to {self.port}")
        with self._lock:
            if self.channel is not None:
                self._teardown()
        self._notify_status()

    def stop(self):
        """Disconnect and stop the ingest worker."""
        self.disconnect()
        if self._worker is not None:
            self._packet_queue.put(None)
            self._worker.join(timeout=5)
            self._worker = None
        logger.info(f"[STATION] Stopped. Store stats: {self.store.stats}")

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def _enqueue(self, packet: TelemetryPacket):
        self._packet_queue.put((packet, self.store.generation))

    def _ensure_worker(self):
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._ingest_worker, daemon=True, name="IngestWorker")
            self._worker.start()
            logger.info("[STATION] Ingest worker started")

    def _ingest_worker(self):
        while True:
            item = self._packet_queue.get()
            if item is None:
                self._packet_queue.task_done()
                break
            packet, generation = item
            try:
                self.store.ingest(packet, generation=generation)
                if self.packet_callback:
                    self.packet_callback(packet)
            except Exception as e:
                logger.error(f"[STATION] Error ingesting packet from {packet.node_id}: {e}")
                logger.error(traceback.format_exc())
            finally:
                self._packet_queue.task_done()

    def wait_until_ingested(self):
        """Block until every queued packet has been folded into the store."""
        self._packet_queue.join()

    def clear_packets(self):
        self.store.clear_packets()

    def forget_trackers(self):
        """Drop all trackers and the packet log; the connection stays up."""
        self.store.reset()
        self._notify_status()

    def export_csv(self, path: Optional[str] = None) -> str:
        """Write the packet log to disk. Raises ExportError."""
        return export_packets_csv(self.store.packets(), path)

    def csv_text(self) -> str:
        return packets_to_csv(self.store.packets())

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def probe_config(self):
        return self.negotiator.probe()

    def apply_config(self, values: Union[Mapping[str, str], Iterable[Tuple[str, str]]]) -> List[ConfigLogEntry]:
        return self.negotiator.apply(values)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn(self, target: Callable, name: str):
        thread = threading.Thread(target=target, daemon=True, name=name)
        thread.start()
        return thread

    def _notify_status(self):
        if self.status_callback:
            try:
                self.status_callback(self.status())
            except Exception as e:
                logger.warning(f"[STATION] Status callback failed: {e}")

    def status(self) -> Dict:
        return {
            'connected': self.connected,
            'mode': self.mode,
            'port': self.port if self.connected else None,
            'baud': self.baud if self.mode == "serial" else None,
            'status_text': self.status_text(),
            'trackers': len(self.store),
            'packets': len(self.store.packets()),
            'config': self.negotiator.status(),
        }


def run_headless(station: GroundStation):
    """Log packets to the console until Ctrl+C."""
    def _print_packet(packet: TelemetryPacket):
        pos = f"{packet.lat:.6f}, {packet.lon:.6f}" if packet.position else "no fix"
        fix = packet.fix_status.value if packet.fix_status else "?"
        print(f"  {packet.node_id:>6}  {pos:<24} RSSI {packet.rssi} SNR {packet.snr}  {fix}")

    station.packet_callback = _print_packet
    print("Listening for packets... (Ctrl+C to stop)")
    while station.connected:
        time.sleep(0.5)


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Dispatch tracker ground station")
    parser.add_argument("--serial", type=str, help="Serial port (e.g., COM4 or /dev/ttyUSB0)")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--demo", action="store_true",
                        help="Run the URRG demo simulation instead of a serial device")
    parser.add_argument("--list-ports", action="store_true",
                        help="List available serial ports and exit")
    parser.add_argument("--no-probe", action="store_true",
                        help="Don't probe device configuration on connect")
    parser.add_argument("--no-dashboard", action="store_true",
                        help="Print packets to the console instead of serving the dashboard")
    parser.add_argument("--host", default=DASHBOARD_HOST, help="Dashboard host to bind to")
    parser.add_argument("--port", type=int, default=DASHBOARD_PORT, help="Dashboard port")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging to console")

    args = parser.parse_args()

    if args.list_ports:
        ports = list_serial_ports()
        print("Available serial ports:")
        for p in ports:
            print(f"  - {p}")
        if not ports:
            print("  No serial ports found.")
        return

    setup_logging(debug=args.debug)
    logger.info("=" * 60)
    logger.info("Dispatch Ground Station Starting")
    logger.info("=" * 60)

    station = GroundStation(auto_probe=not args.no_probe)

    def _signal_handler(sig, frame):
        print("\n[Ctrl+C] Shutting down...")
        station.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, _signal_handler)

    if args.demo:
        station.connect_demo()
    elif args.serial:
        if not station.connect(args.serial, baud=args.baud):
            print(f"Failed to open {args.serial}")
            if args.no_dashboard:
                return

    if args.no_dashboard:
        if not station.connected:
            print("Nothing to listen to: pass --serial <port> or --demo")
            return
        run_headless(station)
        station.stop()
        return

    import dashboard
    dashboard.init_dashboard(station)
    dashboard.run_dashboard(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
