"""
Dispatch Dashboard API
JSON + Socket.IO endpoints over a live GroundStation session.

Requirements:
    pip install flask flask-socketio

Usage:
    python dashboard.py --demo
    Then query http://localhost:5000/api/status
"""

import os
import logging
from typing import Optional

from flask import Flask, Response, jsonify, request
from flask_socketio import SocketIO

from config_negotiator import CONFIG_KEYS
from demo_simulation import DEMO_PORT
from ground_station import GroundStation, setup_logging
from line_channel import DEFAULT_BAUD, list_serial_ports
from packet_export import ExportError

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET_KEY', 'change-me-in-production')
socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

# Global state
station: Optional[GroundStation] = None

FREQ_MIN_MHZ = 902.0
FREQ_MAX_MHZ = 928.0
NODE_ID_MIN = 0
NODE_ID_MAX = 9
CALLSIGN_MAX_LEN = 12


def _emit_packet(packet):
    socketio.emit('packet', packet.to_dict())


def _emit_config_log(entry):
    socketio.emit('config_log', entry.to_dict())


def _emit_status(status):
    socketio.emit('status', status)


def init_dashboard(existing: Optional[GroundStation] = None) -> GroundStation:
    """Attach the dashboard to a session (a new one if none is given)."""
    global station
    station = existing or GroundStation()
    station.packet_callback = _emit_packet
    station.negotiator.log_callback = _emit_config_log
    station.status_callback = _emit_status
    return station


def get_station() -> GroundStation:
    if station is None:
        return init_dashboard()
    return station


def validate_config_values(data: dict):
    """
    Normalise the settings form.

    Returns:
        (values, errors); values keeps only non-empty fields, in key order.
    """
    values = {}
    errors = {}
    for key in CONFIG_KEYS:
        raw = data.get(key)
        if raw is None or str(raw).strip() == '':
            continue
        value = str(raw).strip()
        if key == 'freq':
            try:
                mhz = float(value)
            except ValueError:
                errors[key] = 'Frequency must be a number'
                continue
            if not FREQ_MIN_MHZ <= mhz <= FREQ_MAX_MHZ:
                errors[key] = f'Frequency must be {FREQ_MIN_MHZ:g} - {FREQ_MAX_MHZ:g} MHz'
                continue
        elif key == 'node_id':
            if not value.isdigit() or not NODE_ID_MIN <= int(value) <= NODE_ID_MAX:
                errors[key] = f'Node ID must be {NODE_ID_MIN} - {NODE_ID_MAX}'
                continue
        elif key == 'callsign':
            value = value.upper()
            if len(value) > CALLSIGN_MAX_LEN:
                errors[key] = f'Callsign must be at most {CALLSIGN_MAX_LEN} characters'
                continue
            if not value.isprintable() or any(ch.isspace() for ch in value):
                errors[key] = 'Callsign must be printable with no spaces'
                continue
        values[key] = value
    return values, errors


@app.route('/')
def index():
    """Service banner."""
    return jsonify({'service': 'dispatch', 'status': get_station().status_text()})


@app.route('/api/status')
def api_status():
    return jsonify(get_station().status())


@app.route('/api/ports')
def api_ports():
    """Serial ports, plus the demo pseudo-port."""
    return jsonify({'ports': list_serial_ports(), 'demo_port': DEMO_PORT})


@app.route('/api/connect', methods=['POST'])
def api_connect():
    data = request.get_json(silent=True) or {}
    port = (data.get('port') or '').strip()
    if not port:
        return jsonify({'success': False, 'error': 'No port selected'}), 400
    try:
        baud = int(data.get('baud', DEFAULT_BAUD))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'Invalid baud rate'}), 400

    logger.info(f"[DASH] Connect requested: {port} @ {baud}")
    s = get_station()
    if not s.connect(port, baud=baud):
        return jsonify({'success': False, 'error': f'Failed to open {port}'})
    return jsonify({'success': True, 'status': s.status()})


@app.route('/api/disconnect', methods=['POST'])
def api_disconnect():
    s = get_station()
    s.disconnect()
    return jsonify({'success': True, 'status': s.status()})


@app.route('/api/trackers')
def api_trackers():
    """Trackers in first-seen order, with trails."""
    s = get_station()
    latest = s.store.latest_with_position()
    return jsonify({
        'trackers': [t.to_dict() for t in s.store.snapshot()],
        'latest_fix': latest.to_dict() if latest else None,
    })


@app.route('/api/trackers/<node_id>')
def api_tracker(node_id):
    tracker = get_station().store.get_tracker(node_id)
    if tracker is None:
        return jsonify({'error': f'Unknown node {node_id}'}), 404
    return jsonify(tracker.to_dict())


@app.route('/api/packets')
def api_packets():
    """Packet log, newest first."""
    limit = request.args.get('limit', None, type=int)
    packets = get_station().store.packets(limit)
    return jsonify([p.to_dict() for p in packets])


@app.route('/api/packets/clear', methods=['POST'])
def api_clear_packets():
    get_station().clear_packets()
    return jsonify({'success': True})


@app.route('/api/trackers/reset', methods=['POST'])
def api_reset_trackers():
    """Forget every tracker; colours are handed out again from the start."""
    get_station().forget_trackers()
    return jsonify({'success': True})


@app.route('/api/packets/export')
def api_export_packets():
    """Download the packet log as CSV."""
    try:
        body = get_station().csv_text()
    except ExportError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    return Response(
        body,
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=packets.csv'},
    )


@app.route('/api/config')
def api_config():
    negotiator = get_station().negotiator
    return jsonify({
        **negotiator.status(),
        'log': [e.to_dict() for e in negotiator.log_entries()],
    })


@app.route('/api/config/probe', methods=['POST'])
def api_config_probe():
    negotiator = get_station().negotiator
    if not negotiator.connected:
        return jsonify({'success': False, 'error': 'Not connected'})
    if negotiator.probing:
        return jsonify({'success': False, 'error': 'Already probing'})
    socketio.start_background_task(negotiator.probe)
    return jsonify({'success': True, 'status': 'probing'})


@app.route('/api/config/apply', methods=['POST'])
def api_config_apply():
    negotiator = get_station().negotiator
    data = request.get_json(silent=True) or {}
    values, errors = validate_config_values(data)
    if errors:
        return jsonify({'success': False, 'errors': errors}), 400

    if not negotiator.connected:
        return jsonify({'success': False, 'error': 'Not connected'})
    if negotiator.sending:
        return jsonify({'success': False, 'error': 'Already sending'})
    eligible = negotiator.eligible_pairs(values)
    if not eligible:
        return jsonify({'success': False, 'error': 'No available fields to send'})

    logger.info(f"[DASH] Queued config: {eligible}")
    socketio.start_background_task(negotiator.apply, eligible)
    return jsonify({'success': True, 'queued': [k for k, _ in eligible]})


@app.route('/api/config/log/clear', methods=['POST'])
def api_config_log_clear():
    get_station().negotiator.clear_log()
    return jsonify({'success': True})


def run_dashboard(host='0.0.0.0', port=5000, debug=False):
    """Run the dashboard server."""
    print(f"\n{'='*60}")
    print("  Dispatch Dashboard")
    print(f"{'='*60}")
    print(f"\n  Local:   http://localhost:{port}")
    print(f"  Network: http://<your-ip>:{port}")
    print("\n  Press Ctrl+C to stop\n")

    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Dispatch Dashboard')
    parser.add_argument('--host', default='0.0.0.0', help='Host to bind to')
    parser.add_argument('--port', type=int, default=5000, help='Port to listen on')
    parser.add_argument('--demo', action='store_true', help='Start the demo simulation')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()
    setup_logging(debug=args.debug)
    s = init_dashboard()
    if args.demo:
        s.connect_demo()
    run_dashboard(host=args.host, port=args.port, debug=args.debug)
