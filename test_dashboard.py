"""
Tests for the dashboard JSON API against a GroundStation driven by a fake
serial channel.

Run: python -m pytest test_dashboard.py -v
"""

import json

import pytest

from demo_simulation import DEMO_PORT
from ground_station import GroundStation

TELEMETRY = "Node ID: 3 Lat: 42.705122 Lon: -77.190666 RSSI: -61 SNR: 9 Sats: 11 Fix Status: FIX"


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def station(channel_factory):
    import dashboard
    s = GroundStation(channel_factory=channel_factory, probe_window=0.05,
                      settle_window=0.05, auto_probe=False, demo_seed=3)
    dashboard.init_dashboard(s)
    yield s
    s.stop()


@pytest.fixture
def client(station):
    """Flask test client."""
    import dashboard
    dashboard.app.config['TESTING'] = True
    with dashboard.app.test_client() as c:
        yield c


@pytest.fixture
def connected(client, station):
    resp = client.post('/api/connect', json={'port': '/dev/ttyFAKE', 'baud': 9600})
    assert resp.status_code == 200
    return station


# ── Helpers ──────────────────────────────────────────────────────────

def api_json(client, url):
    resp = client.get(url)
    assert resp.status_code == 200, f'{url} returned {resp.status_code}'
    return json.loads(resp.data)


def post_json(client, url, body=None, status=200):
    resp = client.post(url, json=body or {})
    assert resp.status_code == status, f'{url} returned {resp.status_code}'
    return json.loads(resp.data)


# ── Connection ───────────────────────────────────────────────────────

class TestConnection:

    def test_status_disconnected(self, client):
        data = api_json(client, '/api/status')
        assert data['connected'] is False
        assert data['status_text'] == 'Disconnected'

    def test_ports_include_demo(self, client):
        data = api_json(client, '/api/ports')
        assert data['demo_port'] == DEMO_PORT
        assert isinstance(data['ports'], list)

    def test_connect_requires_port(self, client):
        data = post_json(client, '/api/connect', {'baud': 9600}, status=400)
        assert data['success'] is False

    def test_connect_rejects_bad_baud(self, client):
        post_json(client, '/api/connect', {'port': '/dev/ttyFAKE', 'baud': 'fast'}, status=400)

    def test_connect_and_disconnect(self, client, channel_factory):
        data = post_json(client, '/api/connect', {'port': '/dev/ttyFAKE', 'baud': 115200})
        assert data['success'] is True
        assert data['status']['status_text'] == 'Connected to /dev/ttyFAKE @ 115200'

        data = post_json(client, '/api/disconnect')
        assert data['status']['connected'] is False
        assert not channel_factory.last.is_open

    def test_connect_failure(self, client, channel_factory):
        channel_factory.fail_open = True
        data = post_json(client, '/api/connect', {'port': '/dev/ttyGONE'})
        assert data['success'] is False
        assert 'ttyGONE' in data['error']

    def test_demo_connect(self, client):
        data = post_json(client, '/api/connect', {'port': DEMO_PORT})
        assert data['status']['mode'] == 'demo'
        assert data['status']['status_text'] == 'Connected to URRG Demo'


# ── Trackers / packets ───────────────────────────────────────────────

class TestTelemetry:

    def test_trackers_and_packets(self, client, connected, channel_factory):
        channel_factory.last.publish_line(TELEMETRY)
        connected.wait_until_ingested()

        data = api_json(client, '/api/trackers')
        assert [t['node_id'] for t in data['trackers']] == ['3']
        assert data['latest_fix']['node_id'] == '3'

        packets = api_json(client, '/api/packets')
        assert len(packets) == 1
        assert packets[0]['rssi'] == -61

    def test_unknown_tracker_404(self, client):
        resp = client.get('/api/trackers/99')
        assert resp.status_code == 404

    def test_single_tracker(self, client, connected, channel_factory):
        channel_factory.last.publish_line(TELEMETRY)
        connected.wait_until_ingested()
        data = api_json(client, '/api/trackers/3')
        assert data['order'] == 0
        assert len(data['trail']) == 1

    def test_clear_packets_keeps_trackers(self, client, connected, channel_factory):
        channel_factory.last.publish_line(TELEMETRY)
        connected.wait_until_ingested()
        post_json(client, '/api/packets/clear')
        assert api_json(client, '/api/packets') == []
        assert len(api_json(client, '/api/trackers')['trackers']) == 1

    def test_export_empty_is_400(self, client):
        resp = client.get('/api/packets/export')
        assert resp.status_code == 400

    def test_export_csv(self, client, connected, channel_factory):
        channel_factory.last.publish_line(TELEMETRY)
        connected.wait_until_ingested()
        resp = client.get('/api/packets/export')
        assert resp.status_code == 200
        assert resp.mimetype == 'text/csv'
        lines = resp.data.decode('utf-8').splitlines()
        assert lines[0] == 'node_id,lat,lon,rssi,snr,fix_status,sats,ts'
        assert lines[1].startswith('3,42.705122,-77.190666,-61,9,FIX,11,')


# ── Configuration ────────────────────────────────────────────────────

class TestConfig:

    def test_probe_requires_connection(self, client):
        data = post_json(client, '/api/config/probe')
        assert data == {'success': False, 'error': 'Not connected'}

    def test_probe_then_apply(self, client, connected, wait):
        data = post_json(client, '/api/config/probe')
        assert data['success'] is True
        assert wait(lambda: api_json(client, '/api/config')['state'] == 'probed')

        config = api_json(client, '/api/config')
        assert config['available'] == {'freq': True, 'node_id': True, 'callsign': False}

        data = post_json(client, '/api/config/apply', {'freq': '903.5', 'node_id': '2', 'callsign': ''})
        assert data['queued'] == ['freq', 'node_id']

        def received():
            log = api_json(client, '/api/config')['log']
            return [e for e in log if e['kind'] == 'received']

        assert wait(lambda: len(received()) == 2)
        assert [e['text'] for e in received()] == ['OK', 'node_id set to 2']

    def test_apply_validation(self, client, connected):
        data = post_json(client, '/api/config/apply', {'freq': '433.0', 'node_id': '12'}, status=400)
        assert set(data['errors']) == {'freq', 'node_id'}

    def test_apply_before_probe(self, client, connected):
        data = post_json(client, '/api/config/apply', {'freq': '903.5'})
        assert data == {'success': False, 'error': 'No available fields to send'}

    def test_clear_log(self, client, connected):
        connected.probe_config()
        assert api_json(client, '/api/config')['log']
        post_json(client, '/api/config/log/clear')
        assert api_json(client, '/api/config')['log'] == []


class TestValidation:

    def test_normalises_values(self):
        from dashboard import validate_config_values
        values, errors = validate_config_values({'freq': ' 915 ', 'node_id': '0', 'callsign': 'kd2abc'})
        assert errors == {}
        assert values == {'freq': '915', 'node_id': '0', 'callsign': 'KD2ABC'}

    def test_empty_fields_dropped(self):
        from dashboard import validate_config_values
        values, errors = validate_config_values({'freq': '', 'callsign': None})
        assert values == {} and errors == {}

    def test_callsign_too_long(self):
        from dashboard import validate_config_values
        _, errors = validate_config_values({'callsign': 'X' * 13})
        assert 'callsign' in errors

    @pytest.mark.parametrize('callsign', ['ab\nconfig', 'KD2 ABC', 'KD2\tABC', 'KD2\x07'])
    def test_callsign_rejects_breaks_spaces_and_control(self, callsign):
        from dashboard import validate_config_values
        values, errors = validate_config_values({'callsign': callsign})
        assert 'callsign' in errors
        assert values == {}


class TestTrackerReset:

    def test_reset_forgets_trackers(self, client, connected, channel_factory):
        channel_factory.last.publish_line(TELEMETRY)
        connected.wait_until_ingested()
        post_json(client, '/api/trackers/reset')
        assert api_json(client, '/api/trackers')['trackers'] == []
        assert api_json(client, '/api/packets') == []
        assert api_json(client, '/api/status')['connected'] is True
