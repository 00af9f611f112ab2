"""
Tests for CSV export of the packet log (packet_export.py)

Run: python -m pytest test_packet_export.py -v
"""

import io
from datetime import datetime

import pytest

from demo_simulation import DemoSimulation
from packet_export import (
    CSV_COLUMNS,
    ExportError,
    default_export_path,
    export_packets_csv,
    packets_to_csv,
    read_packets_csv,
)
from telemetry import FixStatus, make_packet


@pytest.fixture
def packets():
    return DemoSimulation(seed=99).generate(12, start_ms=1_700_000_000_000)


class TestCsv:

    def test_header(self, packets):
        text = packets_to_csv(packets)
        assert text.splitlines()[0] == ",".join(CSV_COLUMNS)
        assert len(text.splitlines()) == len(packets) + 1

    def test_read_back_preserves_node_and_time(self, packets):
        restored = read_packets_csv(io.StringIO(packets_to_csv(packets)))
        assert {(p.node_id, p.timestamp) for p in restored} == {(p.node_id, p.timestamp) for p in packets}

    def test_missing_fields_are_blank(self):
        p = make_packet("VOID", rssi=-90, snr=-2, fix_status=FixStatus.NOFIX, timestamp=5)
        row = packets_to_csv([p]).splitlines()[1]
        assert row == "VOID,,,-90,-2,NOFIX,,5"

    def test_coordinates_six_decimals(self):
        p = make_packet("1", lat=42.1, lon=-77.123456789, timestamp=1)
        row = packets_to_csv([p]).splitlines()[1]
        assert row.startswith("1,42.100000,-77.123457,")

    def test_empty_log_is_an_error(self):
        with pytest.raises(ExportError):
            packets_to_csv([])

    def test_bad_header_rejected(self):
        with pytest.raises(ExportError):
            read_packets_csv(io.StringIO("a,b,c\n1,2,3\n"))


class TestExportFile:

    def test_writes_file(self, packets, tmp_path):
        target = tmp_path / "out.csv"
        written = export_packets_csv(packets, str(target))
        assert written == str(target)
        with open(target, newline="", encoding="utf-8") as f:
            assert len(read_packets_csv(f)) == len(packets)

    def test_empty_log_writes_nothing(self, tmp_path):
        target = tmp_path / "out.csv"
        with pytest.raises(ExportError):
            export_packets_csv([], str(target))
        assert not target.exists()

    def test_unwritable_path(self, packets, tmp_path):
        with pytest.raises(ExportError):
            export_packets_csv(packets, str(tmp_path / "missing-dir" / "out.csv"))

    def test_default_path_name(self):
        path = default_export_path(datetime(2024, 5, 1, 13, 45, 9))
        assert path.name == "packets-20240501T134509.csv"
