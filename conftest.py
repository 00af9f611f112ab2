"""
Shared fixtures: an in-memory line channel that plays back canned device
replies, so the negotiator and the station can be driven without hardware.
"""

import os
import sys
import time

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(__file__))

from line_channel import LineChannel, ChannelError  # noqa: E402


class FakeChannel(LineChannel):
    """
    Loopback channel. send_line() records the command and immediately
    publishes whatever lines `replies` maps it to.
    """

    def __init__(self, port="FAKE0", baud=9600, disconnect_callback=None,
                 replies=None, fail_on=(), fail_open=False):
        super().__init__(name=port)
        self.port = port
        self.baud = baud
        self.disconnect_callback = disconnect_callback
        self.replies = dict(replies or {})
        self.fail_on = set(fail_on)
        self.fail_open = fail_open
        self.sent = []
        self.is_open = False

    @property
    def connected(self):
        return self.is_open

    def open(self):
        if self.fail_open:
            raise ChannelError(f"Failed to open port {self.port}: no such device")
        self.is_open = True

    def close(self):
        self.is_open = False
        super().close()

    def send_line(self, text):
        self.check_single_line(text)
        if not self.is_open:
            raise ChannelError("Not connected to a device")
        if text in self.fail_on:
            raise ChannelError("write timeout")
        self.sent.append(text)
        for line in self.replies.get(text, []):
            self.publish_line(line)

    def drop(self):
        """Simulate the cable being pulled."""
        self.is_open = False
        if self.disconnect_callback:
            self.disconnect_callback()


class ChannelFactory:
    """Stands in for SerialLineChannel; remembers every channel it built."""

    def __init__(self, replies=None, fail_open=False):
        self.replies = replies or {}
        self.fail_open = fail_open
        self.created = []

    def __call__(self, port, baud=9600, disconnect_callback=None):
        channel = FakeChannel(port, baud=baud, disconnect_callback=disconnect_callback,
                              replies=self.replies, fail_open=self.fail_open)
        self.created.append(channel)
        return channel

    @property
    def last(self):
        return self.created[-1]


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll until predicate() is truthy; returns its last value."""
    deadline = time.monotonic() + timeout
    result = predicate()
    while not result and time.monotonic() < deadline:
        time.sleep(interval)
        result = predicate()
    return result


# ── Fixtures ─────────────────────────────────────────────────────────

PROBE_REPLY = ["[00:00:01.000] <inf> shell: config", "freq=903.0 node_id=3"]


@pytest.fixture
def fake_channel():
    channel = FakeChannel(replies={"config": PROBE_REPLY})
    channel.open()
    yield channel
    channel.close()


@pytest.fixture
def channel_factory():
    return ChannelFactory(replies={
        "config": PROBE_REPLY,
        "config freq 903.5": ["OK"],
        "config node_id 2": ["[00:00:02.000] <inf> cfg: saved", "node_id set to 2"],
    })


@pytest.fixture
def wait():
    return wait_for
