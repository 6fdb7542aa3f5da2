import json
import ok_logging_setup
import os
import pytest

import ok_serial_watch

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "ok_serial_watch=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class FakeChangeSource(ok_serial_watch.ChangeSource):
    """Change source driven by the test, signalling on the test's thread"""

    def __init__(self, ports=()):
        super().__init__()
        self.ports = set(ports)
        self.fail_enumerate = False
        self.on_change = None
        self.on_lost = None
        self.starts = 0
        self.stops = 0
        self.pokes = 0

    def enumerate(self):
        if self.fail_enumerate:
            raise ok_serial_watch.EnumerationError("Simulated scan failure")
        return set(self.ports)

    def start(self, on_change, on_lost=None):
        assert self.on_change is None, "already started"
        self.on_change, self.on_lost = on_change, on_lost
        self.starts += 1

    def stop(self):
        if self.on_change:
            self.on_change = self.on_lost = None
            self.stops += 1

    def poke(self):
        self.pokes += 1

    def trigger(self, ports=None):
        if ports is not None:
            self.ports = set(ports)
        if self.on_change:
            self.on_change()

    def lose(self):
        self.on_lost(ok_serial_watch.MonitoringLost("Simulated loss"))

    def _run(self, monitor):
        raise AssertionError("FakeChangeSource has no thread")


class RecordingListener:
    def __init__(self, calls: list, name: str):
        self.calls = calls
        self.name = name
        self.on_event = None

    def __repr__(self):
        return f"RecordingListener({self.name!r})"

    def on_arrival(self, port):
        self.calls.append((self.name, "arrival", port))
        if self.on_event:
            self.on_event("arrival", port)

    def on_removal(self, port):
        self.calls.append((self.name, "removal", port))
        if self.on_event:
            self.on_event("removal", port)


@pytest.fixture
def fake_source():
    return FakeChangeSource()


@pytest.fixture
def calls():
    return []


@pytest.fixture
def make_listener(calls):
    def make(name: str = "listener") -> RecordingListener:
        return RecordingListener(calls, name)

    return make


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("{}")
    monkeypatch.setenv("OK_SERIAL_WATCH_OVERRIDE", str(path))

    def set_ports(ports: dict[str, dict[str, str]]):
        # monitor threads read this concurrently, so swap it in whole
        temp_path = tmp_path / "scan.json.tmp"
        temp_path.write_text(json.dumps(ports))
        os.replace(temp_path, path)

    return set_ports
