import contextlib
import io
import json
import ok_logging_setup
import os
import pty
import pytest
import threading
import typing

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "ok_devio=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("[]")
    monkeypatch.setenv("OK_DEVIO_SCAN_OVERRIDE", str(path))

    def set_ports(ports: list[str] | dict[str, dict]):
        path.write_text(json.dumps(ports))

    return set_ports


class FakeSerial:
    """Stands in for serial.Serial; reads come from feed(), writes collect"""

    def __init__(self, port=None, timeout=None, write_timeout=None, **settings):
        self.port = port
        self.timeout = timeout
        self.write_timeout = write_timeout
        self.settings = settings
        self.is_open = True
        self.written = bytearray()
        self.write_sizes: list[int] = []
        self.write_error: OSError | None = None
        self.write_delay = 0.0
        self.out_waiting = 0
        self.signal_log: list[tuple[str, bool]] = []
        self.signal_error: dict[str, OSError] = {}
        self._cond = threading.Condition()
        self._incoming = bytearray()
        self._read_error: OSError | None = None
        self._cancelled = False

    @property
    def rts(self):
        return dict(self.signal_log).get("rts")

    @rts.setter
    def rts(self, value):
        self._set_line("rts", value)

    @property
    def dtr(self):
        return dict(self.signal_log).get("dtr")

    @dtr.setter
    def dtr(self, value):
        self._set_line("dtr", value)

    def _set_line(self, line, value):
        if error := self.signal_error.get(line):
            raise error
        self.signal_log.append((line, value))

    def feed(self, data: bytes):
        with self._cond:
            self._incoming.extend(data)
            self._cond.notify_all()

    def fail_reads(self, error: OSError):
        with self._cond:
            self._read_error = error
            self._cond.notify_all()

    @property
    def in_waiting(self):
        with self._cond:
            return len(self._incoming)

    def read(self, size=1):
        with self._cond:
            self._cond.wait_for(
                lambda: self._incoming or self._read_error or self._cancelled,
                timeout=self.timeout,
            )
            self._cancelled = False
            if self._read_error:
                raise self._read_error
            out = bytes(self._incoming[:size])
            del self._incoming[:size]
            return out

    def write(self, data):
        if self.write_error:
            raise self.write_error
        if self.write_delay:
            threading.Event().wait(self.write_delay)
        with self._cond:
            self.written.extend(data)
            self.write_sizes.append(len(data))
            self._cond.notify_all()
        return len(data)

    def cancel_read(self):
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def cancel_write(self):
        pass

    def close(self):
        self.is_open = False


class FakeSerialFactory:
    def __init__(self):
        self.opened: list[FakeSerial] = []
        self.open_errors: dict[str, Exception] = {}

    def __call__(self, port=None, **kwargs):
        if error := self.open_errors.get(port):
            raise error
        fake = FakeSerial(port=port, **kwargs)
        self.opened.append(fake)
        return fake

    def last(self) -> FakeSerial:
        return self.opened[-1]


@pytest.fixture
def fake_serial(mocker):
    factory = FakeSerialFactory()
    mocker.patch("serial.Serial", side_effect=factory)
    return factory


class RecordingSink:
    """EventSink that remembers everything published to it"""

    def __init__(self):
        self.events: list[tuple[str, typing.Any]] = []
        self._cond = threading.Condition()

    def publish(self, topic, payload):
        with self._cond:
            self.events.append((topic, payload))
            self._cond.notify_all()

    def payloads(self, topic):
        with self._cond:
            return [p for t, p in self.events if t == topic]

    def serial(self, kind=None, key=None):
        return [
            e
            for e in self.payloads("serial_event")
            if (kind is None or e.kind == kind) and (key is None or e.key == key)
        ]

    def wait_for(self, check, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(check, timeout=timeout)

    def wait_for_data(self, size, key=None, timeout=5.0) -> bytes:
        def received():
            hexes = [e.hex for e in self.serial("data", key)]
            return bytes.fromhex(" ".join(hexes))

        self.wait_for(lambda: len(received()) >= size, timeout=timeout)
        return received()


@pytest.fixture
def sink():
    return RecordingSink()
