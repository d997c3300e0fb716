import concurrent.futures
import dataclasses
import errno
import logging
import queue
import threading
import typing

import msgspec
import pydantic
import serial

from ok_devio import _exceptions
from ok_devio import _host
from ok_devio import _timeout_math
from ok_devio import _transport

log = logging.getLogger("ok_devio.session")
data_log = logging.getLogger(log.name + ".data")

SERIAL_EVENT_TOPIC = "serial_event"

_TIMEOUT_ERRNOS = (errno.EAGAIN, errno.EWOULDBLOCK, errno.ETIMEDOUT, errno.EINTR)


class SessionOptions(pydantic.BaseModel):
    read_timeout: pydantic.PositiveFloat = 0.1
    read_size: pydantic.PositiveInt = 4096
    write_timeout: pydantic.PositiveFloat | None = 2.0
    drain_poll: pydantic.PositiveFloat = 0.002
    drain_limit: pydantic.NonNegativeFloat = 0.3


class SerialEvent(msgspec.Struct, frozen=True):
    """Payload published on SERIAL_EVENT_TOPIC"""

    key: str
    kind: typing.Literal["status", "error", "data"]
    text: str
    hex: str = ""


def hex_dump(data: bytes) -> str:
    return data.hex(" ").upper()


def emit_event(
    sink: _host.EventSink,
    key: str,
    kind: typing.Literal["status", "error", "data"],
    text: str,
    hex: str = "",
) -> None:
    event = SerialEvent(key=key, kind=kind, text=text, hex=hex)
    _host.deliver(sink, SERIAL_EVENT_TOPIC, event)


class CancelToken:
    """Shared stop flag for a session's threads"""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleeps up to timeout, waking early (and returning True) on cancel"""

        return self._event.wait(timeout)


@dataclasses.dataclass
class _Send:
    data: bytes
    reply: concurrent.futures.Future = dataclasses.field(
        default_factory=concurrent.futures.Future
    )


@dataclasses.dataclass
class _SetSignals:
    rts: bool
    dtr: bool
    reply: concurrent.futures.Future = dataclasses.field(
        default_factory=concurrent.futures.Future
    )


class _Shutdown:
    pass


_SHUTDOWN = _Shutdown()


class SerialSession:
    """
    One open serial port with a reader thread and a writer/control thread.
    The reader only reads the port and the writer only writes it and sets
    control lines, so the pyserial handle needs no lock. Writes and signal
    changes go through a one-slot queue and are answered via futures.
    """

    def __init__(
        self,
        key: str,
        config: _transport.SerialSessionConfig,
        sink: _host.EventSink,
        opts: SessionOptions = SessionOptions(),
    ):
        self.key = key
        self.config = config
        self._sink = sink
        self._opts = opts

        port = config.port
        log.debug("Opening %s (%s)", port, config)
        try:
            self._port = serial.Serial(
                port=port,
                timeout=opts.read_timeout,
                write_timeout=opts.write_timeout,
                **config.pyserial_settings(),
            )
        except ValueError as ex:
            message = f"Serial port rejected settings ({ex})"
            raise _exceptions.InvalidArgument(f"{port}: {message}") from ex
        except OSError as ex:
            if ex.errno == errno.EBUSY:
                message = "Serial port busy (EBUSY)"
                raise _exceptions.PortBusy(message, port) from ex
            else:
                message = f"Serial port open error ({ex})"
                raise _exceptions.PortOpenFailure(message, port) from ex

        self._token = CancelToken()
        self._commands: queue.Queue = queue.Queue(maxsize=1)
        self._threads: list[threading.Thread] = []
        self._join_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"SerialSession({self.key!r}, {self.config.port!r})"

    @property
    def port_name(self) -> str:
        return self.config.port

    def start(self) -> None:
        for t, n in ((self._readloop, "reader"), (self._writeloop, "writer")):
            name = f"{self.config.port} {n}"
            thread = threading.Thread(target=t, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def is_alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def send(self, data: bytes) -> int:
        if not data:
            return 0
        return self._call(_Send(data=bytes(data)))

    def set_signals(self, rts: bool, dtr: bool) -> None:
        self._call(_SetSignals(rts=rts, dtr=dtr))

    def stop(self) -> None:
        """Asks both threads to exit; does not wait for them"""

        self._token.cancel()
        try:
            self._commands.put_nowait(_SHUTDOWN)
        except queue.Full:
            log.debug("%s command queue full, writer will see cancel", self)

        try:
            self._port.cancel_read()
            self._port.cancel_write()
            log.debug("Cancelled %s I/O", self.config.port)
        except OSError:
            log.warning("Can't cancel %s I/O", self.config.port, exc_info=True)

    def join(self) -> None:
        """Waits for both threads to exit, then releases the port"""

        with self._join_lock:
            log.debug("Joining %s I/O threads", self.config.port)
            for thread in self._threads:
                thread.join()
            if self._port.is_open:
                self._port.close()
                log.debug("Closed %s", self.config.port)

    def _call(self, command: _Send | _SetSignals) -> typing.Any:
        port, wait = self.config.port, self._opts.read_timeout
        while True:
            if self._token.cancelled or not self._writer_alive():
                message = "Serial session is closed"
                raise _exceptions.ChannelUnavailable(message, port)
            try:
                self._commands.put(command, timeout=wait)
                break
            except queue.Full:
                continue

        while True:
            try:
                return command.reply.result(timeout=wait)
            except concurrent.futures.TimeoutError:
                if not self._writer_alive() and not command.reply.done():
                    message = "Serial writer exited without replying"
                    raise _exceptions.ChannelUnavailable(message, port) from None

    def _writer_alive(self) -> bool:
        return len(self._threads) > 1 and self._threads[1].is_alive()

    def _readloop(self) -> None:
        log.debug("Starting thread")
        port, size = self.config.port, self._opts.read_size
        while not self._token.cancelled:
            try:
                # Block (with timeout) for one byte, then grab what's waiting
                incoming = self._port.read(size=1)
                if incoming:
                    waiting = min(self._port.in_waiting, size - 1)
                    if waiting > 0:
                        incoming += self._port.read(size=waiting)
            except OSError as ex:
                if _is_timeout(ex):
                    continue
                if self._token.cancelled:
                    break
                data_log.warning("%s: Serial read error", port, exc_info=True)
                emit_event(self._sink, self.key, "error", f"{port}: {ex}")
                break

            if incoming:
                data_log.debug("%s: Read %db", port, len(incoming))
                text = incoming.decode("utf-8", errors="replace")
                emit_event(self._sink, self.key, "data", text, hex_dump(incoming))

        log.debug("Exiting thread")

    def _writeloop(self) -> None:
        log.debug("Starting thread")
        while True:
            try:
                command = self._commands.get(timeout=self._opts.read_timeout)
            except queue.Empty:
                if self._token.cancelled:
                    break
                continue

            if isinstance(command, _Shutdown):
                break
            if not command.reply.set_running_or_notify_cancel():
                continue

            try:
                if self._token.cancelled:
                    message = "Serial port is closing"
                    raise _exceptions.SessionClosing(message, self.config.port)
                elif isinstance(command, _Send):
                    result = self._write(command.data)
                else:
                    result = self._set_signals(command.rts, command.dtr)
            except _exceptions.DevIoException as ex:
                command.reply.set_exception(ex)
            except Exception as ex:
                port = self.config.port
                log.error("%s: Failed %s", port, command, exc_info=True)
                command.reply.set_exception(ex)
            else:
                command.reply.set_result(result)

        self._fail_pending()
        log.debug("Exiting thread")

    def _fail_pending(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return
            if isinstance(command, _Shutdown):
                continue
            if command.reply.set_running_or_notify_cancel():
                message = "Serial session is closed"
                error = _exceptions.ChannelUnavailable(message, self.config.port)
                command.reply.set_exception(error)

    def _write(self, data: bytes) -> int:
        port = self.config.port
        try:
            written = self._port.write(data)
        except OSError as ex:
            data_log.warning("%s: Serial write error", port, exc_info=True)
            message = f"Serial write error ({ex})"
            raise _exceptions.IoFailure(message, port) from ex

        written = len(data) if written is None else written
        data_log.debug("%s: Wrote %d/%db", port, written, len(data))
        self._drain()
        return written

    def _drain(self) -> None:
        # An unqueryable output buffer counts as drained, which can hide a
        # short write on platforms without out_waiting support.
        port = self.config.port
        deadline = _timeout_math.to_deadline(self._opts.drain_limit)
        while True:
            try:
                if self._port.out_waiting <= 0:
                    return
            except (OSError, AttributeError, NotImplementedError):
                data_log.debug("%s: Can't query output buffer", port)
                return

            if self._token.cancelled:
                message = "Serial port is closing"
                raise _exceptions.SessionClosing(message, port)

            wait = _timeout_math.from_deadline(deadline)
            if wait <= 0:
                data_log.debug("%s: Drain wait expired", port)
                return
            self._token.wait(min(self._opts.drain_poll, wait))

    def _set_signals(self, rts: bool, dtr: bool) -> None:
        port = self.config.port
        for line, value in (("rts", rts), ("dtr", dtr)):
            try:
                setattr(self._port, line, value)
            except OSError as ex:
                message = f"Can't set {line.upper()}={int(value)} ({ex})"
                raise _exceptions.IoFailure(message, port) from ex
        data_log.debug("%s: Set RTS=%d DTR=%d", port, rts, dtr)


def _is_timeout(ex: OSError) -> bool:
    if isinstance(ex, (TimeoutError, serial.SerialTimeoutException)):
        return True
    return ex.errno in _TIMEOUT_ERRNOS
