import contextlib
import logging
import threading

import pydantic

from ok_devio import _exceptions
from ok_devio import _host
from ok_devio import _session
from ok_devio import _transport

log = logging.getLogger("ok_devio.registry")

LOCK_TIMEOUT = 5.0


class SessionRegistry(contextlib.AbstractContextManager):
    """
    Maps session keys (one per host surface, e.g. a window) to at most one
    live SerialSession. The lock covers map lookups and updates only; port
    I/O and thread joins happen outside it.
    """

    def __init__(
        self,
        sink: _host.EventSink,
        opts: _session.SessionOptions = _session.SessionOptions(),
    ):
        self._sink = sink
        self._opts = opts
        self._lock = threading.Lock()
        self._sessions: dict[str, _session.SerialSession] = {}

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close_all()

    def __repr__(self) -> str:
        return f"SessionRegistry({sorted(self.keys())!r})"

    @pydantic.validate_call
    def open(
        self,
        key: str,
        port: str,
        baud_rate: int,
        data_bits: int = 8,
        stop_bits: int = 1,
        parity: str = "none",
        flow_control: str = "none",
    ) -> None:
        """Opens a serial session for key, replacing any existing one"""

        if not port.strip():
            raise _exceptions.InvalidArgument("Serial port name is empty")

        self._close(key, wait=True)

        config = _transport.SerialSessionConfig.parse(
            port=port,
            baud=baud_rate,
            data_bits=data_bits,
            stop_bits=stop_bits,
            parity=parity,
            flow_control=flow_control,
        )

        session = _session.SerialSession(key, config, self._sink, self._opts)
        session.start()
        try:
            with self._locked():
                stale = self._sessions.pop(key, None)
                self._sessions[key] = session
        except _exceptions.LockFailure:
            session.stop()
            session.join()
            raise

        if stale:
            log.warning("Replacing %s that raced in for %r", stale, key)
            stale.stop()
            self._finish(key, stale)

        log.info("Opened %s @ %d for %r", port, config.baud, key)
        status = f"connected: {port} @ {config.baud}"
        _session.emit_event(self._sink, key, "status", status)

    @pydantic.validate_call
    def send(self, key: str, data: bytes) -> int:
        """Writes data and waits for it to drain; returns the byte count"""

        if not data:
            return 0
        return self._lookup(key).send(data)

    @pydantic.validate_call
    def set_signals(self, key: str, rts: bool, dtr: bool) -> None:
        self._lookup(key).set_signals(rts=rts, dtr=dtr)

    @pydantic.validate_call
    def close(self, key: str, wait: bool = False) -> None:
        """Closes the session for key, if any (idempotent)"""

        self._close(key, wait=wait)

    @pydantic.validate_call
    def is_open(self, key: str) -> bool:
        with self._locked():
            return key in self._sessions

    def keys(self) -> list[str]:
        with self._locked():
            return list(self._sessions)

    def close_all(self) -> None:
        with self._locked():
            sessions = list(self._sessions.items())
            self._sessions.clear()

        for key, session in sessions:
            session.stop()
        for key, session in sessions:
            self._finish(key, session)

    def _close(self, key: str, wait: bool) -> None:
        with self._locked():
            session = self._sessions.pop(key, None)

        if session is None:
            log.debug("No session for %r", key)
            return

        log.info("Closing %s", session)
        session.stop()
        if wait:
            self._finish(key, session)
        else:
            name = f"{session.port_name} closer"
            args = (key, session)
            closer = threading.Thread(
                target=self._finish, args=args, name=name, daemon=True
            )
            closer.start()

    def _finish(self, key: str, session: _session.SerialSession) -> None:
        # "disconnected" follows the last data event from the reader
        session.join()
        _session.emit_event(self._sink, key, "status", "disconnected")

    def _lookup(self, key: str) -> _session.SerialSession:
        with self._locked():
            session = self._sessions.get(key)
        if session is None:
            raise _exceptions.NotConnected("Serial port not connected")
        return session

    @contextlib.contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=LOCK_TIMEOUT):
            message = "Session registry lock unavailable"
            raise _exceptions.LockFailure(message)
        try:
            yield
        finally:
            self._lock.release()
