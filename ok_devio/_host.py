"""Capabilities the host application provides: event delivery and stop signals"""

import collections
import logging
import threading
import typing

log = logging.getLogger("ok_devio.host")


@typing.runtime_checkable
class EventSink(typing.Protocol):
    """Delivers events to the host; may raise if the host stopped listening"""

    def publish(self, topic: str, payload: typing.Any) -> None: ...


@typing.runtime_checkable
class CancelSource(typing.Protocol):
    """Hands out a single-fire stop signal for a well-known topic"""

    def subscribe(self, topic: str) -> "CancelSignal": ...


class CancelSignal:
    """Single-fire stop request, polled without blocking"""

    def __init__(self, topic: str = "", on_close=None) -> None:
        self.topic = topic
        self._event = threading.Event()
        self._abandoned = False
        self._on_close = on_close

    def __repr__(self) -> str:
        return f"CancelSignal({self.topic!r})"

    def fire(self) -> None:
        self._event.set()

    def abandon(self) -> None:
        """The sending side went away; treated the same as a stop request"""

        self._abandoned = True
        self._event.set()

    def poll(self) -> bool:
        return self._event.is_set()

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def close(self) -> None:
        """Unsubscribes from the source (idempotent)"""

        if self._on_close:
            on_close, self._on_close = self._on_close, None
            on_close(self)


def deliver(sink: EventSink, topic: str, payload: typing.Any) -> bool:
    """Publishes one event; a failure is discarded (the host may be gone)"""

    try:
        sink.publish(topic, payload)
        return True
    except Exception as exc:
        log.debug("Dropped %s event (%s)", topic, exc)
        return False


class LocalEventBus:
    """In-process EventSink + CancelSource, for the CLI and for tests"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list] = collections.defaultdict(list)
        self._signals: dict[str, list[CancelSignal]] = collections.defaultdict(
            list
        )

    def listen(self, topic: str, callback) -> None:
        with self._lock:
            self._listeners[topic].append(callback)

    def publish(self, topic: str, payload: typing.Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, ()))
            signals = list(self._signals.get(topic, ()))
        for callback in listeners:
            callback(payload)
        for signal in signals:
            signal.fire()

    def subscribe(self, topic: str) -> CancelSignal:
        signal = CancelSignal(topic, on_close=self._unsubscribe)
        with self._lock:
            self._signals[topic].append(signal)
        return signal

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._signals.get(topic, ()))

    def shutdown(self) -> None:
        """Abandons every outstanding signal, as when the host window closes"""

        with self._lock:
            signals = [s for sl in self._signals.values() for s in sl]
            self._signals.clear()
            self._listeners.clear()
        for signal in signals:
            signal.abandon()

    def _unsubscribe(self, signal: CancelSignal) -> None:
        with self._lock:
            if signal in self._signals.get(signal.topic, ()):
                self._signals[signal.topic].remove(signal)
