"""
Bluetooth LE advertisement scanning. A RadioAdapter yields a stream of
AdapterEvent notices and answers property lookups per peripheral; the scan
turns those into DiscoveredDevice records for the host until told to stop.
"""

import asyncio
import collections.abc
import enum
import logging
import os
import typing

import bleak
import bleak.exc
import msgspec

from ok_devio import _exceptions
from ok_devio import _host

log = logging.getLogger("ok_devio.ble")

SCAN_EVENT_TOPIC = "ble_advertisement_scan_event"
STOP_SCAN_TOPIC = "stop_ble_advertisement_scan"


class AdapterEventKind(enum.Enum):
    DISCOVERED = "discovered"
    MANUFACTURER_DATA = "manufacturer_data"
    SERVICE_DATA = "service_data"
    SERVICES = "services"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    OTHER = "other"


_RECORD_KINDS = frozenset(
    (
        AdapterEventKind.DISCOVERED,
        AdapterEventKind.MANUFACTURER_DATA,
        AdapterEventKind.SERVICE_DATA,
        AdapterEventKind.SERVICES,
    )
)


class AdapterEvent(msgspec.Struct, frozen=True):
    kind: AdapterEventKind
    address: str


class PeripheralProperties(msgspec.Struct, frozen=True):
    """The adapter's latest view of one peripheral"""

    address: str
    local_name: str | None = None
    rssi: int | None = None
    manufacturer_data: dict[int, bytes] = {}
    services: list[str] = []
    service_data: dict[str, bytes] = {}


class DiscoveredDevice(msgspec.Struct, frozen=True):
    """Snapshot of one advertisement sighting"""

    address: str
    local_name: str = ""
    rssi: int = 0
    manufacturer_data: dict[int, bytes] = {}
    services: list[str] = []
    service_data: dict[str, bytes] = {}
    adv: bytes = b""

    @classmethod
    def from_properties(cls, props: PeripheralProperties) -> "DiscoveredDevice":
        return cls(
            address=props.address,
            local_name=props.local_name or "",
            rssi=props.rssi if props.rssi is not None else 0,
            manufacturer_data=dict(props.manufacturer_data),
            services=[str(s) for s in props.services],
            service_data=dict(props.service_data),
            adv=b"".join(props.service_data.values()),
        )

    def to_json(self) -> str:
        """JSON with byte payloads as integer arrays"""

        return msgspec.json.encode(
            {
                "address": self.address,
                "local_name": self.local_name,
                "rssi": self.rssi,
                "manufacturer_data": {
                    str(k): list(v) for k, v in self.manufacturer_data.items()
                },
                "services": self.services,
                "service_data": {k: list(v) for k, v in self.service_data.items()},
                "adv": list(self.adv),
            }
        ).decode()


@typing.runtime_checkable
class RadioAdapter(typing.Protocol):
    def events(self) -> collections.abc.AsyncIterator[AdapterEvent]: ...

    async def start_scan(self) -> None: ...

    async def stop_scan(self) -> None: ...

    async def properties(self, address: str) -> PeripheralProperties | None: ...


class BleakRadioAdapter:
    """RadioAdapter over bleak.BleakScanner, caching the last advertisement"""

    def __init__(self, adapter: str | None = None, queue_size: int = 256):
        self.adapter = adapter or os.getenv("OK_DEVIO_BLE_ADAPTER") or None
        self._queue: asyncio.Queue[AdapterEvent | None] = asyncio.Queue(
            maxsize=queue_size
        )
        self._known: dict[str, PeripheralProperties] = {}
        self._scanner = None

    def __repr__(self) -> str:
        return f"BleakRadioAdapter({self.adapter!r})"

    async def events(self) -> collections.abc.AsyncIterator[AdapterEvent]:
        while (event := await self._queue.get()) is not None:
            yield event

    async def start_scan(self) -> None:
        # Each scan starts with no device history and an empty event queue
        self._known.clear()
        while not self._queue.empty():
            self._queue.get_nowait()

        kwargs = {"adapter": self.adapter} if self.adapter else {}
        try:
            self._scanner = bleak.BleakScanner(
                detection_callback=self._on_advertisement, **kwargs
            )
            await self._scanner.start()
        except (bleak.exc.BleakError, OSError) as ex:
            self._scanner = None
            message = f"No usable Bluetooth adapter ({ex})"
            raise _exceptions.AdapterUnavailable(message, self.adapter) from ex
        log.debug("Scanning on %s", self)

    async def stop_scan(self) -> None:
        if self._scanner is not None:
            scanner, self._scanner = self._scanner, None
            try:
                await scanner.stop()
            except (bleak.exc.BleakError, OSError):
                log.warning("Can't stop BLE scan on %s", self, exc_info=True)
        self._post(None)

    async def properties(self, address: str) -> PeripheralProperties | None:
        return self._known.get(address)

    def _on_advertisement(self, device, adv) -> None:
        address = device.address
        props = PeripheralProperties(
            address=address,
            local_name=adv.local_name or device.name,
            rssi=adv.rssi,
            manufacturer_data=dict(adv.manufacturer_data),
            services=list(adv.service_uuids),
            service_data=dict(adv.service_data),
        )
        is_new = address not in self._known
        self._known[address] = props

        if is_new:
            self._post(AdapterEvent(AdapterEventKind.DISCOVERED, address))
        if props.manufacturer_data:
            kind = AdapterEventKind.MANUFACTURER_DATA
            self._post(AdapterEvent(kind, address))
        if props.service_data:
            self._post(AdapterEvent(AdapterEventKind.SERVICE_DATA, address))
        if props.services:
            self._post(AdapterEvent(AdapterEventKind.SERVICES, address))

    def _post(self, event: AdapterEvent | None) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            log.debug("BLE event queue full, dropped %s", event)


async def scan_advertisements(
    adapter: RadioAdapter,
    signal: _host.CancelSignal,
) -> collections.abc.AsyncIterator[DiscoveredDevice]:
    """Yields a record per relevant adapter event until signal fires"""

    events = adapter.events()
    await adapter.start_scan()
    try:
        async for event in events:
            if signal.poll():
                why = "abandoned" if signal.abandoned else "requested"
                log.debug("BLE scan stop %s", why)
                break

            if event.kind in _RECORD_KINDS:
                try:
                    props = await adapter.properties(event.address)
                except Exception as ex:
                    log.debug("Skipping %s (%s)", event.address, ex)
                    continue
                if props is not None:
                    yield DiscoveredDevice.from_properties(props)
            elif event.kind in (
                AdapterEventKind.CONNECTED,
                AdapterEventKind.DISCONNECTED,
            ):
                log.debug("BLE %s: %s", event.kind.value, event.address)
    finally:
        await adapter.stop_scan()
        await events.aclose()


async def start_advertisement_scan(
    sink: _host.EventSink,
    cancel_source: _host.CancelSource,
    *,
    adapter: RadioAdapter | None = None,
) -> int:
    """Publishes scan records to sink until STOP_SCAN_TOPIC fires"""

    adapter = adapter if adapter is not None else BleakRadioAdapter()
    signal = cancel_source.subscribe(STOP_SCAN_TOPIC)
    count = 0
    try:
        log.info("Starting BLE advertisement scan")
        async for device in scan_advertisements(adapter, signal):
            try:
                payload = device.to_json()
            except (msgspec.EncodeError, TypeError, ValueError):
                log.debug("Can't encode %s", device.address, exc_info=True)
                continue
            if _host.deliver(sink, SCAN_EVENT_TOPIC, payload):
                count += 1
    finally:
        signal.close()
    log.info("BLE advertisement scan ended (%d records)", count)
    return count
