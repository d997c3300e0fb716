"""
Device I/O session layer: serial sessions (PySerial) with independent reader
and writer threads, plus Bluetooth LE advertisement scanning (bleak).
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from ok_devio._appdata import (
    FileInfo,
    app_data_dir,
    ensure_app_data,
    file_info,
    open_directory,
    read_chip_list,
    reveal_in_file_manager,
)

from ok_devio._ble import (
    SCAN_EVENT_TOPIC,
    STOP_SCAN_TOPIC,
    AdapterEvent,
    AdapterEventKind,
    BleakRadioAdapter,
    DiscoveredDevice,
    PeripheralProperties,
    RadioAdapter,
    scan_advertisements,
    start_advertisement_scan,
)

from ok_devio._exceptions import (
    AdapterUnavailable,
    ChannelUnavailable,
    DevIoException,
    InvalidArgument,
    IoFailure,
    LockFailure,
    NotConnected,
    PortBusy,
    PortOpenFailure,
    SessionClosing,
)

from ok_devio._host import CancelSignal, CancelSource, EventSink, LocalEventBus
from ok_devio._registry import SessionRegistry
from ok_devio._scanning import list_serial_ports

from ok_devio._session import (
    SERIAL_EVENT_TOPIC,
    SerialEvent,
    SerialSession,
    SessionOptions,
)

from ok_devio._transport import (
    DataBits,
    FlowControl,
    Parity,
    SerialSessionConfig,
    StopBits,
    parse_data_bits,
    parse_flow_control,
    parse_parity,
    parse_stop_bits,
)

__all__ = [n for n in dir() if not n.startswith("_")]
