"""Maps host-supplied serial settings onto pyserial, rejecting bad values"""

import collections.abc
import enum
import typing

import pydantic
import serial

from ok_devio import _exceptions


class DataBits(enum.IntEnum):
    FIVE = serial.FIVEBITS
    SIX = serial.SIXBITS
    SEVEN = serial.SEVENBITS
    EIGHT = serial.EIGHTBITS


class StopBits(enum.IntEnum):
    ONE = serial.STOPBITS_ONE
    TWO = serial.STOPBITS_TWO


class Parity(enum.Enum):
    NONE = "none"
    ODD = "odd"
    EVEN = "even"


class FlowControl(enum.Enum):
    NONE = "none"
    SOFTWARE = "software"
    HARDWARE = "hardware"


_PYSERIAL_PARITY = {
    Parity.NONE: serial.PARITY_NONE,
    Parity.ODD: serial.PARITY_ODD,
    Parity.EVEN: serial.PARITY_EVEN,
}


def _choices(values: collections.abc.Iterable) -> str:
    return ", ".join(str(v) for v in values)


def parse_port_name(port: str) -> str:
    if not port.strip():
        raise _exceptions.InvalidArgument("Serial port name is empty")
    return port


def parse_baud_rate(baud: int) -> int:
    if baud <= 0:
        message = f"Invalid baud rate {baud}: must be a positive integer"
        raise _exceptions.InvalidArgument(message)
    return baud


def parse_data_bits(bits: int) -> DataBits:
    try:
        return DataBits(bits)
    except ValueError:
        expected = _choices(b.value for b in DataBits)
        message = f"Invalid data bits {bits}: expected {expected}"
        raise _exceptions.InvalidArgument(message) from None


def parse_stop_bits(bits: int) -> StopBits:
    try:
        return StopBits(bits)
    except ValueError:
        expected = _choices(b.value for b in StopBits)
        message = f"Invalid stop bits {bits}: expected {expected}"
        raise _exceptions.InvalidArgument(message) from None


def parse_parity(parity: str) -> Parity:
    try:
        return Parity(parity.strip().lower())
    except ValueError:
        expected = _choices(p.value for p in Parity)
        message = f"Invalid parity {parity!r}: expected {expected}"
        raise _exceptions.InvalidArgument(message) from None


def parse_flow_control(flow: str) -> FlowControl:
    try:
        return FlowControl(flow.strip().lower())
    except ValueError:
        expected = _choices(f.value for f in FlowControl)
        message = f"Invalid flow control {flow!r}: expected {expected}"
        raise _exceptions.InvalidArgument(message) from None


class SerialSessionConfig(pydantic.BaseModel):
    """Validated transport parameters for one serial session"""

    model_config = pydantic.ConfigDict(frozen=True)

    port: str
    baud: int
    data_bits: DataBits = DataBits.EIGHT
    stop_bits: StopBits = StopBits.ONE
    parity: Parity = Parity.NONE
    flow_control: FlowControl = FlowControl.NONE

    @classmethod
    def parse(
        cls,
        port: str,
        baud: int,
        data_bits: int = 8,
        stop_bits: int = 1,
        parity: str = "none",
        flow_control: str = "none",
    ) -> "SerialSessionConfig":
        """Validates each field in order; the first bad one raises"""

        return cls(
            port=parse_port_name(port),
            baud=parse_baud_rate(baud),
            data_bits=parse_data_bits(data_bits),
            stop_bits=parse_stop_bits(stop_bits),
            parity=parse_parity(parity),
            flow_control=parse_flow_control(flow_control),
        )

    def pyserial_settings(self) -> dict[str, typing.Any]:
        """Keyword arguments for serial.Serial (excluding port and timeouts)"""

        return {
            "baudrate": self.baud,
            "bytesize": int(self.data_bits),
            "stopbits": int(self.stop_bits),
            "parity": _PYSERIAL_PARITY[self.parity],
            "xonxoff": self.flow_control == FlowControl.SOFTWARE,
            "rtscts": self.flow_control == FlowControl.HARDWARE,
        }
