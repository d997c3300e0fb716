"""Exception hierarchy for ok_devio"""


class DevIoException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class PortOpenFailure(DevIoException):
    pass


class PortBusy(PortOpenFailure):
    pass


class IoFailure(DevIoException):
    pass


class NotConnected(IoFailure):
    pass


class SessionClosing(IoFailure):
    pass


class ChannelUnavailable(DevIoException):
    pass


class LockFailure(DevIoException):
    pass


class AdapterUnavailable(DevIoException):
    pass


class InvalidArgument(ValueError):
    pass
