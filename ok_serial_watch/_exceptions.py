"""Exception hierarchy for ok_serial_watch"""


class SerialWatchException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class EnumerationError(SerialWatchException):
    pass


class MonitoringLost(SerialWatchException):
    pass


class ListenerFailure(SerialWatchException):
    def __init__(
        self,
        message: str,
        port: str | None = None,
        *,
        listener: object = None,
        event: object = None,
    ):
        super().__init__(message, port)
        self.listener = listener
        self.event = event
