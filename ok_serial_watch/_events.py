import collections.abc
import typing

import msgspec

from ok_serial_watch import _exceptions


class PortArrival(msgspec.Struct, frozen=True):
    """A serial port was attached"""

    port: str


class PortRemoval(msgspec.Struct, frozen=True):
    """A serial port went away"""

    port: str


ChangeEvent = PortArrival | PortRemoval


@typing.runtime_checkable
class SerialPortListener(typing.Protocol):
    """Anything with these two methods can receive port change callbacks.

    Callbacks run on the monitoring thread, one at a time. A slow callback
    delays every later delivery, so hand off real work elsewhere.
    """

    def on_arrival(self, port: str) -> None: ...

    def on_removal(self, port: str) -> None: ...


ErrorCallback = collections.abc.Callable[
    [_exceptions.SerialWatchException], None
]
