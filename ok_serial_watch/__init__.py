"""
Serial port discovery with arrival/removal notifications
(PySerial based, kernel uevents on Linux, polling elsewhere).
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from ok_serial_watch._dispatcher import ListenerHandle, NotificationDispatcher

from ok_serial_watch._events import (
    ChangeEvent,
    ErrorCallback,
    PortArrival,
    PortRemoval,
    SerialPortListener,
)

from ok_serial_watch._exceptions import (
    EnumerationError,
    ListenerFailure,
    MonitoringLost,
    SerialWatchException,
)

from ok_serial_watch._registry import PortRegistry, sorted_ports
from ok_serial_watch._scanning import SerialPort, scan_serial_ports

from ok_serial_watch._sources import (
    ChangeSource,
    PollingChangeSource,
    UeventChangeSource,
    default_change_source,
)

from ok_serial_watch._watcher import (
    SerialPortWatcher,
    WatchOptions,
    default_watcher,
)

__all__ = [n for n in dir() if not n.startswith("_")]
