import abc
import collections.abc
import contextlib
import errno
import logging
import os
import select
import socket
import sys
import threading

import typeguard

from ok_serial_watch import _exceptions
from ok_serial_watch import _scanning
from ok_serial_watch import _timeout_math

log = logging.getLogger("ok_serial_watch.sources")

STOP_TIMEOUT = 5.0
SETTLE_TIME = 0.2
MAX_SCAN_FAILURES = 5

NETLINK_KOBJECT_UEVENT = 15
_UEVENT_KERNEL_GROUP = 1
_UEVENT_BUFSIZE = 16384

OnChange = collections.abc.Callable[[], None]
OnLost = collections.abc.Callable[[_exceptions.MonitoringLost], None]


class ChangeSource(abc.ABC):
    """Watches the OS for serial ports coming and going.

    start() runs a dedicated monitoring thread which calls 'on_change'
    whenever the port list may have changed (several OS events may collapse
    into one call). Every run begins with one such call, so changes made
    between an initial enumerate() and start() are not missed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._monitor: _Monitor | None = None

    def enumerate(self) -> set[str]:
        """Names of the ports attached right now (or EnumerationError)"""

        return {p.name for p in _scanning.scan_serial_ports()}

    def start(self, on_change: OnChange, on_lost: OnLost | None = None) -> None:
        with self._lock:
            if self._monitor:
                raise RuntimeError(f"{self!r} already started")
            self._monitor = _Monitor(
                name=f"{type(self).__name__} monitor",
                run=self._run,
                on_change=on_change,
                on_lost=on_lost,
            )
            self._monitor.start()

    def stop(self) -> None:
        """Ends monitoring; no 'on_change' calls happen after this returns.

        From the monitoring thread itself (a callback tearing things down),
        this only requests the stop, which completes when the callback
        returns.
        """

        with self._lock:
            monitor, self._monitor = self._monitor, None
        if monitor:
            monitor.stop(timeout=STOP_TIMEOUT)

    def poke(self) -> None:
        """Asks for an 'on_change' call soon even if nothing changed"""

        with self._lock:
            if self._monitor:
                self._monitor.poke()

    @abc.abstractmethod
    def _run(self, monitor: "_Monitor") -> None:
        """Monitoring loop, runs on the monitor thread until stopping"""


class PollingChangeSource(ChangeSource):
    """Rescans the port list periodically, signals when it differs"""

    def __init__(self, poll_interval: float | int = 1.0) -> None:
        super().__init__()
        self._poll_interval = poll_interval

    def __repr__(self) -> str:
        return f"{type(self).__name__}(poll_interval={self._poll_interval!r})"

    def _run(self, monitor: "_Monitor") -> None:
        last: set[str] | None = None
        failures = 0
        while not monitor.stopping.is_set():
            poked = monitor.take_poke()
            try:
                current = self.enumerate()
            except _exceptions.EnumerationError as ex:
                failures += 1
                if failures >= MAX_SCAN_FAILURES:
                    message = f"Port scan failed {failures} times in a row"
                    raise _exceptions.MonitoringLost(message) from ex
                nf, mf = failures, MAX_SCAN_FAILURES
                log.warning("Scan failed (%d/%d): %s", nf, mf, ex)
            else:
                failures = 0
                if poked or current != last:
                    last = current
                    monitor.signal()

            monitor.sleep(self._poll_interval)


class UeventChangeSource(PollingChangeSource):
    """Listens for Linux kernel uevents on tty devices, polls if it can't"""

    def _run(self, monitor: "_Monitor") -> None:
        with contextlib.ExitStack() as cleanup:
            try:
                sock = cleanup.enter_context(_open_uevent_socket())
                waker_r, waker_w = socket.socketpair()
            except OSError as ex:
                log.warning("Can't listen for uevents, polling (%s)", ex)
            else:
                cleanup.enter_context(waker_r)
                cleanup.enter_context(waker_w)
                waker_r.setblocking(False)
                waker_w.setblocking(False)
                cleanup.enter_context(monitor.using_waker(waker_w))
                try:
                    self._listen(monitor, sock, waker_r)
                    return
                except OSError as ex:
                    log.warning("Lost uevent socket, polling (%s)", ex)

        super()._run(monitor)

    def _listen(self, monitor: "_Monitor", sock, waker) -> None:
        log.debug("Listening for uevents")
        monitor.signal()  # catch up on anything before we subscribed
        while not monitor.stopping.is_set():
            changed = _read_uevents(sock, waker, timeout=None)
            if changed:
                deadline = _timeout_math.to_deadline(SETTLE_TIME)
                while not monitor.stopping.is_set():
                    settle = _timeout_math.from_deadline(deadline)
                    if settle <= 0 or not _read_uevents(sock, waker, settle):
                        break
            if monitor.take_poke() or changed:
                monitor.signal()


def default_change_source(poll_interval: float | int = 1.0) -> ChangeSource:
    """The best change source for this platform"""

    if sys.platform.startswith("linux") and not os.getenv(
        _scanning.OVERRIDE_ENV
    ):
        return UeventChangeSource(poll_interval=poll_interval)
    return PollingChangeSource(poll_interval=poll_interval)


@typeguard.typechecked
def parse_uevent(data: bytes) -> dict[str, str]:
    """Parses a kernel uevent datagram ("action@devpath\\0KEY=value\\0...")"""

    header, *fields = data.split(b"\0")
    if header.startswith(b"libudev") or b"@" not in header:
        return {}  # udevd rebroadcast or garbage, not a kernel message

    out = {}
    for field in fields:
        key, sep, value = field.partition(b"=")
        if sep:
            out[key.decode(errors="replace")] = value.decode(errors="replace")
    return out


def _is_port_change(uevent: dict[str, str]) -> bool:
    return uevent.get("SUBSYSTEM") == "tty" and uevent.get("ACTION") in (
        "add",
        "remove",
    )


def _open_uevent_socket() -> socket.socket:
    if not hasattr(socket, "AF_NETLINK"):
        raise OSError(errno.EAFNOSUPPORT, "No netlink sockets here")

    sock = socket.socket(
        socket.AF_NETLINK, socket.SOCK_DGRAM, NETLINK_KOBJECT_UEVENT
    )
    try:
        sock.bind((0, _UEVENT_KERNEL_GROUP))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def _read_uevents(sock, waker, timeout: float | None) -> bool:
    """Waits for uevents (or a wakeup); True if any concern tty ports"""

    readable, _, _ = select.select([sock, waker], [], [], timeout)
    if waker in readable:
        with contextlib.suppress(BlockingIOError):
            waker.recv(4096)

    changed = False
    if sock in readable:
        while True:
            try:
                data = sock.recv(_UEVENT_BUFSIZE)
            except BlockingIOError:
                break
            except OSError as ex:
                if ex.errno != errno.ENOBUFS:
                    raise
                log.debug("Uevent overflow, assuming change")
                changed = True
                continue

            if _is_port_change(uevent := parse_uevent(data)):
                log.debug("%s %s", uevent["ACTION"], uevent.get("DEVNAME"))
                changed = True

    return changed


class _Monitor:
    """One run of a change source's monitoring thread"""

    def __init__(
        self,
        *,
        name: str,
        run: collections.abc.Callable[["_Monitor"], None],
        on_change: OnChange,
        on_lost: OnLost | None,
    ) -> None:
        self.stopping = threading.Event()
        self._run = run
        self._on_change = on_change
        self._on_lost = on_lost
        self._lock = threading.Lock()
        self._poked = False
        self._wakeup = threading.Event()
        self._wakers: list[socket.socket] = []
        self._thread = threading.Thread(target=self._main, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float | int) -> None:
        self.stopping.set()
        self._wake()
        if self._thread is threading.current_thread():
            log.debug("Stop requested from monitor thread")
            return

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            message = f"{self._thread.name} didn't exit in {timeout}s"
            raise _exceptions.MonitoringLost(message)
        log.debug("Joined %s", self._thread.name)

    def poke(self) -> None:
        with self._lock:
            self._poked = True
        self._wake()

    def take_poke(self) -> bool:
        with self._lock:
            poked, self._poked = self._poked, False
            return poked

    def signal(self) -> None:
        if not self.stopping.is_set():
            self._on_change()

    def sleep(self, timeout: float | int) -> None:
        self._wakeup.wait(timeout=timeout)
        self._wakeup.clear()

    @contextlib.contextmanager
    def using_waker(self, waker: socket.socket):
        """Writes to 'waker' whenever the loop should wake up"""

        with self._lock:
            self._wakers.append(waker)
        try:
            yield
        finally:
            with self._lock:
                self._wakers.remove(waker)

    def _wake(self) -> None:
        self._wakeup.set()
        with self._lock:
            for waker in self._wakers:
                try:
                    waker.send(b"\0")
                except OSError:
                    log.debug("Can't wake monitor", exc_info=True)

    def _main(self) -> None:
        log.debug("Starting thread")
        try:
            self._run(self)
        except Exception as ex:
            if isinstance(ex, _exceptions.MonitoringLost):
                lost = ex
            else:
                lost = _exceptions.MonitoringLost("Port monitor crashed")
                lost.__cause__ = ex
            log.error("%s", lost, exc_info=True)
            if self._on_lost:
                self._on_lost(lost)
        log.debug("Stopping thread")
