import collections.abc
import dataclasses
import logging
import threading

from ok_serial_watch import _events
from ok_serial_watch import _exceptions
from ok_serial_watch import _registry

log = logging.getLogger("ok_serial_watch.dispatcher")

OnFailure = collections.abc.Callable[[_exceptions.ListenerFailure], None]


@dataclasses.dataclass(frozen=True, eq=False)
class ListenerHandle:
    """Token returned by registration, used to deregister the listener"""

    listener: _events.SerialPortListener

    def __repr__(self) -> str:
        return f"ListenerHandle({self.listener!r})"


class NotificationDispatcher:
    """Fans change events out to registered listeners"""

    def __init__(self, on_error: OnFailure) -> None:
        self._on_error = on_error
        self._lock = threading.Lock()
        self._delivered = threading.Condition(self._lock)
        self._delivering: ListenerHandle | None = None
        self._active: list[ListenerHandle] = []
        self._queued: list[ListenerHandle] = []
        self._replay: set[ListenerHandle] = set()
        self._dispatch_thread: int | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._active) + len(self._queued)

    def register(
        self, listener: _events.SerialPortListener, *, replay: bool = False
    ) -> ListenerHandle:
        handle = ListenerHandle(listener)
        with self._lock:
            if replay:
                self._replay.add(handle)
            if self._dispatch_thread == threading.get_ident():
                self._queued.append(handle)  # activated when dispatch ends
                log.debug("Queued %r during dispatch", listener)
            else:
                self._active.append(handle)
                log.debug("Registered %r", listener)
        return handle

    def deregister(self, handle: ListenerHandle) -> bool:
        """Stops delivery to 'handle'; False if it wasn't registered.

        Once this returns, no new callback to the listener will start. From
        another thread, this waits for a callback already in progress to
        finish (so that callback must not wait on this thread).
        """

        with self._lock:
            self._replay.discard(handle)
            for handles in (self._active, self._queued):
                if handle in handles:
                    handles.remove(handle)
                    break
            else:
                return False

            log.debug("Deregistered %r", handle.listener)
            if self._dispatch_thread != threading.get_ident():
                self._delivered.wait_for(lambda: self._delivering is not handle)
            return True

    def clear(self) -> None:
        with self._lock:
            self._active.clear()
            self._queued.clear()
            self._replay.clear()

    def dispatch(
        self,
        events: collections.abc.Sequence[_events.ChangeEvent],
        *,
        present: collections.abc.Iterable[str] = (),
    ) -> None:
        """Delivers 'events' in order to every listener in registration order.

        'present' is the port set after 'events'; listeners registered with
        replay first get synthetic arrivals for the ports present before.
        """

        with self._lock:
            self._dispatch_thread = threading.get_ident()
            handles = list(self._active)
            replays = [h for h in handles if h in self._replay]
            self._replay.difference_update(replays)

        try:
            if replays:
                before = set(present)
                for event in events:
                    if isinstance(event, _events.PortArrival):
                        before.discard(event.port)
                    else:
                        before.add(event.port)
                for handle in replays:
                    for port in _registry.sorted_ports(before):
                        self._deliver(handle, _events.PortArrival(port=port))

            for event in events:
                for handle in handles:
                    self._deliver(handle, event)
        finally:
            with self._lock:
                self._dispatch_thread = None
                self._active.extend(self._queued)
                self._queued.clear()

    def _deliver(self, handle: ListenerHandle, event: _events.ChangeEvent):
        with self._lock:
            if handle not in self._active:
                return  # deregistered mid-batch
            self._delivering = handle

        try:
            if isinstance(event, _events.PortArrival):
                handle.listener.on_arrival(event.port)
            else:
                handle.listener.on_removal(event.port)
        except Exception as ex:
            kind = type(event).__name__
            failure = _exceptions.ListenerFailure(
                f"{handle.listener!r} failed on {kind}",
                event.port,
                listener=handle.listener,
                event=event,
            )
            failure.__cause__ = ex
            self._on_error(failure)
        finally:
            with self._lock:
                self._delivering = None
                self._delivered.notify_all()
