import asyncio
import collections.abc
import contextlib
import functools
import logging
import threading

import pydantic

from ok_serial_watch import _dispatcher
from ok_serial_watch import _events
from ok_serial_watch import _exceptions
from ok_serial_watch import _registry
from ok_serial_watch import _sources

log = logging.getLogger("ok_serial_watch.watcher")


class WatchOptions(pydantic.BaseModel):
    poll_interval: float = pydantic.Field(default=1.0, gt=0)


class SerialPortWatcher(contextlib.AbstractContextManager):
    """Calls listeners back as serial ports are attached and detached.

    Monitoring starts with the first listener and stops after the last one
    is removed. Callbacks arrive on the monitoring thread. Listeners and
    error callbacks may add or remove listeners from inside a callback;
    any resulting start or stop happens once the current batch is done.
    """

    def __init__(
        self,
        *,
        opts: WatchOptions = WatchOptions(),
        source: _sources.ChangeSource | None = None,
    ):
        self._opts = opts
        self._source = source or _sources.default_change_source(
            poll_interval=opts.poll_interval
        )

        # _lifecycle_lock serializes start/stop (and is held across joins);
        # _lock guards run state and is only ever held briefly
        self._lifecycle_lock = threading.Lock()
        self._lock = threading.Lock()
        self._running = False
        self._generation = 0
        self._error_callbacks: list[_events.ErrorCallback] = []
        self._callback_state = threading.local()

        self._registry = _registry.PortRegistry()
        self._dispatcher = _dispatcher.NotificationDispatcher(
            on_error=self._report_error
        )

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __repr__(self) -> str:
        return (
            f"SerialPortWatcher(opts={self._opts!r}, "
            f"source={self._source!r})"
        )

    @property
    def is_monitoring(self) -> bool:
        with self._lock:
            return self._running

    def enumerate(self) -> set[str]:
        """One-shot list of attached ports, no subscription needed"""

        return self._source.enumerate()

    def known_ports(self) -> frozenset[str]:
        """Ports present as of the last delivered change (empty if idle)"""

        return self._registry.ports()

    def refresh(self) -> None:
        """Re-enumerates soon, in case the OS didn't tell us something"""

        self._source.poke()

    def add_notification_callback(
        self, listener: _events.SerialPortListener, *, replay: bool = False
    ) -> _dispatcher.ListenerHandle:
        """Registers 'listener' for future arrivals and removals.

        With 'replay', the listener first gets arrivals for ports already
        present. Raises EnumerationError (and registers nothing) if this
        needs to start monitoring and the ports can't be listed.
        """

        if self._in_callback():
            handle = self._dispatcher.register(listener, replay=replay)
        else:
            with self._lifecycle_lock:
                handle = self._dispatcher.register(listener, replay=replay)
                try:
                    self._sync_lifecycle()
                except _exceptions.EnumerationError:
                    self._dispatcher.deregister(handle)
                    raise

        if replay:
            self._source.poke()
        return handle

    def remove_notification_callback(
        self, handle: _dispatcher.ListenerHandle
    ) -> None:
        """Deregisters; unknown or already-removed handles are ignored"""

        if not self._dispatcher.deregister(handle):
            return
        if not self._in_callback():
            with self._lifecycle_lock:
                self._sync_lifecycle()

    def add_error_callback(self, callback: _events.ErrorCallback) -> None:
        """Registers 'callback' for failures that happen while monitoring"""

        with self._lock:
            self._error_callbacks.append(callback)

    def remove_error_callback(self, callback: _events.ErrorCallback) -> None:
        with self._lock:
            if callback in self._error_callbacks:
                self._error_callbacks.remove(callback)

    def close(self) -> None:
        """Drops every listener and stops monitoring"""

        self._dispatcher.clear()
        if not self._in_callback():
            with self._lifecycle_lock:
                self._sync_lifecycle()

    async def events_async(
        self, *, replay: bool = False
    ) -> collections.abc.AsyncIterator[_events.ChangeEvent]:
        """Yields change events for as long as the iteration runs.

        Starting and stopping monitoring (a port scan, a thread join) happen
        in a worker thread so the event loop isn't blocked.
        """

        queue: asyncio.Queue[_events.ChangeEvent] = asyncio.Queue()
        listener = _QueueListener(asyncio.get_running_loop(), queue)
        handle = await asyncio.to_thread(
            self.add_notification_callback, listener, replay=replay
        )
        try:
            while True:
                yield await queue.get()
        finally:
            await asyncio.to_thread(self.remove_notification_callback, handle)

    def _in_callback(self) -> bool:
        return getattr(self._callback_state, "active", False)

    def _sync_lifecycle(self) -> None:
        """Starts or stops monitoring to match the listener count.

        Must be run with self._lifecycle_lock held.
        """

        while (wanted := len(self._dispatcher) > 0) != self.is_monitoring:
            if wanted:
                self._start_locked()
            else:
                self._stop_locked()

    def _start_locked(self) -> None:
        ports = self._source.enumerate()
        with self._lock:
            self._generation += 1
            self._registry.seed(ports)
            self._source.start(
                on_change=functools.partial(self._on_change, self._generation),
                on_lost=functools.partial(self._on_lost, self._generation),
            )
            self._running = True
        log.debug("Monitoring %d ports with %r", len(ports), self._source)

    def _stop_locked(self) -> None:
        with self._lock:
            self._generation += 1
            self._registry.clear()
            self._running = False
        self._source.stop()
        log.debug("Stopped monitoring")

    def _try_sync_lifecycle(self) -> None:
        # Another thread holding the lock will sync once it's done.
        if not self._lifecycle_lock.acquire(blocking=False):
            return
        try:
            self._sync_lifecycle()
        except _exceptions.EnumerationError as ex:
            self._report_error(ex)
        finally:
            self._lifecycle_lock.release()

    def _on_change(self, generation: int) -> None:
        """Runs on the monitoring thread when ports may have changed"""

        self._callback_state.active = True
        try:
            self._reconcile_and_dispatch(generation)
        finally:
            self._callback_state.active = False
        self._try_sync_lifecycle()

    def _reconcile_and_dispatch(self, generation: int) -> None:
        try:
            observed = self._source.enumerate()
        except _exceptions.EnumerationError as ex:
            self._report_error(ex)
            return

        with self._lock:
            if generation != self._generation:
                return  # stale signal from a stopped run
            events = self._registry.reconcile(observed)

        for event in events:
            log.debug("%s", event)
        self._dispatcher.dispatch(events, present=observed)

    def _on_lost(
        self, generation: int, lost: _exceptions.MonitoringLost
    ) -> None:
        """Runs on the monitoring thread when it dies"""

        with self._lock:
            if generation != self._generation:
                return
            self._generation += 1
            self._registry.clear()
            self._running = False
            self._source.stop()  # just detaches; we are the monitor thread

        self._callback_state.active = True
        try:
            self._report_error(lost)
        finally:
            self._callback_state.active = False

    def _report_error(self, ex: _exceptions.SerialWatchException) -> None:
        log.warning("%s", ex, exc_info=ex)
        with self._lock:
            callbacks = list(self._error_callbacks)
        for callback in callbacks:
            try:
                callback(ex)
            except Exception:
                log.warning("Error callback %r failed", callback, exc_info=True)


class _QueueListener:
    """Forwards callbacks into an asyncio queue from any thread"""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
    ) -> None:
        self._loop = loop
        self._queue = queue

    def __repr__(self) -> str:
        return f"_QueueListener({self._loop!r})"

    def on_arrival(self, port: str) -> None:
        event = _events.PortArrival(port=port)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def on_removal(self, port: str) -> None:
        event = _events.PortRemoval(port=port)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)


_default_lock = threading.Lock()
_default: SerialPortWatcher | None = None


def default_watcher() -> SerialPortWatcher:
    """A process-wide watcher, created on first use"""

    global _default
    with _default_lock:
        if _default is None:
            _default = SerialPortWatcher()
        return _default
