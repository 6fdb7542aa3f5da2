import collections.abc
import logging
import threading

import natsort

from ok_serial_watch import _events

log = logging.getLogger("ok_serial_watch.registry")

_port_key = natsort.natsort_keygen(alg=natsort.ns.P)


def sorted_ports(ports: collections.abc.Iterable[str]) -> list[str]:
    """Port names in natural order (COM2 before COM10)"""

    return sorted(ports, key=_port_key)


class PortRegistry:
    """The set of ports known to be present, and diffs against it"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ports: set[str] = set()

    def __repr__(self) -> str:
        return f"PortRegistry({sorted_ports(self.ports())!r})"

    def seed(self, ports: collections.abc.Iterable[str]) -> None:
        """Replaces the snapshot without producing any events"""

        with self._lock:
            self._ports = set(ports)
            log.debug("Seeded with %d ports", len(self._ports))

    def clear(self) -> None:
        with self._lock:
            self._ports = set()

    def ports(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ports)

    def reconcile(
        self, observed: collections.abc.Iterable[str]
    ) -> list[_events.ChangeEvent]:
        """Commits 'observed' as the new snapshot and returns the deltas.

        All removals come before all arrivals, each group in natural order.
        """

        observed = set(observed)
        with self._lock:
            removed = sorted_ports(self._ports - observed)
            added = sorted_ports(observed - self._ports)
            self._ports = observed

        if removed or added:
            log.debug("-%d +%d ports", len(removed), len(added))
        return [
            *(_events.PortRemoval(port=p) for p in removed),
            *(_events.PortArrival(port=p) for p in added),
        ]
