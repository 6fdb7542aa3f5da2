"""Unit tests for ok_serial_watch._registry."""

import random
import threading

from ok_serial_watch import PortArrival, PortRegistry, PortRemoval


def test_reconcile_plug_unplug():
    registry = PortRegistry()
    assert registry.reconcile(set()) == []
    assert registry.reconcile({"COM3"}) == [PortArrival("COM3")]
    assert registry.reconcile(set()) == [PortRemoval("COM3")]
    assert registry.reconcile({"COM5", "COM3"}) == [
        PortArrival("COM3"),
        PortArrival("COM5"),
    ]
    assert registry.ports() == {"COM3", "COM5"}


def test_reconcile_removals_before_arrivals():
    registry = PortRegistry()
    registry.seed({"COM3"})
    assert registry.reconcile({"COM5"}) == [
        PortRemoval("COM3"),
        PortArrival("COM5"),
    ]


def test_reconcile_natural_order():
    registry = PortRegistry()
    registry.seed({"/dev/ttyUSB10", "/dev/ttyUSB2"})
    events = registry.reconcile({"/dev/ttyUSB1", "/dev/ttyACM0"})
    assert events == [
        PortRemoval("/dev/ttyUSB2"),
        PortRemoval("/dev/ttyUSB10"),
        PortArrival("/dev/ttyACM0"),
        PortArrival("/dev/ttyUSB1"),
    ]


def test_seed_and_clear_emit_nothing():
    registry = PortRegistry()
    registry.seed({"COM1", "COM2"})
    assert registry.reconcile({"COM1", "COM2"}) == []

    registry.clear()
    assert registry.ports() == frozenset()
    assert registry.reconcile({"COM1"}) == [PortArrival("COM1")]


def test_reconcile_never_drifts():
    rng = random.Random(1234)
    pool = [f"COM{n}" for n in range(12)]
    registry = PortRegistry()
    mirror: set[str] = set()

    for _ in range(500):
        observed = set(rng.sample(pool, rng.randint(0, len(pool))))
        events = registry.reconcile(observed)

        kinds = [type(e) for e in events]
        assert kinds == sorted(kinds, key=lambda k: k is PortArrival)
        for event in events:
            if isinstance(event, PortRemoval):
                assert event.port in mirror
                mirror.remove(event.port)
            else:
                assert event.port not in mirror
                mirror.add(event.port)

        assert mirror == observed
        assert registry.ports() == observed


def test_concurrent_reconcile_is_serialized():
    pool = [f"/dev/ttyS{n}" for n in range(6)]
    registry = PortRegistry()
    lock = threading.Lock()
    batches = []

    def worker(seed):
        rng = random.Random(seed)
        for _ in range(200):
            observed = set(rng.sample(pool, rng.randint(0, len(pool))))
            events = registry.reconcile(observed)
            with lock:
                batches.append(events)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Whatever the interleaving, every port's arrivals and removals net out
    # to its final presence.
    final = registry.ports()
    for port in pool:
        net = sum(
            1 if isinstance(e, PortArrival) else -1
            for events in batches
            for e in events
            if e.port == port
        )
        assert net == (1 if port in final else 0)
