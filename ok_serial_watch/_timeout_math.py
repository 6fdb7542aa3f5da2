import threading
import time

TIMEOUT_MAX = threading.TIMEOUT_MAX


def to_deadline(timeout: float | int | None) -> float:
    """Converts a relative timeout (None = forever) to a monotonic deadline"""

    if timeout is None:
        return TIMEOUT_MAX
    if timeout <= 0:
        return 0.0
    return min(time.monotonic() + timeout, TIMEOUT_MAX)


def from_deadline(deadline: float | int) -> float:
    """Converts a monotonic deadline back to seconds remaining (>= 0)"""

    if deadline >= TIMEOUT_MAX:
        return TIMEOUT_MAX
    return max(0.0, deadline - time.monotonic())
