from __future__ import annotations

import time


def wait_until(predicate, timeout: float, interval: float = 0.2, *, clock=time.monotonic, sleep=time.sleep):
    """Polls ``predicate`` until it is truthy; a non-positive timeout checks exactly once."""

    if timeout <= 0:
        return predicate()
    deadline = clock() + timeout
    while clock() < deadline:
        result = predicate()
        if result:
            return result
        sleep(interval)
    return predicate()
