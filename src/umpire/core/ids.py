"""Identifier generation for recorded and uploaded media."""

import itertools
import secrets
import threading
import time

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def new_media_id(prefix: str = "video") -> str:
    """Return a process-unique media identifier.

    Combines wall-clock milliseconds, a monotonically increasing counter and a
    random suffix, so two ids minted in the same millisecond never collide.

    Example:
        video_1760883000123_7_3f9a0c2e1
    """
    millis = time.time_ns() // 1_000_000
    with _counter_lock:
        sequence = next(_counter)
    suffix = secrets.token_hex(5)[:9]
    return f"{prefix}_{millis}_{sequence}_{suffix}"
