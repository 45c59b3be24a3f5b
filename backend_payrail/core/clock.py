"""Unix-seconds clock. Every job and service accepts an optional now_ts for tests."""

from __future__ import annotations

import time


def now_ts(value: int | None = None) -> int:
    return int(time.time()) if value is None else int(value)
