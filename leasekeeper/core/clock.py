from __future__ import annotations

import time


def now_ms() -> int:
    # Lease, license and presigned URL expiry are compared in epoch milliseconds.
    return int(time.time() * 1000)


def now_seconds() -> int:
    # Token iat/exp claims are whole epoch seconds.
    return now_ms() // 1000
