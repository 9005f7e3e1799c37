import os
import time


_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _crockford(num: int, length: int) -> str:
    chars = []
    for _ in range(length):
        num, rem = divmod(num, 32)
        chars.append(_CROCKFORD[rem])
    return "".join(reversed(chars))


def ulid() -> str:
    """26-char, time-sortable id: 48-bit ms timestamp + 80 random bits."""
    ts_ms = int(time.time() * 1000) & ((1 << 48) - 1)
    rand = int.from_bytes(os.urandom(10), "big")
    return _crockford(ts_ms, 10) + _crockford(rand, 16)


def new_id(prefix: str) -> str:
    """Prefixed entity id, e.g. ``goal_01J...`` or ``turn_01J...``."""
    return f"{prefix}_{ulid().lower()}"
