"""Wall-clock helpers; every integrity timestamp is epoch milliseconds."""
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def minutes_ms(minutes: float) -> int:
    return int(minutes * 60_000)
