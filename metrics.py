import threading
import time

_counters = {}
_lock = threading.Lock()


def incr(name: str, amount: int = 1):
    with _lock:
        _counters[name] = _counters.get(name, 0) + amount


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def reset_all():
    with _lock:
        _counters.clear()


def health_check() -> dict:
    return {"status": "ok", "time": time.time(), "metrics": dict(_counters)}
