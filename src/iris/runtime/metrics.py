# src/iris/runtime/metrics.py
from __future__ import annotations

"""Process-wide gateway metrics.

Three kinds, all integers:

  counters   monotonically increasing totals (ticks, fetches, failures)
  gauges     last observed value (queue depth, daemon liveness)
  timings    count / sum / max of millisecond durations (tick latency)

Names are plain snake_case strings; the exposition prefix is added by
format_prometheus(). Every mutation holds one module lock, so the gateway
loop thread and callers driving ticks directly can share them.
"""

import threading
import time
from dataclasses import dataclass
from typing import Dict


@dataclass
class _Timing:
    count: int = 0
    sum_ms: int = 0
    max_ms: int = 0


_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_timings: Dict[str, _Timing] = {}
_started_ms = int(time.time() * 1000)


def _key(name: str) -> str:
    return str(name or "").strip()


def _as_int(v: object, default: int) -> int:
    try:
        return int(v)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def inc_counter(name: str, value: int = 1) -> None:
    k = _key(name)
    if not k:
        return
    with _lock:
        _counters[k] = _counters.get(k, 0) + _as_int(value, 1)


def set_gauge(name: str, value: int) -> None:
    k = _key(name)
    if not k:
        return
    with _lock:
        _gauges[k] = _as_int(value, 0)


def observe_ms(name: str, elapsed_ms: float) -> None:
    """Record one duration sample (negative samples clamp to 0)."""
    k = _key(name)
    if not k:
        return
    ms = max(0, int(elapsed_ms))
    with _lock:
        t = _timings.setdefault(k, _Timing())
        t.count += 1
        t.sum_ms += ms
        t.max_ms = max(t.max_ms, ms)


def counter(name: str) -> int:
    with _lock:
        return _counters.get(_key(name), 0)


def gauge(name: str) -> int:
    with _lock:
        return _gauges.get(_key(name), 0)


def timing(name: str) -> Dict[str, int]:
    with _lock:
        t = _timings.get(_key(name)) or _Timing()
        return {"count": t.count, "sum_ms": t.sum_ms, "max_ms": t.max_ms}


def snapshot() -> dict:
    now = int(time.time() * 1000)
    with _lock:
        return {
            "ts_ms": now,
            "uptime_ms": now - _started_ms,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "timings": {k: {"count": t.count, "sum_ms": t.sum_ms, "max_ms": t.max_ms} for k, t in _timings.items()},
        }


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()
        _timings.clear()


def format_prometheus(prefix: str = "iris_") -> str:
    """Prometheus text exposition. Timings render as `<name>_count`, `<name>_sum` and `<name>_max`."""
    pre = str(prefix or "").strip() or "iris_"
    snap = snapshot()
    lines = [f"{pre}uptime_ms {snap['uptime_ms']}"]

    for name, v in sorted(snap["counters"].items()):
        lines.append(f"{pre}{name} {v}")
    for name, v in sorted(snap["gauges"].items()):
        lines.append(f"{pre}{name} {v}")
    for name, t in sorted(snap["timings"].items()):
        lines.append(f"{pre}{name}_count {t['count']}")
        lines.append(f"{pre}{name}_sum {t['sum_ms']}")
        lines.append(f"{pre}{name}_max {t['max_ms']}")

    return "\n".join(lines) + "\n"
