# src/iris/storage/gateway_loop.py
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from iris.config import GatewayConfig
from iris.runtime.metrics import inc_counter, observe_ms, set_gauge
from iris.storage.gateway_worker import GatewayWorker

log = logging.getLogger("iris.gateway_loop")


class GatewayLoop:
    """Background tick source for one GatewayWorker.

    - one daemon thread per node, ticking every cfg.interval_ms
    - the tick counter increases by one per attempted tick, so modulus gating
      in the worker stays aligned with wall-clock cadence
    - a tick that raises is logged with its traceback and backed off
      exponentially; after cfg.fail_fast_after consecutive failures the loop
      marks itself unhealthy and stops
    """

    def __init__(self, *, worker: GatewayWorker, cfg: GatewayConfig) -> None:
        self._worker = worker
        self._cfg = cfg

        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False

        self._tick = 0
        self._consecutive_failures = 0
        self._last_error = ""
        self.unhealthy = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def ticks(self) -> int:
        return self._tick

    @property
    def last_error(self) -> str:
        return self._last_error

    def start(self) -> bool:
        if self._started:
            return True
        if not self._cfg.enabled:
            return False
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="iris-gateway-loop", daemon=True)
        self._t.start()
        self._started = True
        inc_counter("gateway_loop_start_total", 1)
        return True

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop.set()
        t = self._t
        if t is not None:
            t.join(timeout=timeout_s)
        self._started = False
        inc_counter("gateway_loop_stop_total", 1)

    def _mark_error(self, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{type(err).__name__}:{err}"
        inc_counter("gateway_loop_errors_total", 1)
        set_gauge("gateway_loop_consecutive_failures", self._consecutive_failures)
        log.exception("gateway tick error failures=%s", self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("gateway_loop_consecutive_failures", 0)

    def _backoff_s(self) -> float:
        n = max(1, int(self._consecutive_failures))
        base = int(self._cfg.error_backoff_min_ms)
        cap = int(self._cfg.error_backoff_max_ms)
        return float(min(cap, base * (2 ** min(10, n - 1)))) / 1000.0

    def _trip_unhealthy_and_stop(self) -> None:
        self.unhealthy = True
        set_gauge("gateway_loop_unhealthy", 1)
        inc_counter("gateway_loop_failfast_total", 1)
        log.error(
            "gateway loop fail-fast tripped: failures=%s last_error=%s",
            self._consecutive_failures,
            self._last_error,
        )
        self._stop.set()

    def run_tick(self) -> bool:
        """Run one tick in the caller's thread. Returns False once fail-fast trips."""
        n = self._tick
        self._tick += 1
        started = time.monotonic()
        try:
            self._worker.tick(n)
            observe_ms("gateway_tick_ms", (time.monotonic() - started) * 1000.0)
            self._clear_error()
            return True
        except Exception as err:
            self._mark_error(err)
            if self._consecutive_failures >= int(self._cfg.fail_fast_after):
                self._trip_unhealthy_and_stop()
                return False
            return True

    def _run(self) -> None:
        interval_s = float(self._cfg.interval_ms) / 1000.0
        while not self._stop.is_set():
            started = time.monotonic()
            if not self.run_tick():
                break
            if self._consecutive_failures:
                wait_s = self._backoff_s()
            else:
                wait_s = max(0.0, interval_s - (time.monotonic() - started))
            self._stop.wait(wait_s)
