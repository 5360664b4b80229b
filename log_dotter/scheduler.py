"""Restartable, cancellable periodic burst scheduler.

A ``SchedulerSlot`` owns at most one ``SchedulerHandle``. Each handle runs one
worker thread that blocks on its ticker until either a tick arrives (emit one
burst) or its ``CancelToken`` is cancelled (return). Tokens form a tree: the
process root token is the parent of every handle's token, so cancelling the
root stops whatever is running while cancelling a handle leaves the root alone.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from log_dotter.emitter import MAX_BURST_SIZE, BurstEmitter
from log_dotter.metrics import LineCounter

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)

# one year; keeps start + timeout inside datetime range
MAX_TIMEOUT_MINUTES = 365 * 24 * 60
MAX_INTERVAL_MS = 24 * 60 * 60 * 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerConfigError(ValueError):
    """Raised for a config that must not be started."""


@dataclass(frozen=True)
class SchedulerConfig:
    interval_ms: int
    timeout_minutes: int
    burst_size: int = MAX_BURST_SIZE

    def validate(self):
        if not self.interval_ms or not self.timeout_minutes:
            raise SchedulerConfigError("timeout, interval is required")
        if self.interval_ms < 0 or self.timeout_minutes < 0:
            raise SchedulerConfigError("timeout, interval must be positive")
        if self.timeout_minutes > MAX_TIMEOUT_MINUTES:
            raise SchedulerConfigError(
                f"timeout must be at most {MAX_TIMEOUT_MINUTES} minutes, got {self.timeout_minutes}"
            )
        if self.interval_ms > MAX_INTERVAL_MS:
            raise SchedulerConfigError(
                f"interval must be at most {MAX_INTERVAL_MS} ms, got {self.interval_ms}"
            )
        if not 0 <= self.burst_size <= MAX_BURST_SIZE:
            raise SchedulerConfigError(
                f"burst_size must be within [0, {MAX_BURST_SIZE}], got {self.burst_size}"
            )

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.timeout_minutes)


class CancelToken:
    """Cancellation signal with an optional deadline and child tokens."""

    def __init__(self, deadline: datetime | None = None, time_func=None, parent=None):
        self.deadline = deadline
        self.reason: str | None = None
        self._time_func = time_func or _utcnow
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list["CancelToken"] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def child(self, deadline: datetime | None = None) -> "CancelToken":
        token = CancelToken(deadline, self._time_func, parent=self)
        with self._lock:
            parent_cancelled = self._event.is_set()
            if not parent_cancelled:
                self._children.append(token)
        if parent_cancelled:
            token.cancel(self.reason)
        return token

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel this token and its children. Returns False if already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel(reason)
        if self._parent is not None:
            self._parent._discard(self)
        return True

    def _discard(self, child: "CancelToken"):
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self.deadline is None:
            return None
        return (self.deadline - self._time_func()).total_seconds()

    def check_deadline(self) -> bool:
        """Cancel once the deadline has passed. Returns whether the token is cancelled."""
        if not self._event.is_set() and self.deadline is not None:
            if self._time_func() >= self.deadline:
                self.cancel("deadline")
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class IntervalTicker:
    """Fixed-period ticker. Ticks missed while the caller was busy are dropped."""

    def __init__(self, interval: float, clock=time.monotonic):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._clock = clock
        self._next = clock() + interval
        self.dropped = 0

    def wait(self, token: CancelToken) -> bool:
        """Block until the next tick (True) or until the token is cancelled (False).

        Cancellation wins when both are ready.
        """
        while not token.check_deadline():
            now = self._clock()
            if now >= self._next:
                missed = int((now - self._next) // self._interval)
                if missed:
                    self.dropped += missed
                    logger.debug("dropped %d tick(s), burst overran the interval", missed)
                self._next += (missed + 1) * self._interval
                return True
            timeout = self._next - now
            remaining = token.remaining()
            if remaining is not None:
                timeout = min(timeout, max(remaining, 0.0))
            token.wait(timeout)
        return False


class SchedulerHandle:
    """One running (or finished) scheduler lifecycle."""

    def __init__(self, config: SchedulerConfig, token: CancelToken, started_at: datetime,
                 ticker, emitter: BurstEmitter, on_fatal=None):
        self.id = next(_handle_ids)
        self.config = config
        self.started_at = started_at
        self.ticks = 0
        self.error: BaseException | None = None
        self._token = token
        self._ticker = ticker
        self._emitter = emitter
        self._on_fatal = on_fatal
        self._thread = threading.Thread(
            target=self._run, name=f"scheduler-{self.id}", daemon=True
        )

    @property
    def deadline(self) -> datetime:
        return self._token.deadline

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._token.cancelled

    @property
    def stop_reason(self) -> str | None:
        return self._token.reason

    def cancel(self, reason: str = "stopped") -> bool:
        return self._token.cancel(reason)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker to return. Returns True once it has."""
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _start(self):
        self._thread.start()

    def _run(self):
        logger.info("dotter server is started. interval=%dms timeout=%dmin burst=%d",
                    self.config.interval_ms, self.config.timeout_minutes, self.config.burst_size)
        try:
            while self._ticker.wait(self._token):
                self._emitter.emit(self.config.burst_size)
                self.ticks += 1
        except Exception as e:
            self.error = e
            self._token.cancel("error")
            if self._on_fatal is not None:
                self._on_fatal(self, e)
            logger.critical("dotter server %d failed after %d tick(s)", self.id, self.ticks,
                            exc_info=True)
            return

        if self._token.reason == "deadline":
            logger.info("dotter server is stopped with timeout. ticks=%d", self.ticks)
        else:
            logger.info("dotter server is stopped (%s). ticks=%d", self._token.reason, self.ticks)


class SchedulerSlot:
    """Lock-guarded owner of the single active scheduler handle."""

    def __init__(self, emitter: BurstEmitter, counter: LineCounter | None = None,
                 root: CancelToken | None = None, ticker_factory=None,
                 time_func=None, on_fatal=None):
        self._emitter = emitter
        self._counter = counter
        self._time_func = time_func or _utcnow
        self._root = root if root is not None else CancelToken(time_func=self._time_func)
        self._ticker_factory = ticker_factory or (
            lambda config: IntervalTicker(config.interval_seconds)
        )
        self._on_fatal = on_fatal
        self._lock = threading.Lock()
        self._handle: SchedulerHandle | None = None

    @property
    def handle(self) -> SchedulerHandle | None:
        return self._handle

    def start(self, config: SchedulerConfig) -> SchedulerHandle:
        """Start a handle. A running handle is superseded; the counter is kept."""
        return self._install(config, reset_metrics=False)

    def restart(self, config: SchedulerConfig, reset_metrics: bool = True) -> SchedulerHandle:
        """Cancel and join the running handle, then start a new one."""
        return self._install(config, reset_metrics)

    def _install(self, config: SchedulerConfig, reset_metrics: bool) -> SchedulerHandle:
        config.validate()
        with self._lock:
            # nothing is torn down until the new deadline is known to exist
            try:
                self._time_func() + config.timeout
            except OverflowError as e:
                raise SchedulerConfigError(f"timeout out of range: {config.timeout_minutes}") from e

            old = self._handle
            if old is not None:
                old.cancel("superseded")
                old.join()
            if reset_metrics and self._counter is not None:
                self._counter.reset()

            started_at = self._time_func()
            token = self._root.child(deadline=started_at + config.timeout)
            handle = SchedulerHandle(
                config, token, started_at, self._ticker_factory(config),
                self._emitter, self._on_fatal,
            )
            self._handle = handle
            handle._start()

        logger.info("scheduler %d installed, deadline %s", handle.id, handle.deadline.isoformat())
        return handle

    def stop(self) -> bool:
        """Cancel and join the active handle. Returns False if nothing was running."""
        with self._lock:
            handle = self._handle
            if handle is None:
                return False
            cancelled = handle.cancel("stopped")
            handle.join()
        if not cancelled:
            logger.info("scheduler already stopped")
        return cancelled

    def current_config(self) -> dict | None:
        """Deadline and interval of the installed handle, None when idle."""
        handle = self._handle
        if handle is None:
            return None
        return {
            "deadline": handle.deadline,
            "interval": handle.config.interval_ms,
            "timeout": handle.config.timeout_minutes,
            "burst_size": handle.config.burst_size,
            "active": handle.active,
            "ticks": handle.ticks,
        }
