import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from log_dotter.api import create_app
from log_dotter.emitter import BurstEmitter
from log_dotter.metrics import LineCounter
from log_dotter.scheduler import CancelToken, SchedulerSlot


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ManualTicker:
    """Ticker driven by the test instead of a timer.

    ``tick(n)`` queues n ticks; ``settle()`` blocks until the worker has taken
    every queued tick and finished the burst for it.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._queued = 0
        self._busy = False
        self.delivered = 0

    def tick(self, n=1):
        with self._cond:
            self._queued += n
            self._cond.notify_all()

    def wait(self, token):
        with self._cond:
            if self._busy:
                self._busy = False
                self._cond.notify_all()
            while True:
                if token.check_deadline():
                    return False
                if self._queued:
                    self._queued -= 1
                    self._busy = True
                    self.delivered += 1
                    return True
                self._cond.wait(0.01)

    def settle(self, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(
                lambda: self._queued == 0 and not self._busy, timeout
            )


class TickerFactory:
    """Hands out a fresh ManualTicker for every handle the slot starts."""

    def __init__(self):
        self.tickers = []

    def __call__(self, config):
        ticker = ManualTicker()
        self.tickers.append(ticker)
        return ticker

    @property
    def last(self):
        return self.tickers[-1]


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tickers():
    return TickerFactory()


@pytest.fixture
def sink_records():
    handler = ListHandler()
    sink = logging.getLogger("tests.sink")
    sink.addHandler(handler)
    sink.setLevel(logging.INFO)
    sink.propagate = False
    yield handler.records
    sink.removeHandler(handler)


@pytest.fixture
def counter():
    return LineCounter()


@pytest.fixture
def emitter(sink_records, counter):
    return BurstEmitter(logging.getLogger("tests.sink"), counter)


@pytest.fixture
def root(clock):
    return CancelToken(time_func=clock)


@pytest.fixture
def slot(emitter, counter, root, tickers, clock):
    s = SchedulerSlot(emitter, counter, root=root, ticker_factory=tickers, time_func=clock)
    yield s
    s.stop()


@pytest.fixture
def app(slot, counter):
    application = create_app(slot, counter)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()
