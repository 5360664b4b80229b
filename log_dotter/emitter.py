"""Burst emitter: writes a fixed record N times and counts it."""

import logging

from log_dotter.metrics import LineCounter

# Never varied between records.
FIXED_RECORD = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

MAX_BURST_SIZE = 150_000


class BurstEmitter:
    def __init__(self, sink: logging.Logger, counter: LineCounter, message: str = FIXED_RECORD):
        self._sink = sink
        self._counter = counter
        self._message = message

    def emit(self, burst_size: int) -> int:
        """Write ``burst_size`` records. Sink errors propagate to the caller."""
        if not 0 <= burst_size <= MAX_BURST_SIZE:
            raise ValueError(f"burst_size must be within [0, {MAX_BURST_SIZE}], got {burst_size}")

        info = self._sink.info
        inc = self._counter.inc
        message = self._message
        for _ in range(burst_size):
            info(message)
            inc()
        return burst_size
