#!/usr/bin/env python3
"""log-dotter entry point.

Emits a fixed log line in timed bursts so log pipelines can be load-tested
at a known rate. Without ``--http`` the burst schedule comes from the flags
and the process exits when it times out; with ``--http`` the schedule is
driven through the control endpoints until the process is signalled.
"""

import argparse
import logging
import os
import signal
import sys
import threading

from werkzeug.serving import make_server

from log_dotter.api import create_app
from log_dotter.config import Config, ConfigError, load_config, load_yaml_config
from log_dotter.emitter import BurstEmitter
from log_dotter.metrics import LineCounter, create_metrics_app
from log_dotter.scheduler import (
    CancelToken,
    SchedulerConfig,
    SchedulerConfigError,
    SchedulerSlot,
)
from log_dotter.sink import build_sink, close_sink, redirect_stderr

logger = logging.getLogger(__name__)


class ServerThread:
    """A werkzeug server bound at construction and served from a daemon thread."""

    def __init__(self, app, host: str, port: int, name: str):
        # binding here makes an unusable port a startup failure
        self._server = make_server(host, port, app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name=name, daemon=True
        )
        self.name = name

    @property
    def address(self) -> tuple:
        return self._server.server_address

    def start(self):
        self._thread.start()
        logger.info("%s server listening on %s:%d", self.name, *self.address[:2])

    def stop(self):
        # shutdown() blocks until serve_forever exits, so only call it once serving
        if self._thread.is_alive():
            self._server.shutdown()
            self._thread.join(timeout=5)
        self._server.server_close()


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Emit fixed log lines in timed bursts for log pipeline load tests"
    )
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--http", dest="http_enabled", action="store_true", default=None,
                        help="start the HTTP control interface")
    parser.add_argument("--development", action="store_true", default=None,
                        help="human-readable log lines with caller info")
    parser.add_argument("--level", dest="log_level", default=None, help="set log level")
    parser.add_argument("--interval", dest="interval_ms", type=int, default=None,
                        help="burst interval (ms) when HTTP is disabled")
    parser.add_argument("--timeout", dest="timeout_minutes", type=int, default=None,
                        help="run time (minutes) when HTTP is disabled")
    parser.add_argument("--burst-size", dest="burst_size", type=int, default=None,
                        help="log lines per burst")
    parser.add_argument("--file", dest="log_file", default=None,
                        help="log file name with path (default: stdout)")
    parser.add_argument("--host", dest="http_host", default=None, help="listen address")
    parser.add_argument("--port", dest="http_port", type=int, default=None,
                        help="control interface port")
    parser.add_argument("--metrics-port", dest="metrics_port", type=int, default=None,
                        help="admin port serving /metrics")
    parser.add_argument("--max-size-mb", dest="max_size_mb", type=int, default=None,
                        help="rotate the log file at this size")
    parser.add_argument("--max-backups", dest="max_backups", type=int, default=None,
                        help="rotated files to keep (0 = all)")
    parser.add_argument("--max-age-days", dest="max_age_days", type=int, default=None,
                        help="delete rotated files older than this (0 = never)")
    parser.add_argument("--compress", action="store_true", default=None,
                        help="gzip rotated files")
    return parser


def static_scheduler_config(config: Config) -> SchedulerConfig:
    scheduler_config = SchedulerConfig(
        interval_ms=config.interval_ms,
        timeout_minutes=config.timeout_minutes,
        burst_size=config.burst_size,
    )
    scheduler_config.validate()
    return scheduler_config


def run_until_deadline(slot: SchedulerSlot, root: CancelToken, scheduler_config: SchedulerConfig):
    """Run one schedule to completion, then end the process lifetime."""
    handle = slot.start(scheduler_config)
    handle.join()
    root.cancel("scheduler finished")


def run(config: Config, root: CancelToken | None = None, ticker_factory=None,
        time_func=None) -> int:
    """Wire sink, metrics and scheduler, block until the root token is cancelled.

    Returns the process exit status.
    """
    root = root if root is not None else CancelToken(time_func=time_func)
    sink = build_sink(config)
    logger.info("starting with %s", config)
    failures = []

    def on_fatal(handle, exc):
        failures.append(exc)
        root.cancel("fatal")

    counter = LineCounter()
    slot = SchedulerSlot(
        BurstEmitter(sink, counter), counter, root=root,
        ticker_factory=ticker_factory, time_func=time_func, on_fatal=on_fatal,
    )
    servers = []
    try:
        servers.append(ServerThread(create_metrics_app(counter), config.http_host,
                                    config.metrics_port, "metrics"))
        if config.http_enabled:
            servers.append(ServerThread(create_app(slot, counter), config.http_host,
                                        config.http_port, "control"))
        for server in servers:
            server.start()

        if config.http_enabled:
            root.wait()
        else:
            run_until_deadline(slot, root, static_scheduler_config(config))
    finally:
        slot.stop()
        for server in servers:
            server.stop()

    if failures:
        # the sink itself may be what failed
        print(f"log dotter: fatal error: {failures[0]!r}", file=sys.stderr)
        close_sink(sink)
        return 1

    logger.info("log dotter exiting (%s), %d line(s) emitted", root.reason, counter.value)
    close_sink(sink)
    return 0


def main(argv=None) -> int:
    parser = build_cli_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args, load_yaml_config(args.config or os.environ.get("CONFIG_PATH")))
        if not config.http_enabled:
            static_scheduler_config(config)
    except (ConfigError, SchedulerConfigError) as e:
        parser.error(str(e))

    if config.log_file:
        redirect_stderr(config.log_file)

    root = CancelToken()

    def _signal_handler(sig, _frame):
        logger.info("Shutdown signal received (signal %d), stopping...", sig)
        root.cancel("shutdown")

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    return run(config, root)


if __name__ == "__main__":
    sys.exit(main())
