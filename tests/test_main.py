"""Tests for the entry point: CLI parsing, server threads and the run loop."""

import json
import logging
import threading
import time
import urllib.request

import pytest

from log_dotter.config import ENV_VARS, Config
from log_dotter.emitter import FIXED_RECORD
from log_dotter.main import (
    ServerThread,
    build_cli_parser,
    main,
    run,
    static_scheduler_config,
)
from log_dotter.metrics import LineCounter, create_metrics_app
from log_dotter.scheduler import CancelToken, SchedulerConfigError
from log_dotter.sink import SINK_NAME


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS.values():
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestCliParser:
    def test_defaults_are_none(self):
        args = build_cli_parser().parse_args([])
        assert args.http_enabled is None
        assert args.interval_ms is None
        assert args.log_level is None
        assert args.config is None

    def test_flags_map_to_config_fields(self):
        args = build_cli_parser().parse_args(
            ["--http", "--interval", "250", "--timeout", "3", "--burst-size", "10",
             "--file", "out.log", "--metrics-port", "0", "--compress"]
        )
        assert args.http_enabled is True
        assert args.interval_ms == 250
        assert args.timeout_minutes == 3
        assert args.burst_size == 10
        assert args.log_file == "out.log"
        assert args.metrics_port == 0
        assert args.compress is True


class TestStaticConfig:
    def test_valid(self):
        sc = static_scheduler_config(Config(interval_ms=500, timeout_minutes=2, burst_size=3))
        assert sc.interval_ms == 500
        assert sc.burst_size == 3

    def test_zero_interval(self):
        with pytest.raises(SchedulerConfigError, match="required"):
            static_scheduler_config(Config(interval_ms=0))


class TestMainArguments:
    def test_bad_level_exits_2(self):
        with pytest.raises(SystemExit) as exc:
            main(["--level", "verbose"])
        assert exc.value.code == 2

    def test_zero_interval_exits_2(self):
        with pytest.raises(SystemExit) as exc:
            main(["--interval", "0"])
        assert exc.value.code == 2

    def test_burst_over_cap_exits_2(self):
        with pytest.raises(SystemExit) as exc:
            main(["--burst-size", "150001"])
        assert exc.value.code == 2

    def test_timeout_over_limit_exits_2(self):
        with pytest.raises(SystemExit) as exc:
            main(["--timeout", "100000000000"])
        assert exc.value.code == 2

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "dotter.yaml"
        path.write_text("log_level: verbose\n")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 2


class TestServerThread:
    def test_serves_metrics(self):
        counter = LineCounter()
        counter.inc(3)
        server = ServerThread(create_metrics_app(counter), "127.0.0.1", 0, "metrics")
        server.start()
        try:
            host, port = server.address[:2]
            with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=5) as resp:
                body = resp.read().decode()
            assert "cron_log_total 3.0" in body
        finally:
            server.stop()

    def test_stop_without_start(self):
        server = ServerThread(create_metrics_app(LineCounter()), "127.0.0.1", 0, "metrics")
        server.stop()


class TestRun:
    def _config(self, tmp_path, **kwargs):
        defaults = dict(
            log_file=str(tmp_path / "dotter.log"),
            http_host="127.0.0.1",
            metrics_port=0,
            http_port=0,
            interval_ms=100,
            timeout_minutes=1,
            burst_size=2,
        )
        defaults.update(kwargs)
        return Config(**defaults)

    def test_static_mode_exits_at_deadline(self, tmp_path, clock, tickers):
        config = self._config(tmp_path)
        result = {}
        worker = threading.Thread(
            target=lambda: result.update(code=run(config, ticker_factory=tickers,
                                                  time_func=clock)),
        )
        worker.start()

        assert _wait_for(lambda: tickers.tickers)
        tickers.last.tick(3)
        assert tickers.last.settle()
        clock.advance(minutes=2)
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert result["code"] == 0
        with open(config.log_file) as f:
            records = [json.loads(line) for line in f]
        messages = [r["msg"] for r in records]
        assert messages.count(FIXED_RECORD) == 6
        assert messages[1].startswith("starting with Config(")
        assert any(m.startswith("dotter server is started") for m in messages)
        assert any("stopped with timeout" in m for m in messages)

    def test_http_mode_runs_until_cancelled(self, tmp_path, clock, tickers):
        config = self._config(tmp_path, http_enabled=True)
        root = CancelToken(time_func=clock)
        result = {}
        worker = threading.Thread(
            target=lambda: result.update(code=run(config, root, ticker_factory=tickers,
                                                  time_func=clock)),
        )
        worker.start()

        # no schedule until one is posted to /reset
        time.sleep(0.05)
        assert tickers.tickers == []
        assert worker.is_alive()

        root.cancel("shutdown")
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert result["code"] == 0

    def test_sink_failure_exits_1(self, tmp_path, clock, tickers, monkeypatch):
        config = self._config(tmp_path)
        result = {}
        worker = threading.Thread(
            target=lambda: result.update(code=run(config, ticker_factory=tickers,
                                                  time_func=clock)),
        )
        worker.start()
        assert _wait_for(lambda: tickers.tickers)

        writer = logging.getLogger(SINK_NAME).handlers[0].writer
        original_write = writer.write
        failed = []

        def write_once_broken(line):
            if not failed:
                failed.append(line)
                raise OSError("no space left on device")
            return original_write(line)

        monkeypatch.setattr(writer, "write", write_once_broken)
        tickers.last.tick()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert result["code"] == 1
        assert json.loads(failed[0])["msg"] == FIXED_RECORD
        with open(config.log_file) as f:
            assert any('"level": "critical"' in line for line in f)
