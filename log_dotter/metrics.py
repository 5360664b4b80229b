"""Emitted-line counter exported in Prometheus text format."""

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

METRIC_NAME = "cron_log_total"


class LineCounter:
    """Process-wide count of emitted log lines.

    Backed by a Gauge rather than a Counter so a reconfiguration can bring it
    back to zero.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._gauge = Gauge(
            METRIC_NAME,
            "The total number of cron log",
            registry=self.registry,
        )

    def inc(self, amount: int = 1):
        self._gauge.inc(amount)

    def reset(self):
        self._gauge.set(0)

    @property
    def value(self) -> int:
        return int(self.registry.get_sample_value(METRIC_NAME) or 0)


def create_metrics_app(counter: LineCounter) -> Flask:
    """Admin app serving the pull endpoint."""
    app = Flask(__name__)

    @app.route("/metrics")
    def metrics():
        return Response(generate_latest(counter.registry), content_type=CONTENT_TYPE_LATEST)

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    return app
