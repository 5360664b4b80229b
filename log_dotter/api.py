"""HTTP control interface: inspect, reset and stop the scheduler."""

import logging

import jsonschema
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from log_dotter.emitter import MAX_BURST_SIZE
from log_dotter.metrics import LineCounter
from log_dotter.scheduler import (
    MAX_INTERVAL_MS,
    MAX_TIMEOUT_MINUTES,
    SchedulerConfig,
    SchedulerConfigError,
    SchedulerSlot,
)

logger = logging.getLogger(__name__)

RESET_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "timeout": {"type": "integer", "minimum": 0, "maximum": MAX_TIMEOUT_MINUTES},
        "interval": {"type": "integer", "minimum": 0, "maximum": MAX_INTERVAL_MS},
        "burst_size": {"type": "integer", "minimum": 0, "maximum": MAX_BURST_SIZE},
    },
    "required": ["timeout", "interval"],
}

_reset_validator = jsonschema.Draft202012Validator(RESET_SCHEMA)


def validate_reset_body(body) -> list[str]:
    """Return error messages for a /reset body, empty when valid."""
    errors = []
    for error in sorted(_reset_validator.iter_errors(body), key=lambda e: list(e.path)):
        field = ".".join(str(p) for p in error.path)
        errors.append(f"{field}: {error.message}" if field else error.message)
    return errors


def _check_params_valid():
    """Reject any path or query parameter bound to an empty value."""
    params = list((request.view_args or {}).items())
    params.extend(request.args.items(multi=True))
    for key, value in params:
        if value == "":
            return jsonify(message=f"params[{key}] is required!"), 400
    return None


def create_app(slot: SchedulerSlot, counter: LineCounter) -> Flask:
    """Flask application factory for the control interface."""
    app = Flask(__name__)
    app.config["components"] = {"slot": slot, "counter": counter}
    app.before_request(_check_params_valid)

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify(message=e.description), e.code

    @app.route("/config")
    def get_config():
        current = slot.current_config()
        if current is None:
            return jsonify(deadline="", interval="")
        current["deadline"] = current["deadline"].isoformat()
        return jsonify(current)

    @app.route("/reset", methods=["POST"])
    def reset():
        body = request.get_json(force=True, silent=True)
        if body is None:
            return jsonify(message="request body must be a JSON object"), 400

        errors = validate_reset_body(body)
        if errors:
            return jsonify(message="; ".join(errors)), 400

        config = SchedulerConfig(
            interval_ms=int(body["interval"]),
            timeout_minutes=int(body["timeout"]),
            burst_size=int(body.get("burst_size", MAX_BURST_SIZE)),
        )
        try:
            slot.restart(config, reset_metrics=True)
        except SchedulerConfigError as e:
            return jsonify(message=str(e)), 400

        logger.info("scheduler reset: interval=%dms timeout=%dmin burst=%d",
                    config.interval_ms, config.timeout_minutes, config.burst_size)
        return jsonify(message="success")

    @app.route("/stop", methods=["POST"])
    def stop():
        stopped = slot.stop()
        return jsonify(message="success", stopped=stopped)

    @app.route("/health")
    def health():
        return jsonify(status="ok", lines=counter.value)

    return app
