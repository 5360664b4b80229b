"""Logging sink: stdout or a size-rotated file, JSON or text records."""

import gzip
import json
import logging
import os
import shutil
import sys
import threading
from datetime import datetime, timedelta, timezone

from log_dotter.config import Config

SINK_NAME = "log_dotter"
SERVER_NAME = "log_dotter"

TEXT_FORMAT = "%(asctime)s\t%(levelname)s\t%(filename)s:%(lineno)d\t%(message)s"


def _iso8601(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, keys in a fixed order."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname.lower(),
            "ts": _iso8601(record),
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
            "name": SERVER_NAME,
        }
        if record.exc_info:
            payload["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def formatTime(self, record, datefmt=None):
        return _iso8601(record)


class _FailFastMixin:
    """Re-raise write failures instead of printing them and carrying on."""

    def handleError(self, record):
        _, exc, _ = sys.exc_info()
        if exc is not None:
            raise exc


class FailFastStreamHandler(_FailFastMixin, logging.StreamHandler):
    pass


# ── Rotation ──

ROTATION_STAMP = "%Y%m%d_%H%M%S_%f"


def _backups(log_dir: str, log_filename: str) -> list[str]:
    # the stamp sorts lexicographically, so this is oldest first
    return sorted(n for n in os.listdir(log_dir) if n.startswith(log_filename + "."))


def backup_time(backup_name: str, log_filename: str) -> datetime | None:
    """When a backup was rotated out, read from its name; None if unstamped."""
    prefix = log_filename + "."
    if not backup_name.startswith(prefix):
        return None
    stamp = backup_name[len(prefix):].removesuffix(".gz")
    try:
        return datetime.strptime(stamp, ROTATION_STAMP).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def enforce_retention(log_dir: str, log_filename: str, max_backups: int,
                      max_age_days: int, now: datetime) -> list[str]:
    """Delete backups past max_age_days, then all but the newest max_backups.

    A limit of 0 disables that check. Returns the deleted names.
    """
    expired, kept = [], []
    for name in _backups(log_dir, log_filename):
        rotated_at = backup_time(name, log_filename)
        too_old = bool(max_age_days) and rotated_at is not None and (
            now - rotated_at > timedelta(days=max_age_days)
        )
        if too_old:
            expired.append(name)
        else:
            kept.append(name)
    if max_backups and len(kept) > max_backups:
        expired.extend(kept[:-max_backups])

    for name in expired:
        os.remove(os.path.join(log_dir, name))
    return expired


class RotatingLogWriter:
    """Append-only writer that rotates when the file reaches max_size_bytes."""

    def __init__(self, filepath: str, max_size_bytes: int, max_backups: int = 0,
                 max_age_days: int = 0, compress: bool = False, time_func=None):
        self._filepath = filepath
        self._log_dir = os.path.dirname(os.path.abspath(filepath))
        self._log_filename = os.path.basename(filepath)
        self._max_size_bytes = max_size_bytes
        self._max_backups = max_backups
        self._max_age_days = max_age_days
        self._compress = compress
        self._time_func = time_func or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._file = None
        self._size = 0
        os.makedirs(self._log_dir, exist_ok=True)
        self._open()

    @property
    def filepath(self) -> str:
        return self._filepath

    def _open(self):
        self._file = open(self._filepath, "a", encoding="utf-8")
        self._size = self._file.tell()

    def _close(self):
        if self._file and not self._file.closed:
            self._file.close()

    def _rotate(self) -> str:
        """Move the active file aside as a stamped backup and reopen. Returns the backup path."""
        self._close()
        now = self._time_func()
        backup = os.path.join(self._log_dir, f"{self._log_filename}.{now.strftime(ROTATION_STAMP)}")
        os.rename(self._filepath, backup)
        if self._compress:
            with open(backup, "rb") as src, gzip.open(backup + ".gz", "wb") as dst:
                shutil.copyfileobj(src, dst)
            os.remove(backup)
            backup += ".gz"
        enforce_retention(self._log_dir, self._log_filename,
                          self._max_backups, self._max_age_days, now)
        self._open()
        return backup

    def write(self, line: str) -> str | None:
        """Append a line. Returns rotated file path if rotation occurred."""
        data = line if line.endswith("\n") else line + "\n"
        with self._lock:
            self._file.write(data)
            self._file.flush()
            self._size += len(data.encode("utf-8"))
            if self._size >= self._max_size_bytes:
                return self._rotate()
            return None

    def fileno(self) -> int:
        return self._file.fileno()

    def close(self):
        with self._lock:
            self._close()


class RotatingFileHandler(_FailFastMixin, logging.Handler):
    """logging.Handler in front of a RotatingLogWriter."""

    def __init__(self, writer: RotatingLogWriter):
        super().__init__()
        self.writer = writer

    def emit(self, record):
        try:
            self.writer.write(self.format(record))
        except Exception:
            self.handleError(record)

    def close(self):
        self.writer.close()
        super().close()


def redirect_stderr(path: str):
    """Point fd 2 at the log file so uncaught tracebacks land beside the records."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        os.dup2(f.fileno(), sys.stderr.fileno())


def build_sink(config: Config, stream=None) -> logging.Logger:
    """Configure and return the sink logger for the given config."""
    sink = logging.getLogger(SINK_NAME)
    for handler in list(sink.handlers):
        sink.removeHandler(handler)
        handler.close()

    if config.log_file:
        writer = RotatingLogWriter(
            config.log_file,
            max_size_bytes=config.max_size_mb * 1024 * 1024,
            max_backups=config.max_backups,
            max_age_days=config.max_age_days,
            compress=config.compress,
        )
        handler = RotatingFileHandler(writer)
    else:
        handler = FailFastStreamHandler(stream if stream is not None else sys.stdout)

    handler.setFormatter(TextFormatter() if config.development else JsonFormatter())
    sink.addHandler(handler)
    sink.setLevel(config.log_level)
    sink.propagate = False

    if config.log_file:
        sink.info("log file opened: %s", config.log_file)
    else:
        sink.info("no logger file, just stdout")

    # werkzeug's per-request lines only show up in debug mode
    logging.getLogger("werkzeug").setLevel(
        logging.DEBUG if config.log_level == "DEBUG" else logging.WARNING
    )
    return sink


def close_sink(sink: logging.Logger):
    for handler in list(sink.handlers):
        sink.removeHandler(handler)
        handler.close()
    sink.setLevel(logging.NOTSET)
    sink.propagate = True
