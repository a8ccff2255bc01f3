"""
Purpose
-------
Structured logging for the document-term matrix pipeline. One entry per call,
carrying the run identifier, the emitting component, and a small context
payload (block ids, vocabulary sizes, row counts).

Key behaviors
-------------
- Emits one structured log entry per call (`emit`), filtered by a level
  threshold (DEBUG, INFO, WARNING, ERROR).
- Serializes entries as JSON (default) or human-readable text.
- Resolves configuration from explicit arguments first, then from the
  `DTM_LOG_LEVEL`, `DTM_LOG_FORMAT`, and `DTM_LOG_DEST` environment variables.
- Invalid configuration falls back to defaults and is reported once as a
  WARNING entry.
- Derives child loggers for worker processes that keep the parent's run id.

Conventions
-----------
- Default level is INFO, default format is JSON, default destination is STDERR;
  file destinations are opened in append mode.
- Timestamps are UTC ISO-8601 with a trailing "Z".
- Event names are snake_case (e.g., `vocabulary_block_counted`).
- Logging never raises: unserializable context values fall back to `str`.

Downstream usage
----------------
Call `initialize_logger` once per process (the aggregator and each worker
process) and pass the logger down explicitly; library functions accept an
optional logger and create a component logger when none is supplied.
"""

import datetime as dt
import json
import os
import sys
from typing import TypedDict

LOG_LEVELS: set[str] = {"DEBUG", "INFO", "WARNING", "ERROR"}
LEVEL_MAPPING: dict[str, int] = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}
LOG_FORMATS: set[str] = {"json", "text"}


class LogEntry(TypedDict):
    """
    Purpose
    -------
    One record of the aggregation pipeline's log, as written to STDERR or
    the log file.

    Fields
    ------
    timestamp : str
        Emission time in UTC, e.g. "2025-01-01T12:00:00Z".
    level : str
        One of `LOG_LEVELS`.
    run_id : str
        Aggregation run this record belongs to; block workers and the stem
        index builder inherit it from the aggregator's logger.
    component : str
        Emitting stage, such as "block_aggregator" or "block_assembly_worker".
    event : str
        snake_case event name, such as `block_matrix_assembled`.
    message : str
        Free-text progress line; empty when the event says enough.
    run_meta : dict
        Run-level settings (block and output directories, the block id of a
        worker) repeated on every record of the run.
    context : dict
        Per-event payload such as block ids and vocabulary sizes.
    """

    timestamp: str
    level: str
    run_id: str
    component: str
    event: str
    message: str
    run_meta: dict
    context: dict


class DtmLogger:
    """
    Purpose
    -------
    Level-filtered structured logger writing to STDERR or an append-only file.

    Parameters
    ----------
    component_name : str
        Name of the component using this logger (e.g., "block_aggregator").
    run_id : str
        Identifier correlating all entries of one aggregation run.
    run_meta : dict
        Run-scoped metadata repeated in every entry.
    log_level : str, default="INFO"
        Minimum level that is written.
    log_format : str, default="json"
        Output format ("json" or "text").
    log_dest : str, default="stderr"
        "stderr" or a file path.

    Notes
    -----
    - The logger holds no open file handle, so instances can be pickled and
      recreated in worker processes.
    """

    def __init__(
        self,
        component_name: str,
        run_id: str,
        run_meta: dict,
        log_level: str = "INFO",
        log_format: str = "json",
        log_dest: str = "stderr",
    ) -> None:
        self.component_name = component_name
        self.run_id = run_id
        self.run_meta = run_meta
        self.level = log_level
        self.format = log_format
        self.dest = log_dest

    def emit(
        self, event: str, level: str = "INFO", msg: str | None = None, context: dict | None = None
    ) -> None:
        """
        Emit one structured log entry if `level` passes the threshold.

        Parameters
        ----------
        event : str
            Snake_case event name describing what happened.
        level : str, default="INFO"
            Log severity level.
        msg : str, optional
            Human-readable message string.
        context : dict, optional
            Event-specific payload.

        Returns
        -------
        None
        """

        if LEVEL_MAPPING[level] < LEVEL_MAPPING[self.level]:
            return
        entry: LogEntry = {
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "run_id": self.run_id,
            "component": self.component_name,
            "event": event,
            "message": msg or "",
            "run_meta": self.run_meta,
            "context": context or {},
        }
        self.write_entry(self.format_entry(entry))

    def debug(self, event: str, msg: str | None = None, context: dict | None = None) -> None:
        self.emit(event=event, level="DEBUG", msg=msg, context=context)

    def info(self, event: str, msg: str | None = None, context: dict | None = None) -> None:
        self.emit(event=event, level="INFO", msg=msg, context=context)

    def warning(self, event: str, msg: str | None = None, context: dict | None = None) -> None:
        self.emit(event=event, level="WARNING", msg=msg, context=context)

    def error(self, event: str, msg: str | None = None, context: dict | None = None) -> None:
        self.emit(event=event, level="ERROR", msg=msg, context=context)

    def child(self, component_name: str, run_meta: dict | None = None) -> "DtmLogger":
        """
        Derive a logger for a sub-component or worker process.

        Parameters
        ----------
        component_name : str
            Component label for the derived logger.
        run_meta : dict, optional
            Extra metadata merged over the parent's `run_meta`.

        Returns
        -------
        DtmLogger
            Logger sharing this logger's run id, level, format, and destination.
        """

        merged_meta: dict = {**self.run_meta, **(run_meta or {})}
        return DtmLogger(
            component_name=component_name,
            run_id=self.run_id,
            run_meta=merged_meta,
            log_level=self.level,
            log_format=self.format,
            log_dest=self.dest,
        )

    def format_entry(self, entry: LogEntry) -> str:
        """Serialize an entry in this logger's format, without a trailing newline."""
        if self.format == "json":
            return render_json(entry)
        return render_text(entry)

    def write_entry(self, formatted_entry: str) -> None:
        if self.dest == "stderr":
            print(formatted_entry, file=sys.stderr, flush=True)
        else:
            with open(self.dest, "a", encoding="utf-8") as f:
                f.write(formatted_entry + "\n")


def initialize_logger(
    component_name: str,
    level: str | None = None,
    run_id: str | None = None,
    run_meta: dict | None = None,
) -> DtmLogger:
    """
    Configure and return a `DtmLogger`.

    Parameters
    ----------
    component_name : str
        Name of the component using the logger.
    level : str, optional
        Explicit level; takes precedence over `DTM_LOG_LEVEL` when valid.
    run_id : str, optional
        Run identifier; generated from the component name when omitted.
    run_meta : dict, optional
        Run metadata; defaults to an empty dict.

    Returns
    -------
    DtmLogger
        Logger with validated configuration.

    Notes
    -----
    - Invalid settings fall back to defaults and one WARNING entry per
      fallback is emitted through the new logger.
    """

    fall_backs: dict[str, str | None] = {}
    log_level, log_format, log_dest = extract_env_vars(level, fall_backs)
    logger = DtmLogger(
        component_name=component_name,
        run_id=run_id if run_id is not None else generate_run_id(component_name),
        run_meta=run_meta if run_meta is not None else {},
        log_level=log_level,
        log_format=log_format,
        log_dest=log_dest,
    )
    handle_fallbacks(logger, fall_backs)
    return logger


def extract_env_vars(
    level: str | None, fall_backs: dict[str, str | None]
) -> tuple[str, str, str]:
    """
    Resolve level, format, and destination from arguments and environment.

    Parameters
    ----------
    level : str or None
        Explicit level argument; `None` defers to `DTM_LOG_LEVEL`.
    fall_backs : dict[str, str | None]
        Mutated in place: each setting that fell back to its default is
        recorded with the rejected value.

    Returns
    -------
    tuple[str, str, str]
        Normalized `(level, format, destination)`.
    """

    raw_level: str = level if level is not None else os.environ.get("DTM_LOG_LEVEL", "INFO")
    raw_format: str = os.environ.get("DTM_LOG_FORMAT", "json")
    log_dest: str = os.environ.get("DTM_LOG_DEST", "stderr")

    log_level: str = raw_level.upper()
    if log_level not in LOG_LEVELS:
        fall_backs["level"] = raw_level
        log_level = "INFO"

    log_format: str = raw_format.lower()
    if log_format not in LOG_FORMATS:
        fall_backs["log_format"] = raw_format
        log_format = "json"

    if log_dest.lower() == "stderr":
        log_dest = "stderr"
    else:
        try:
            with open(log_dest, "a", encoding="utf-8"):
                pass
        except OSError:
            fall_backs["log_dest"] = log_dest
            log_dest = "stderr"

    return log_level, log_format, log_dest


def generate_run_id(component_name: str) -> str:
    """Return `<component>--<UTC timestamp>--<pid>`."""

    return (
        component_name
        + "--"
        + dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        + "--"
        + str(os.getpid())
    )


def handle_fallbacks(logger: DtmLogger, fall_backs: dict[str, str | None]) -> None:
    """Emit one WARNING per configuration value that fell back to its default."""

    defaults: dict[str, str] = {"level": "INFO", "log_format": "json", "log_dest": "stderr"}
    for key, invalid_value in fall_backs.items():
        logger.warning(
            event=f"fallback_{key}",
            msg=f"Invalid {key} setting; defaulting to {defaults[key]}",
            context={"invalid_value": invalid_value},
        )


def render_json(entry: LogEntry) -> str:
    """
    One-line JSON record.

    Notes
    -----
    - Context values that `json` cannot encode, such as numpy scalars or
      paths, are written through `str` instead of failing the call.
    """

    try:
        return json.dumps(entry, ensure_ascii=False)
    except (TypeError, ValueError):
        return json.dumps(entry, ensure_ascii=False, default=str)


def render_text(entry: LogEntry) -> str:
    """`<timestamp> [<level>] <component> <event> - <message> k=v ...`"""

    head = f"{entry['timestamp']} [{entry['level']}] {entry['component']} {entry['event']}"
    pairs = [f"{key}={value}" for key, value in entry["context"].items()]
    return " ".join([head, "-", entry["message"], *pairs]).rstrip()
