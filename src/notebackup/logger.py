import json
import logging
import os
import sys

DEFAULT_LOG_FILE = "/tmp/notebackup.log"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON line (``ts``, ``level``, ``logger``, ``msg``).

    A traceback, when attached, goes into ``exc``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _make_formatter(debug_format: str, with_name: bool) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    name = " %(name)s" if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s]{name} %(message)s", datefmt=DATE_FORMAT
    )


def _resolve_level(mode: str, debug: bool) -> int:
    if debug:
        return logging.DEBUG
    default_level = "WARNING" if mode == "file" else "INFO"
    name = os.getenv("LOG_LEVEL", default_level).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
) -> None:
    """
    Configure the root logger for a notebackup run.

    Args:
        mode: "cli" logs to stderr (plus *log_file* when given); "file"
            logs only to a file, for scheduled or background syncs.
        debug: Force DEBUG regardless of LOG_LEVEL.
        log_file: Log file path; in file mode it overrides LOG_FILE.
        debug_format: "text" (default) or "json".

    Environment variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR.
                   Default: INFO for CLI mode, WARNING for file mode.
        LOG_FILE: Log file for file mode. Default: /tmp/notebackup.log
    """
    log_level = _resolve_level(mode, debug)

    if mode == "file":
        logging.basicConfig(
            level=log_level,
            format="[%(asctime)s] [%(levelname)s] %(name)s %(message)s",
            datefmt=DATE_FORMAT,
            filename=log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE),
            filemode="a",
        )
        return

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_make_formatter(debug_format, with_name=False))
    handlers: list[logging.Handler] = [stderr_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(_make_formatter(debug_format, with_name=True))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers)

    # Encoding detection logs every probe at INFO.
    if log_level != logging.DEBUG:
        logging.getLogger("charset_normalizer").setLevel(logging.WARNING)
