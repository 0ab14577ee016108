"""Remote log sinks (Datadog, Logtail) for the standard logging tree.

Records are handed to a background thread through a queue, so a slow or
unreachable sink never blocks the event loop. Structured fields travel as
``extra={"fields": {...}}`` on the log call and are shipped alongside the
message.
"""

from __future__ import annotations

import logging
import logging.handlers
import queue
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Sequence

import httpx

if TYPE_CHECKING:
    from .UpdaterConfig import LogSinkConfig

NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

SERVICE_NAME = "price-updater"
LOGTAIL_URL = "https://in.logs.betterstack.com"


def parse_level(level: str) -> int:
    """Map a sink level name (including "notice") to a logging level."""
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level {level!r}")
    return value


def datadog_url(region: str | None) -> str:
    """Datadog HTTP intake URL for a site region (e.g. "us5", "eu")."""
    if not region or region in ("us", "us1"):
        site = "datadoghq.com"
    elif region == "eu":
        site = "datadoghq.eu"
    else:
        site = f"{region}.datadoghq.com"
    return f"https://http-intake.logs.{site}/api/v2/logs"


class HttpSinkHandler(logging.Handler):
    """Posts each record as JSON to an HTTP log intake.

    Runs behind a :class:`logging.handlers.QueueListener`; ``emit`` is only
    ever called from the listener thread.
    """

    def __init__(self, sink: LogSinkConfig, client: httpx.Client | None = None) -> None:
        super().__init__(level=parse_level(sink.level))
        self.sink = sink
        self.client = client or httpx.Client(timeout=5.0)

    def build_request(self, record: logging.LogRecord) -> tuple[str, dict[str, str], Any]:
        """Render a record as (url, headers, json body) for the sink."""
        fields = dict(getattr(record, "fields", None) or {})
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        message = record.getMessage()

        if self.sink.kind == "datadog":
            body: Any = [
                {
                    "message": message,
                    "status": record.levelname.lower(),
                    "service": SERVICE_NAME,
                    "ddsource": "python",
                    "logger": {"name": record.name},
                    "timestamp": timestamp,
                    **fields,
                }
            ]
            headers = {"DD-API-KEY": self.sink.source_token}
            return datadog_url(self.sink.region), headers, body

        body = {
            "dt": timestamp,
            "level": record.levelname.lower(),
            "message": message,
            "logger": record.name,
            **fields,
        }
        headers = {"Authorization": f"Bearer {self.sink.source_token}"}
        return LOGTAIL_URL, headers, body

    def emit(self, record: logging.LogRecord) -> None:
        try:
            url, headers, body = self.build_request(record)
            self.client.post(url, headers=headers, json=body).raise_for_status()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.client.close()
        super().close()


def attach_sinks(
    sinks: Sequence[LogSinkConfig], root: logging.Logger | None = None
) -> logging.handlers.QueueListener | None:
    """Attach remote sinks to the root logger through a queue.

    :param sinks: Sink configurations (may be empty).
    :param root: Logger to attach to (default: root logger).
    :returns: The started listener, to be stopped on shutdown, or None when
        there are no sinks.
    """
    if not sinks:
        return None
    root = root or logging.getLogger()
    log_queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    handlers = [HttpSinkHandler(sink) for sink in sinks]
    listener = logging.handlers.QueueListener(log_queue, *handlers, respect_handler_level=True)
    root.addHandler(logging.handlers.QueueHandler(log_queue))
    listener.start()
    for sink in sinks:
        root.info(f"Shipping logs to {sink.kind} at level {sink.level}")
    return listener
