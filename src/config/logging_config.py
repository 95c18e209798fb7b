"""
Logging configuration with optional Grafana Loki shipping.

Console logging is always enabled (plain text in development, JSON elsewhere).
When LOKI_ENABLED is set, records are also queued and pushed to Loki by a
background thread so that webhook requests never block on log delivery.
Every record is tagged with the current request id when one is active.
"""

import atexit
import json
import logging
import queue
import sys
import threading
import time
from contextvars import ContextVar

from src.config.config import Config

logger = logging.getLogger(__name__)

# Set by RequestIDMiddleware for the duration of a request
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


class LokiLogHandler(logging.Handler):
    """
    Log handler that pushes records to Grafana Loki asynchronously.

    Records are queued by emit() and sent by a daemon worker thread. When the
    queue is full new records are dropped; log shipping is best-effort.
    """

    def __init__(self, loki_url: str, tags: dict[str, str], max_queue_size: int = 10000):
        super().__init__()
        self.loki_url = loki_url
        self.tags = tags
        self._session = None
        self._session_lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._shutdown = threading.Event()
        self._closed = threading.Event()
        self._worker_thread = threading.Thread(target=self._worker, daemon=True)
        self._worker_thread.start()

        atexit.register(self.close)

    def _get_session(self):
        """Lazily create the httpx client; returns None once the handler is closed."""
        if self._closed.is_set():
            return None

        with self._session_lock:
            if self._closed.is_set():
                return None
            if self._session is None:
                import httpx

                limits = httpx.Limits(max_connections=5, max_keepalive_connections=2)
                timeout = httpx.Timeout(5.0, connect=2.0)
                self._session = httpx.Client(timeout=timeout, limits=limits)
            return self._session

    def _worker(self) -> None:
        while True:
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue

            try:
                self._send_to_loki(payload)
            except Exception:
                # Loki outages must not take the worker down
                pass
            finally:
                self._queue.task_done()

    def _send_to_loki(self, payload: dict) -> None:
        session = self._get_session()
        if session is None:
            return
        response = session.post(self.loki_url, json=payload, timeout=5.0)
        response.raise_for_status()

    def emit(self, record: logging.LogRecord) -> None:
        """Queue a record for delivery. Never blocks and never raises."""
        try:
            log_entry = self.format(record)

            labels = {**self.tags, "level": record.levelname, "logger": record.name}

            request_id = getattr(record, "request_id", None)
            if request_id:
                labels["request_id"] = request_id

            if hasattr(record, "event_type"):
                labels["event_type"] = str(record.event_type)

            if record.exc_info and record.exc_info[0]:
                labels["error_type"] = record.exc_info[0].__name__

            timestamp_ns = str(int(record.created * 1_000_000_000))
            payload = {"streams": [{"stream": labels, "values": [[timestamp_ns, log_entry]]}]}

            try:
                self._queue.put_nowait(payload)
            except queue.Full:
                pass

        except Exception:
            self.handleError(record)

    def flush(self, timeout: float = 10.0) -> None:
        """Block until queued records are sent or the timeout elapses."""
        deadline = time.monotonic() + timeout

        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                if not self._queue.all_tasks_done.wait(timeout=remaining):
                    break

    def close(self) -> None:
        """Drain the queue (up to 5s), then release the HTTP client."""
        if self._shutdown.is_set() and self._closed.is_set():
            return

        self._shutdown.set()

        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5.0)

        if not self._worker_thread.is_alive():
            self._closed.set()
            with self._session_lock:
                if self._session is not None:
                    self._session.close()
                    self._session = None

        super().close()


class RequestContextFilter(logging.Filter):
    """Attach the active request id (if any) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = request_id_var.get()
        if request_id and not hasattr(record, "request_id"):
            record.request_id = request_id
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "request_id"):
            log_data["request_id"] = record.request_id

        if hasattr(record, "event_type"):
            log_data["event_type"] = record.event_type

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> bool:
    """
    Configure application logging.

    Sets up:
    - Console handler (plain format in development, JSON otherwise)
    - Loki handler when LOKI_ENABLED is set
    - Request-id filter on every handler

    Returns:
        bool: True if Loki integration was enabled, False otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    context_filter = RequestContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(context_filter)

    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    loki_enabled = False
    if Config.LOKI_ENABLED:
        try:
            loki_handler = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={
                    "app": Config.SERVICE_NAME,
                    "environment": Config.APP_ENV,
                },
            )
            loki_handler.setLevel(logging.INFO)
            loki_handler.addFilter(context_filter)
            loki_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(loki_handler)

            logger.info(f"Loki logging enabled: {Config.LOKI_PUSH_URL}")
            loki_enabled = True

        except Exception as e:
            logger.warning(f"Failed to configure Loki logging: {e}")
    else:
        logger.info("Loki logging disabled (LOKI_ENABLED=false)")

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    return loki_enabled
