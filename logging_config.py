"""Logging setup: plain stderr output plus optional shipping to Supabase.

Messages carry a bracketed tag ("[AUTH] Token verified for ...") which is
split out into its own column when entries are shipped.
"""

import atexit
import json
import logging
import re
import sys
import threading
from typing import Optional

TAG_PATTERN = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)

# LogRecord attributes passed through ``extra=`` that are worth keeping
CONTEXT_FIELDS = ("connection_id", "user", "request_id")


def split_tag(message: str) -> tuple[Optional[str], str]:
    match = TAG_PATTERN.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class LogEntryFormatter(logging.Formatter):
    """Turns a record into a row for the ``logs`` table."""

    def __init__(self, server_name: str = None, transport: str = None):
        super().__init__()
        self.server_name = server_name or "slack-mcp-server"
        self.transport = transport

    def entry(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())

        extra = {"logger": record.name, "function": record.funcName, "line": record.lineno}
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                extra[field] = getattr(record, field)
        if record.exc_info:
            extra["exception"] = self.formatException(record.exc_info)

        return {
            "server_name": self.server_name,
            "transport": self.transport,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": extra,
        }

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.entry(record), default=str)


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


class SupabaseLogHandler(logging.Handler):
    """Buffers entries and inserts them into Supabase in batches.

    A batch is written when ``batch_size`` entries are buffered, every
    ``flush_interval`` seconds from a background thread, and on close.
    Insert failures are reported on stderr and the batch is dropped.
    """

    def __init__(
        self,
        supabase_client,
        formatter: LogEntryFormatter,
        table: str = "logs",
        batch_size: int = 20,
        flush_interval: float = 10.0,
    ):
        super().__init__()
        self.supabase = supabase_client
        self.table = table
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.setFormatter(formatter)

        self._buffer: list[dict] = []
        self._buffer_lock = threading.Lock()
        self._stopped = threading.Event()
        self._worker = threading.Thread(target=self._run, name="supabase-log-shipper", daemon=True)
        self._worker.start()

        atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        try:
            entry = self.formatter.entry(record)
        except Exception:
            self.handleError(record)
            return

        with self._buffer_lock:
            self._buffer.append(entry)
            full = len(self._buffer) >= self.batch_size
        if full:
            self.flush()

    def _run(self):
        while not self._stopped.wait(self.flush_interval):
            self.flush()

    def flush(self):
        with self._buffer_lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return
        try:
            self.supabase.table(self.table).insert(batch).execute()
        except Exception as e:
            # stderr only: logging here would re-enter this handler
            print(f"[WARNING] Failed to ship {len(batch)} log entries to Supabase: {e}", file=sys.stderr)

    def close(self):
        if not self._stopped.is_set():
            self._stopped.set()
            self.flush()
        super().close()


_shipping_handler: Optional[SupabaseLogHandler] = None


def create_supabase_client(url: str, key: str):
    """Supabase client for log shipping, or None when not configured."""
    if not url or not key:
        return None
    from supabase import create_client
    return create_client(url, key)


def setup_logging(
    level: str = "INFO",
    server_name: str = None,
    transport: str = None,
    supabase_client=None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name (INFO, DEBUG, ...). Unknown names fall back to INFO.
        server_name: Name stamped on shipped entries.
        transport: Active MCP transport, stamped on shipped entries.
        supabase_client: Enables shipping to the ``logs`` table when given.

    Returns:
        The root logger.
    """
    global _shipping_handler

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(PlainFormatter())
    root.addHandler(stderr_handler)

    _shipping_handler = None
    if supabase_client is not None:
        _shipping_handler = SupabaseLogHandler(supabase_client, LogEntryFormatter(server_name, transport))
        root.addHandler(_shipping_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if _shipping_handler:
        logger.info(f"[STARTUP] Shipping logs to Supabase as {server_name or 'slack-mcp-server'}")
    else:
        logger.info("[STARTUP] Supabase log shipping disabled")

    return root


def flush_logs():
    """Write any buffered entries now."""
    if _shipping_handler:
        _shipping_handler.flush()
