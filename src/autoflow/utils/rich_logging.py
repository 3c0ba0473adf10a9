"""Rich logging with run/node context and readable console formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "autoflow"


class EngineLogFormatter(logging.Formatter):
    """Custom formatter with run and node context."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        run_context = ""
        if getattr(record, "run_id", None):
            run_context = f"[{record.run_id[:8]}] "

        node_context = ""
        if getattr(record, "node_id", None):
            node_context = f"[{record.node_id}] "

        worker_context = ""
        if getattr(record, "worker_id", None):
            worker_context = f"({record.worker_id}) "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        line = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{worker_context}{run_context}{node_context}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds run/node context to all log messages.

    Each action invocation gets its own adapter, so plugin code can log
    without knowing which run it belongs to.
    """

    def __init__(
        self,
        logger: logging.Logger,
        run_id: Optional[str] = None,
        node_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ):
        super().__init__(logger, {})
        self.run_id = run_id
        self.node_id = node_id
        self.worker_id = worker_id

    def bind(self, **context) -> "ContextLogger":
        """Child adapter with some context fields replaced."""
        return ContextLogger(
            self.logger,
            run_id=context.get("run_id", self.run_id),
            node_id=context.get("node_id", self.node_id),
            worker_id=context.get("worker_id", self.worker_id),
        )

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.run_id:
            extra["run_id"] = self.run_id
        if self.node_id:
            extra["node_id"] = self.node_id
        if self.worker_id:
            extra["worker_id"] = self.worker_id
        kwargs["extra"] = extra
        return msg, kwargs

    def run_started(self, workflow_id: str, version: int):
        self.info(f"▶️ Run started for {workflow_id} v{version}")

    def node_completed(self, status: str, duration_ms: int):
        self.info(f"✅ Node {status} in {duration_ms}ms")

    def node_failed(self, error: str, attempt: int):
        self.error(f"❌ Node failed (attempt {attempt}): {error}")


def setup_rich_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    use_json: bool = False,
    use_colors: Optional[bool] = None,
) -> ContextLogger:
    """
    Configure the ``autoflow`` logger hierarchy.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for a plain-text (or JSON) log file
        use_json: Use JSON structured logging for every handler
        use_colors: Force ANSI colors on/off; defaults to "stdout is a tty"

    Returns:
        ContextLogger wrapping the package root logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.propagate = False

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_colors is None:
        use_colors = sys.stdout.isatty() if hasattr(sys.stdout, "isatty") else False

    if use_json:
        formatter: logging.Formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s","run_id":"%(run_id)s",'
            '"node_id":"%(node_id)s","message":"%(message)s","module":"%(module)s"}',
            defaults={"run_id": "", "node_id": ""},
        )
    else:
        formatter = EngineLogFormatter(use_colors=use_colors)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_formatter = formatter if use_json else EngineLogFormatter(use_colors=False)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return ContextLogger(logger)
