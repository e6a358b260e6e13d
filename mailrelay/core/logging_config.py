"""
Logging configuration for the mailbox notification relay.

Console output always; optional rotating log file. Every handler runs the
records through SecretRedactingFilter so bearer tokens and mailbox passwords
that end up in exception text (request errors, library debug output) are
masked before they are written.
"""

import logging
import logging.handlers
import re
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request at INFO/DEBUG
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "telegram", "uvicorn.access")


class SecretRedactingFilter(logging.Filter):
    """Masks bearer tokens, JSON token/password fields and bot tokens in URLs."""

    PATTERNS = [
        (re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*"), r"\1***"),
        (re.compile(r"""(["']?(?:token|password)["']?\s*[:=]\s*["']?)[^"',\s}]+"""), r"\1***"),
        (re.compile(r"(/bot)\d+:[A-Za-z0-9_-]+"), r"\1***"),
    ]

    def redact(self, text: str) -> str:
        for pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (None = console only)
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    redactor = SecretRedactingFilter()

    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        root_logger.addHandler(handler)

    # Request-level chatter only when debugging
    library_level = logging.DEBUG if log_level.upper() == "DEBUG" else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    # Echoed rows would include stored credentials
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={log_level}, file={log_file}")
