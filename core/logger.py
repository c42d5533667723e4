import logging
import re
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# 64 hex chars (private keys) or 130 (signatures)
SECRET_RE = re.compile(r"0x[0-9a-fA-F]{64}(?:[0-9a-fA-F]{66})?\b")

NOISY_LOGGERS = ("web3", "urllib3", "aiohttp.access", "aiosqlite")


def redact(value: Optional[str], keep: int = 6) -> str:
    """Shorten a secret-looking value to ``0xabcd..ef12``."""
    if not value:
        return ""
    text = str(value)
    if len(text) <= keep * 2:
        return text
    return f"{text[:keep]}..{text[-4:]}"


class RedactingFilter(logging.Filter):
    """Masks private keys and signatures that end up in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if SECRET_RE.search(message):
            record.msg = SECRET_RE.sub(lambda m: redact(m.group(0)), message)
            record.args = None
        return True


def configure_logging(verbose: bool = False, stream=None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
