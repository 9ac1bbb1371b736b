from __future__ import annotations

import logging
import sys

from printvault.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; API and workers share the format.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Quiet chatty client libraries unless debugging.
    for noisy in ("botocore", "boto3", "httpx", "aiosqlite"):
        logging.getLogger(noisy).setLevel(max(logging.getLevelName(resolved), logging.WARNING))
    _configured = True
