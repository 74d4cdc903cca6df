from __future__ import annotations

import logging

from tenantrag.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once so repeated app factories do not stack handlers.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(resolved)
    # Keep noisy client libraries at warning unless debugging.
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(
            logging.DEBUG if resolved == "DEBUG" else logging.WARNING
        )
