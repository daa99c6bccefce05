from __future__ import annotations

import logging

from panelsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    settings = get_settings()
    root = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root.setLevel(level)
    if not any(getattr(handler, "_panelsync", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._panelsync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # httpx logs every request at INFO, including panel URLs; keep it quiet by default.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
