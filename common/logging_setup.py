from __future__ import annotations

import logging
import os
import sys
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


# Chatty third-party loggers kept at WARNING unless DEBUG is requested
_NOISY = ("urllib3", "requests", "asyncio", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 169, "lvl": "INFO", "name": "tiles.fetch", "msg": "text", "extra": {...} }
    Values json cannot encode (datetimes, enums) are written with str().
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        # Structured context passed as extra={"extra": {...}}
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def resolve_level(*candidates: Optional[str]) -> int:
    """First non-empty level name among `candidates`; unknown names -> INFO."""
    name = next((str(c) for c in candidates if c), "INFO").upper()
    lvl = logging.getLevelName(name)
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: Optional[str] = None, P: Optional[Dict[str, Any]] = None, force: bool = False) -> None:
    """
    Configure the root logger once: JSON lines on stdout, plus an append-mode
    file when params set `logging.file`.

    Level: explicit `level` > env LOG_LEVEL > params `logging.level` > INFO.
    `force` reconfigures an already configured root (e.g. after reloading params).
    """
    root = logging.getLogger()
    if getattr(root, "_coverage_configured", False) and not force:
        return

    cfg = (P or {}).get("logging") or {}
    lvl = resolve_level(level, os.environ.get("LOG_LEVEL"), cfg.get("level"))

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if cfg.get("file"):
        path = Path(cfg["file"])
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    fmt = JsonFormatter()
    for h in root.handlers:
        if getattr(h, "_coverage_owned", False):
            h.close()
    root.handlers.clear()
    for h in handlers:
        h.setFormatter(fmt)
        h._coverage_owned = True  # type: ignore[attr-defined]
        root.addHandler(h)
    root.setLevel(lvl)

    noisy_level = logging.NOTSET if lvl <= logging.DEBUG else logging.WARNING
    for name in _NOISY:
        logging.getLogger(name).setLevel(noisy_level)
    root._coverage_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)
