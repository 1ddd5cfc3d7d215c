from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from studynova.config import LOG_DIR

LOGGER_NAME = "studynova.chat"


def ensure_logger(log_cfg: Dict[str, Any], log_dir: Optional[Path] = None) -> Tuple[logging.Logger, str]:
    """Set up file + stdout logger."""
    log_dir = Path(log_dir) if log_dir else LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now().strftime("%Y%m%d")
    log_path = log_dir / f"chat-{ts}.log"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.INFO)
    logger.handlers.clear()

    # File handler
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    # Console handler; the chat prompt owns stdout so only warnings go there
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.WARNING)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, str(log_path)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_event(logger: logging.Logger, kind: str, payload: Dict[str, Any], level: int = logging.INFO):
    try:
        logger.log(level, "%s %s", kind, json.dumps(payload))
    except (TypeError, ValueError):
        logger.log(level, "%s %s", kind, str(payload))
