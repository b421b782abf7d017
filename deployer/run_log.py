from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional


def configure_logging(log_path: Optional[Path] = None, *, verbose: bool = False) -> logging.Logger:
    """Root logger with the stream handler, plus a file handler when ``log_path`` is set."""
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    logger.addHandler(stream_handler)

    if log_path is not None:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    # aiohttp/web3 are chatty at DEBUG
    for name in ("aiohttp", "web3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


def write_record(path: Path, record: Dict[str, Any]) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")
    return out
