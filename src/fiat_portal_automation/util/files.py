from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_filename_part(value: str, *, fallback: str = "qr", max_len: int = 40) -> str:
    if not value:
        return fallback
    return _UNSAFE_FILENAME_CHARS.sub("_", value)[:max_len] or fallback


def persist_qr_copy(data: bytes, *, out_dir: str, details: str) -> Optional[Path]:
    """
    Best-effort: keep a local copy of a generated QR for auditing. Never raises.
    """
    try:
        out = Path(out_dir)
        out.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        path = out / f"qr-{sanitize_filename_part(details)}-{stamp}.png"
        path.write_bytes(data)
        logger.info("QR saved locally at %s", path)
        return path
    except Exception as e:
        logger.warning("Failed to persist QR image: %s", e)
        return None
