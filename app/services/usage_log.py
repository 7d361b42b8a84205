"""
Best-effort record of completed generations.

Failures here must never change the outcome of a request; callers wrap
`record` and log anything it raises.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, Sequence

from app.models.generation import utcnow

logger = logging.getLogger(__name__)


class UsageLogger(Protocol):
    def record(self, user_id: str, aspect: str, count: int, images: Sequence[bytes]) -> None:
        ...


class JsonlUsageLogger:
    """
    Appends one JSON line per generation to a file.

    Only sizes are stored, never the image payloads.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, user_id: str, aspect: str, count: int, images: Sequence[bytes]) -> None:
        entry = {
            "timestamp": utcnow().isoformat(),
            "user_id": user_id,
            "aspect": aspect,
            "image_count": count,
            "image_bytes": [len(image) for image in images],
        }
        line = json.dumps(entry)

        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

        logger.info("Generation logged for user %s: %d images", user_id, count)
