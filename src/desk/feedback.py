"""Transient user feedback: toasts and the notification sound.

Presentation layers inject their own implementations; the defaults here
log and keep a short history so headless callers (CLI, tests) can see
what would have been shown.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass
class Toast:
    message: str
    level: str = "info"  # info, success, error
    created_at: datetime = field(default_factory=datetime.now)


class Toaster:
    """Auto-dismissing notices. Keeps the most recent ``max_items``."""

    def __init__(self, max_items: int = 20) -> None:
        self.history: deque[Toast] = deque(maxlen=max_items)

    def show(self, message: str, level: str = "info") -> Toast:
        toast = Toast(message=message, level=level)
        self.history.append(toast)
        log = logger.warning if level == "error" else logger.info
        log("[toast:%s] %s", level, message)
        return toast

    def info(self, message: str) -> Toast:
        return self.show(message, "info")

    def success(self, message: str) -> Toast:
        return self.show(message, "success")

    def error(self, message: str) -> Toast:
        return self.show(message, "error")


class SoundPlayer:
    """One-shot notification sound. Volume 0 means muted."""

    def __init__(self) -> None:
        self.play_count = 0

    def play(self, volume: float) -> bool:
        if volume <= 0:
            return False
        self.play_count += 1
        logger.debug("Notification sound (volume %.2f)", volume)
        return True
