from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from shockbot.clock import in_time_window
from shockbot.config import DecisionWindowConfig


@dataclass(slots=True)
class WindowCheck:
    allowed: bool
    message: str


class DecisionWindow:
    def __init__(self, config: DecisionWindowConfig, timezone_name: str):
        self.config = config
        self.timezone_name = timezone_name

    def check(self, now: datetime) -> WindowCheck:
        start, end = self.config.start, self.config.end
        if in_time_window(now, start, end, self.timezone_name):
            return WindowCheck(True, f"Inside decision window ({start} - {end})")
        return WindowCheck(False, f"Outside decision window ({start} - {end})")
