"""
Engine kinds supported by the run controller.
"""

from enum import Enum
from typing import Dict


class EngineKind(str, Enum):
    """How an engine is launched, controlled, and what traces it leaves behind."""

    SERVO = "ServoLike"  # servoshell, SIGTERM to close, HTML + Perfetto traces
    CHROMIUM = "ChromiumLike"  # Chromium, window quit to close, Perfetto trace
    SERVO_DRIVER = "ServoDriverLike"  # servoshell controlled over WebDriver
    CHROME_DRIVER = "ChromeDriverLike"  # Chromium controlled by ChromeDriver

    @property
    def dual_trace(self) -> bool:
        """Whether runs produce an HTML trace plus a Perfetto trace and a manifest."""
        return self in (EngineKind.SERVO, EngineKind.SERVO_DRIVER)

    @property
    def uses_webdriver(self) -> bool:
        return self in (EngineKind.SERVO_DRIVER, EngineKind.CHROME_DRIVER)

    @classmethod
    def parse(cls, value: str) -> "EngineKind":
        """Accept canonical names and the short names used by older study files."""
        try:
            return cls(value)
        except ValueError:
            pass
        try:
            return _ALIASES[value]
        except KeyError:
            names = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown engine kind {value!r} (expected one of {names})") from None


_ALIASES: Dict[str, EngineKind] = {
    "Servo": EngineKind.SERVO,
    "Chromium": EngineKind.CHROMIUM,
    "ServoDriver": EngineKind.SERVO_DRIVER,
    "ChromeDriver": EngineKind.CHROME_DRIVER,
}
