"""
enginelab Runner Module - launches engines and captures one run at a time.
"""

from enginelab.runner.engines import (
    ChromeDriverEngine,
    ChromiumEngine,
    EngineAdapter,
    EngineProcess,
    RunArtifacts,
    RunContext,
    ServoDriverEngine,
    ServoEngine,
    adapter_for,
)
from enginelab.runner.run_controller import RunController, RunPhase
from enginelab.runner.webdriver import WebDriverClient

__all__ = [
    "ChromeDriverEngine",
    "ChromiumEngine",
    "EngineAdapter",
    "EngineProcess",
    "RunArtifacts",
    "RunContext",
    "RunController",
    "RunPhase",
    "ServoDriverEngine",
    "ServoEngine",
    "WebDriverClient",
    "adapter_for",
]
