"""
enginelab Core Module - Settings, error taxonomy, and utilities.
"""

from enginelab.core.config import Settings
from enginelab.core.exceptions import *

__all__ = ["Settings"]
