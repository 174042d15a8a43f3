"""Automated model search"""

from .config import AutoMLConfig
from .search import AutoMLRun

__all__ = ["AutoMLConfig", "AutoMLRun"]
