"""Drift detection: normalize captures and diff them against baselines."""
from __future__ import annotations

from .api import DriftService
from .engine import DiffEngine, InvalidTargetError
from .records import DiffResult, NameCount, NetRecord

__all__ = ["DiffEngine", "DiffResult", "DriftService", "InvalidTargetError", "NameCount", "NetRecord"]
