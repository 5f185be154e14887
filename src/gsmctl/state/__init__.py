"""State management helpers for gsmctl."""
from __future__ import annotations

from .registry import InstanceRegistry

__all__ = ["InstanceRegistry"]
