"""Desired-state loading and the YAML state registry."""
from __future__ import annotations

from .loader import RESERVED_SITE_NAMES, StateError, load_desired_state, parse_desired_state
from .registry import PredisableStash, StateRegistry, StateRegistryError

__all__ = [
    "PredisableStash",
    "RESERVED_SITE_NAMES",
    "StateError",
    "StateRegistry",
    "StateRegistryError",
    "load_desired_state",
    "parse_desired_state",
]
