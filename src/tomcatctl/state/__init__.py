"""Desired-state registry for tomcatctl."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError, parse_instance

__all__ = ["StateRegistry", "StateRegistryError", "parse_instance"]
