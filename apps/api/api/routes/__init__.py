"""API routes module."""

from . import chapters, health, processes

__all__ = ["chapters", "health", "processes"]
