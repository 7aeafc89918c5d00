"""Rooms, game hooks, settlement service and HTTP integrations for room-based game services."""

__version__ = "0.1.0"