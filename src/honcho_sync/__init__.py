"""Local state and lifecycle hooks syncing coding sessions with a Honcho memory service."""

__version__ = "0.1.0"
