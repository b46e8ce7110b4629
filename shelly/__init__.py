"""Seed-scoped remote shell sessions owned by per-seed background daemons."""

__version__ = "0.1.0"
