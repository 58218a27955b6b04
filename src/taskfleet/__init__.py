"""Distributed task queue, dispatcher and subagent runner."""

__version__ = "0.1.0"
