"""HTTP boundary for machines, operators and subagent callers."""

from taskfleet.api.app import create_app

__all__ = ["create_app"]
