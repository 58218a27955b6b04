"""Agent profiles, subagent runs and their lifecycle worker."""
