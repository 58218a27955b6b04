"""Task queue, machine registry and dispatcher."""
