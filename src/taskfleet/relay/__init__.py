"""Streaming relay between remote sessions and the chat surface."""
