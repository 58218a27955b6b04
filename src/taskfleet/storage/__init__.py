"""SQLModel storage layer and migrations runner."""
