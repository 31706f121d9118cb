"""AI provider implementations."""
