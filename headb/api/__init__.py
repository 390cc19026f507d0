"""headb HTTP API."""
