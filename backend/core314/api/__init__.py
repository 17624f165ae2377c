"""Core314 HTTP API."""
