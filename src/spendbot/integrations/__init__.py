"""Adapters for external services used by SpendBot (image hosting, retries)."""
