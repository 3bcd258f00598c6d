"""Shared helpers (logging, citations)."""
