"""Modification agent adapters."""
