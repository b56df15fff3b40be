"""Closed-network addressing."""
