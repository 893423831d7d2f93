"""Ephemeral agent lifecycle orchestrator."""
