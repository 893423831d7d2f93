"""Versioned request/response contracts for the orchestrator's HTTP surface."""
