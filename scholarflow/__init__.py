"""Orchestration, scheduling, rate limiting and cost accounting for multi-agent paper processing."""

__version__ = "0.1.0"
