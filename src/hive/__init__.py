"""Hive - multi-agent software change orchestrator."""

__version__ = "0.1.0"
