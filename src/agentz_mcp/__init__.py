"""Agentz MCP: supervised coding-agent sessions with a durable event log."""

__version__ = "0.1.0"

__all__ = ["__version__"]
