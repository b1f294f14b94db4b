"""Bosun MCP: chat-driven coding sessions backed by an assistant CLI."""

__version__ = "0.1.0"

__all__ = ["__version__"]
