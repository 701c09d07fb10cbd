"""HTTP and MCP surface of the broker."""

from .main import BrokerMCP, create_server, main  # noqa: F401

__all__ = ["BrokerMCP", "create_server", "main"]
