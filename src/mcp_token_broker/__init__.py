"""OAuth 2.1 token broker for MCP clients."""

__version__ = "0.1.0"
