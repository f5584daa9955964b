"""mcp-relay: supervise local MCP stdio servers and expose their tool catalogs."""

from .__version__ import __version__

__all__ = ["__version__"]
