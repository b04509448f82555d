"""SSH MCP gateway: profile-driven remote command execution."""

__version__ = "2.0.0"
