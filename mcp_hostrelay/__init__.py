"""MCP server for hostrelay."""
