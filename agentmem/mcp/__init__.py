"""MCP adapter: FastMCP server exposing the memory tools."""
