"""MCP OAuth gateway backend."""
