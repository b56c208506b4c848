# API routes package

from . import discovery, mcp, oauth

__all__ = [
    "discovery",
    "mcp",
    "oauth",
]
