# API routes package

from . import chat, mcp

__all__ = [
    "chat",
    "mcp",
]
