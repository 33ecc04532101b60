"""Drive Search MCP - Fast fuzzy search over Google Drive file metadata.

Features:
- In-memory inverted index with typo-tolerant, prefix-aware matching
- Ranking boosted by recency and by how often a file is opened
- Incremental sync from the Drive change feed

Usage:
    drive-search-mcp              # Run MCP server (default)
    drive-search-mcp index        # Build the index from Drive
    drive-search-mcp sync         # Apply pending Drive changes
    drive-search-mcp status       # Show index statistics
    drive-search-mcp search QUERY # Search from the terminal
"""

from .cli import main
from .server import mcp

__all__ = ["main", "mcp"]
