"""Tool registry, result envelope and built-in tools."""
