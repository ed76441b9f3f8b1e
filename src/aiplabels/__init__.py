"""
AIPLabels - sensitivity labels for files in Azure storage.

This package provides:
- Server: FastAPI API service over the Microsoft Information Protection SDK
- Web: browser-facing client that signs users in and calls the API
- CLI: Command-line entry points
"""

__version__ = "1.0.0"
