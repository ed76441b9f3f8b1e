"""
AIPLabels Server - FastAPI-based API service.

This module provides:
- REST endpoints for listing, reading, applying and removing labels
- Bearer authentication and on-behalf-of token exchange
- Health and Prometheus metrics endpoints
"""


def __getattr__(name: str):
    """Lazy import to avoid loading heavy dependencies when only config is needed."""
    if name == "create_app":
        from aiplabels.server.app import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["create_app"]
