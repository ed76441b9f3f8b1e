"""
Browser-facing web client for AIPLabels.

Signs users in with MSAL, calls the API service with their tokens and
moves files between the browser and blob storage.
"""


def __getattr__(name):
    if name == "create_web_app":
        from aiplabels.web.app import create_web_app
        return create_web_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["create_web_app"]
