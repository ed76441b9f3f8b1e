"""
Authentication module.

Provides:
- Bearer token validation for the API service (Azure AD)
- On-behalf-of token exchange for downstream resources
"""

# Lazy imports so that importing the broker does not pull in FastAPI


def __getattr__(name: str):
    """Lazy import to avoid loading heavy dependencies."""
    if name == "validate_token":
        from aiplabels.auth.oauth import validate_token
        return validate_token
    elif name == "TokenClaims":
        from aiplabels.auth.oauth import TokenClaims
        return TokenClaims
    elif name == "CallerIdentity":
        from aiplabels.auth.oauth import CallerIdentity
        return CallerIdentity
    elif name == "get_caller":
        from aiplabels.auth.dependencies import get_caller
        return get_caller
    elif name == "OnBehalfOfBroker":
        from aiplabels.auth.obo import OnBehalfOfBroker
        return OnBehalfOfBroker
    elif name == "to_scope":
        from aiplabels.auth.obo import to_scope
        return to_scope

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "validate_token",
    "TokenClaims",
    "CallerIdentity",
    "get_caller",
    "OnBehalfOfBroker",
    "to_scope",
]
