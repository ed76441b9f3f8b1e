"""
Protection engine integration.

Provides:
- Label, ContentLabel, ContentSource and the other SDK data types
- ProtectionSession: profile -> engine -> handler lifecycle
- EnginePool: identity-keyed engine cache with TTL and LRU eviction
- LabelOperations: list, get, apply and remove labels
- MipRuntime: Microsoft Information Protection SDK binding (pythonnet)
"""

from .mip import MipRuntime, is_mip_available
from .models import (
    AssignmentMethod,
    ContentLabel,
    ContentSource,
    Label,
    LabelingOptions,
    ProtectionDescriptor,
    ProtectionSettings,
    Rights,
    UserRights,
    find_label,
)
from .pool import DelegatedTokenSource, EnginePool, PooledEngine
from .service import NO_LABEL_MESSAGE, LabelOperations, OperationResult
from .session import ProtectionSession, SessionState

__all__ = [
    # Models
    "AssignmentMethod",
    "ContentLabel",
    "ContentSource",
    "Label",
    "LabelingOptions",
    "ProtectionDescriptor",
    "ProtectionSettings",
    "Rights",
    "UserRights",
    "find_label",
    # Lifecycle
    "ProtectionSession",
    "SessionState",
    "EnginePool",
    "PooledEngine",
    "DelegatedTokenSource",
    # Operations
    "LabelOperations",
    "OperationResult",
    "NO_LABEL_MESSAGE",
    # MIP SDK
    "MipRuntime",
    "is_mip_available",
]
