"""
Data types exchanged with the protection SDK.

These are plain dataclasses; the SDK binding converts them to and from its
own objects. Nothing here validates policy, the SDK does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class AssignmentMethod(str, Enum):
    """How a label was (or is being) assigned."""

    STANDARD = "standard"
    PRIVILEGED = "privileged"
    AUTO = "auto"


class Rights:
    """Well-known usage rights understood by the protection service."""

    VIEW = "VIEW"
    EDIT = "EDIT"
    OWNER = "OWNER"
    EXPORT = "EXPORT"
    PRINT = "PRINT"
    REPLY = "REPLY"
    REPLY_ALL = "REPLYALL"
    FORWARD = "FORWARD"
    EXTRACT = "EXTRACT"
    COMMENT = "COMMENT"
    OBJECT_MODEL = "OBJMODEL"
    VIEW_RIGHTS_DATA = "VIEWRIGHTSDATA"


@dataclass
class Label:
    """A sensitivity label and its sub-labels, in policy order."""

    id: str
    name: str
    description: str = ""
    sensitivity: int = 0
    children: list[Label] = field(default_factory=list)
    tooltip: str = ""
    color: str | None = None
    is_active: bool = True
    parent_id: str | None = None

    def to_dict(self, max_depth: int | None = None) -> dict:
        """Serialize the label; children below *max_depth* levels are dropped.

        ``max_depth=None`` keeps the whole tree, ``0`` keeps no children.
        """
        if max_depth is None:
            children = [c.to_dict() for c in self.children]
        elif max_depth > 0:
            children = [c.to_dict(max_depth - 1) for c in self.children]
        else:
            children = []
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "sensitivity": self.sensitivity,
            "children": children,
            "tooltip": self.tooltip,
            "color": self.color,
            "is_active": self.is_active,
            "parent_id": self.parent_id,
        }

    def walk(self):
        """Yield this label and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


def find_label(labels: list[Label], label_id: str) -> Label | None:
    """Search a label forest for *label_id* at any depth."""
    for root in labels:
        for label in root.walk():
            if label.id == label_id:
                return label
    return None


@dataclass
class LabelingOptions:
    """Options passed to the SDK with a label change."""

    assignment_method: AssignmentMethod = AssignmentMethod.STANDARD
    justification_message: str | None = None
    is_downgrade_justified: bool = False
    extended_properties: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class ProtectionSettings:
    """Opaque protection settings forwarded to the SDK."""

    pfile_extension_behavior: str | None = None
    delegated_user_email: str | None = None


@dataclass
class UserRights:
    """A group of principals sharing the same rights."""

    users: list[str]
    rights: list[str]


@dataclass
class ProtectionDescriptor:
    """Ad-hoc protection: explicit rights per principal, no template."""

    user_rights: list[UserRights]
    name: str | None = None
    description: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any(ur.users and ur.rights for ur in self.user_rights)


@dataclass
class ContentLabel:
    """The label currently assigned to a piece of content."""

    label: Label
    is_protection_applied_from_label: bool = False
    assignment_method: AssignmentMethod = AssignmentMethod.STANDARD


@dataclass
class ContentSource:
    """Input for a content handler: in-memory bytes or a file path, never both."""

    file_name: str
    data: bytes | None = None
    path: str | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise ValueError("ContentSource needs exactly one of data or path")
        if not self.file_name:
            raise ValueError("ContentSource needs a file name")

    @classmethod
    def from_bytes(cls, data: bytes, file_name: str) -> ContentSource:
        return cls(file_name=file_name, data=data)

    @classmethod
    def from_path(cls, path: str | Path) -> ContentSource:
        path = Path(path)
        return cls(file_name=path.name, path=str(path))

    @property
    def is_stream(self) -> bool:
        return self.data is not None
