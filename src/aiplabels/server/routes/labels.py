"""
Sensitivity label API endpoints.

Provides:
- List the caller's label tree
- Read the label of a stored file
- Apply a label (optionally with ad-hoc protection) and store the result
- Remove a label and store the result

Request and response bodies use camelCase on the wire. Operation failures
answer 200 with ``isSuccess=false``; a malformed storage URL (400), a
consent challenge (401) and a timeout (504) use the same envelope with a
non-2xx status.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aiplabels.exceptions import (
    AIPLabelsError,
    ConsentRequiredError,
    InvalidLocatorError,
    OperationTimeoutError,
)
from aiplabels.protection import Label, OperationResult, ProtectionDescriptor, UserRights
from aiplabels.server.dependencies import CallerDep, LabelServiceDep
from aiplabels.server.errors import challenge_headers, status_for

logger = logging.getLogger(__name__)

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# REQUEST/RESPONSE MODELS
class LabelResponse(CamelModel):
    """Sensitivity label with its sub-labels."""

    id: str
    name: str
    description: str = ""
    sensitivity: int = 0
    children: list[LabelResponse] = []
    tooltip: str = ""
    color: Optional[str] = None
    is_active: bool = True
    parent_id: Optional[str] = None

    @classmethod
    def from_label(cls, label: Label, max_depth: Optional[int] = None) -> LabelResponse:
        return cls.model_validate(label.to_dict(max_depth))


class UserRightsModel(CamelModel):
    users: list[str] = Field(min_length=1)
    rights: list[str] = Field(min_length=1)


class SetLabelRequest(CamelModel):
    """Apply ``labelId`` to the file at ``blobUrl``."""

    blob_url: str
    label_id: str = Field(min_length=1)
    justification_message: Optional[str] = None
    is_custom: bool = False
    user_rights_list: list[UserRightsModel] = []

    def descriptor(self) -> Optional[ProtectionDescriptor]:
        if not self.is_custom or not self.user_rights_list:
            return None
        return ProtectionDescriptor(
            user_rights=[UserRights(users=ur.users, rights=ur.rights) for ur in self.user_rights_list]
        )


class RemoveLabelRequest(CamelModel):
    """Remove the label from the file at ``blobUrl``."""

    blob_url: str
    justification_message: Optional[str] = None


class GetLabelRequest(CamelModel):
    """Read the label of the file at ``blobUrl``."""

    blob_url: str


class LabelOperationResponse(CamelModel):
    """Outcome of a label operation."""

    is_success: bool
    message: str = ""
    error_kind: Optional[str] = None
    label_id: Optional[str] = None
    label_name: Optional[str] = None
    is_protected: bool = False
    target_url: Optional[str] = None

    @classmethod
    def from_result(cls, result: OperationResult) -> LabelOperationResponse:
        return cls(
            is_success=result.success,
            message=result.message,
            error_kind=result.error_kind.value if result.error_kind else None,
            label_id=result.label.id if result.label else None,
            label_name=result.label.name if result.label else None,
            is_protected=result.is_protected,
            target_url=result.target_url,
        )


def _request_failure(exc: AIPLabelsError) -> JSONResponse:
    """Envelope for failures the caller has to act on."""
    body = LabelOperationResponse(
        is_success=False,
        message=exc.message,
        error_kind=exc.kind.value,
    )
    return JSONResponse(
        status_code=status_for(exc.kind),
        content=body.model_dump(by_alias=True),
        headers=challenge_headers(exc),
    )


_REQUEST_FAILURES = (InvalidLocatorError, ConsentRequiredError, OperationTimeoutError)


# LABEL ENDPOINTS
@router.get("", response_model=list[LabelResponse])
async def list_labels(
    caller: CallerDep,
    service: LabelServiceDep,
    max_depth: Optional[int] = Query(None, alias="maxDepth", ge=0),
) -> list[LabelResponse]:
    """
    List the caller's sensitivity labels as a tree.

    Labels keep the order the policy defines. ``maxDepth`` limits how many
    levels of sub-labels are included; omit it for the full tree.
    """
    labels = await service.list_labels(caller)
    return [LabelResponse.from_label(label, max_depth) for label in labels]


@router.post("/set", response_model=LabelOperationResponse)
async def set_label(
    request: SetLabelRequest,
    caller: CallerDep,
    service: LabelServiceDep,
):
    """Apply a label and upload the labeled file to the target container."""
    try:
        result = await service.set_label(
            caller,
            request.blob_url,
            request.label_id,
            justification=request.justification_message,
            descriptor=request.descriptor(),
        )
    except _REQUEST_FAILURES as e:
        return _request_failure(e)
    return LabelOperationResponse.from_result(result)


@router.post("/remove", response_model=LabelOperationResponse)
async def remove_label(
    request: RemoveLabelRequest,
    caller: CallerDep,
    service: LabelServiceDep,
):
    """Remove the label and upload the result to the target container."""
    try:
        result = await service.remove_label(
            caller,
            request.blob_url,
            justification=request.justification_message,
        )
    except _REQUEST_FAILURES as e:
        return _request_failure(e)
    return LabelOperationResponse.from_result(result)


@router.post("/get", response_model=LabelOperationResponse)
async def get_label(
    request: GetLabelRequest,
    caller: CallerDep,
    service: LabelServiceDep,
):
    """Read the label currently assigned to a stored file."""
    try:
        result = await service.get_label(caller, request.blob_url)
    except _REQUEST_FAILURES as e:
        return _request_failure(e)
    return LabelOperationResponse.from_result(result)
