"""
Service layer for the AIPLabels API.

Services sit between routes and the protection / storage packages.

Usage:
    from aiplabels.server.services import LabelService

    service = LabelService(operations, storage, settings)
    result = await service.get_label(caller, blob_url)
"""

from aiplabels.server.services.label_service import LabelService

__all__ = ["LabelService"]
