"""
erp_services -- Package init and public API.

Responsibility:
    Orchestration over the kernel engines: posting documents to both
    ledgers, tracking validation, the document lifecycle and the JSON
    mirror of the in-process API.  This is the only layer that opens
    sessions and commits.

Architecture position:
    Services -- above erp_kernel and erp_config.

    Dependency direction:
        erp_services/ -> erp_kernel/, erp_config/  (allowed)
        erp_kernel/   -> erp_services/             (FORBIDDEN)
"""

from erp_services.document_lifecycle import (
    ConfirmationResult,
    DocumentFilter,
    DocumentLineInput,
    DocumentService,
)
from erp_services.posting_orchestrator import PostingOrchestrator, PostingOutcome
from erp_services.tracking import TrackingValidator

__all__ = [
    "ConfirmationResult",
    "DocumentFilter",
    "DocumentLineInput",
    "DocumentService",
    "PostingOrchestrator",
    "PostingOutcome",
    "TrackingValidator",
]
