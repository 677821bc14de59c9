from __future__ import annotations

import logging
from uuid import UUID

from src.clinical_docs.infra.db.repositories import DocumentRepository
from src.clinical_docs.services.audit.service import AuditService, audit_service

logger = logging.getLogger(__name__)


class ViewTracker:
    """Records which identities have read a document (record-access audit).

    Tracking is best-effort: any failure is logged and swallowed so a
    clinical read is never blocked by the audit trail.
    """

    def __init__(self, documents: DocumentRepository, audit: AuditService = audit_service) -> None:
        self._documents = documents
        self._audit = audit

    def record_view(self, document_id: UUID, actor: str) -> bool:
        try:
            added = self._documents.add_viewer(document_id, actor)
        except Exception:
            logger.warning("Failed to track view of document %s by %s", document_id, actor, exc_info=True)
            return False

        self._audit.log_event(
            action="viewed",
            resource_type="clinical_document",
            resource_id=str(document_id),
            subject=actor,
            extra={"first_view": added},
        )
        return added
