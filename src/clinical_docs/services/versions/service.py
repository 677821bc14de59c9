from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID, uuid4

from src.clinical_docs.clock import Clock, utc_now
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.infra.db.repositories import DocumentVersionRepository

logger = logging.getLogger(__name__)


class VersionRecorder:
    """Appends content snapshots to the document history log.

    Snapshots are taken after the primary write has committed. A failed
    snapshot is logged and dropped; it never fails the finalize or amendment
    that triggered it.
    """

    def __init__(self, versions: DocumentVersionRepository, *, clock: Clock = utc_now) -> None:
        self._versions = versions
        self._clock = clock

    def snapshot(self, document: ClinicalDocument, reason: str, actor: str) -> Optional[DocumentVersion]:
        try:
            entry = DocumentVersion(
                id=uuid4(),
                document_id=document.id,
                version=document.version,
                content_snapshot=document.content_snapshot(),
                changed_by=actor,
                changed_at=self._clock(),
                reason=reason,
            )
            self._versions.append(entry)
        except Exception:
            logger.warning(
                "Failed to record version snapshot for document %s (version %s)",
                document.id,
                document.version,
                exc_info=True,
            )
            return None

        logger.info("Recorded version snapshot for document %s (version %s)", document.id, document.version)
        return entry

    def history(self, document_id: UUID) -> List[DocumentVersion]:
        return self._versions.list_for_document(document_id)
