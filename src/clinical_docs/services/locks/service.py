from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from src.clinical_docs.clock import Clock, utc_now
from src.clinical_docs.config import settings
from src.clinical_docs.domain.errors import LockConflict
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument, DocumentStatus
from src.clinical_docs.domain.models.document_lock import DocumentLock
from src.clinical_docs.infra.db.repositories import DocumentRepository, WriteCondition
from src.clinical_docs.tenancy import get_current_tenant

logger = logging.getLogger(__name__)


class _NotLockHolder(Exception):
    """Raised inside a release mutation to abort the write."""


class LockManager:
    """Advisory per-document edit locks stored on the document itself.

    There is no lock service and no in-process mutex: acquire and release are
    single conditional writes against the document store. A lock is never
    renewed; once its age exceeds the staleness threshold any actor may take
    it over.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        *,
        clock: Clock = utc_now,
        stale_after: Optional[timedelta] = None,
    ) -> None:
        self._documents = documents
        self._clock = clock
        self.stale_after = stale_after or timedelta(minutes=settings.lock_stale_after_minutes)

    def acquire(self, document_id: UUID, actor: str) -> bool:
        """Take (or refresh, or take over a stale) lock for ``actor``.

        Returns False only when another actor holds a live lock. Unknown
        documents raise ``DocumentNotFound`` and non-draft documents raise
        ``InvalidStateTransition``.
        """

        now = self._clock()
        condition = WriteCondition(
            organization_id=get_current_tenant(),
            now=now,
            action="lock",
            writable_by=actor,
            stale_after=self.stale_after,
        )

        def _lock(document: ClinicalDocument) -> ClinicalDocument:
            if document.lock is not None and not document.lock.is_held_by(actor):
                logger.info(
                    "Taking over stale lock on document %s from %s (held since %s)",
                    document.id,
                    document.lock.locked_by,
                    document.lock.locked_at.isoformat(),
                )
            return document.model_copy(update={"lock": DocumentLock(locked_by=actor, locked_at=now)})

        try:
            self._documents.conditional_update(document_id, condition, _lock, bump_revision=False)
        except LockConflict as exc:
            logger.info("Lock on document %s refused for %s: held by %s", document_id, actor, exc.locked_by)
            return False
        return True

    def release(self, document_id: UUID, actor: str) -> bool:
        """Clear the lock if, and only if, ``actor`` currently holds it."""

        condition = WriteCondition(
            organization_id=get_current_tenant(),
            now=self._clock(),
            action="unlock",
            statuses=frozenset(DocumentStatus),
            stale_after=self.stale_after,
        )

        def _unlock(document: ClinicalDocument) -> ClinicalDocument:
            if document.lock is None or not document.lock.is_held_by(actor):
                raise _NotLockHolder()
            return document.model_copy(update={"lock": None})

        try:
            self._documents.conditional_update(document_id, condition, _unlock, bump_revision=False)
        except _NotLockHolder:
            return False
        return True
