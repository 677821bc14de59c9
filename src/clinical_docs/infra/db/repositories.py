from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, FrozenSet, List, Mapping, Optional, Tuple
from uuid import UUID

from src.clinical_docs.domain.errors import (
    ConcurrencyConflict,
    DocumentNotFound,
    InvalidStateTransition,
    LockConflict,
)
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument, DocumentStatus
from src.clinical_docs.domain.models.document_lock import DEFAULT_LOCK_STALE_AFTER
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.domain.models.queries import (
    DocumentFilters,
    DocumentSearch,
    DocumentStatistics,
    Page,
)

Mutation = Callable[[ClinicalDocument], ClinicalDocument]
# (original, number, latest amendment of the original or None)
Derivation = Callable[[ClinicalDocument, int, Optional[ClinicalDocument]], ClinicalDocument]
OriginalMarker = Callable[[ClinicalDocument, ClinicalDocument], ClinicalDocument]

DRAFT_ONLY: FrozenSet[DocumentStatus] = frozenset({DocumentStatus.DRAFT})


@dataclass(frozen=True)
class WriteCondition:
    """Preconditions a store evaluates inside the same atomic step as the write.

    Checks run in a fixed order so callers always get the most meaningful
    error: existence (and organization scope), lifecycle status, derivation,
    edit lock, then the caller's expected revision.
    """

    organization_id: str
    now: datetime
    action: str = "modify"
    statuses: FrozenSet[DocumentStatus] = DRAFT_ONLY
    writable_by: Optional[str] = None
    stale_after: timedelta = DEFAULT_LOCK_STALE_AFTER
    expected_revision: Optional[int] = None
    allow_derived: bool = True

    def check(self, document_id: UUID, document: Optional[ClinicalDocument]) -> ClinicalDocument:
        if document is None or document.deleted or document.organization_id != self.organization_id:
            raise DocumentNotFound(document_id)

        if document.status not in self.statuses:
            raise InvalidStateTransition(
                f"Cannot {self.action} document {document_id} in status '{document.status.value}'",
                document_id=document_id,
                status=document.status.value,
            )

        if not self.allow_derived and document.is_amendment:
            raise InvalidStateTransition(
                f"Cannot {self.action} document {document_id}: it is itself an amendment of "
                f"{document.original_document_id}",
                document_id=document_id,
                status=document.status.value,
            )

        lock = document.lock
        if self.writable_by is not None and lock is not None and lock.blocks(self.writable_by, self.now, self.stale_after):
            raise LockConflict(document_id, lock.locked_by, lock.locked_at)

        if self.expected_revision is not None and document.revision != self.expected_revision:
            raise ConcurrencyConflict(
                document_id,
                expected_revision=self.expected_revision,
                actual_revision=document.revision,
            )

        return document


class DocumentRepository(ABC):
    """Persistence-agnostic store for clinical documents.

    Every mutation is funnelled through :meth:`conditional_update` or
    :meth:`create_derived`, which must evaluate the given
    :class:`WriteCondition` and apply the change as one atomic step, so two
    concurrent callers can never both succeed against the same precondition.
    Implementations raise the condition's typed errors unchanged and wrap
    their own failures in ``PersistenceError``.
    """

    @abstractmethod
    def create(self, document: ClinicalDocument) -> ClinicalDocument:
        raise NotImplementedError

    @abstractmethod
    def get(self, document_id: UUID) -> Optional[ClinicalDocument]:
        """Return the document, or None when unknown or soft-deleted."""

        raise NotImplementedError

    @abstractmethod
    def conditional_update(
        self,
        document_id: UUID,
        condition: WriteCondition,
        mutate: Mutation,
        *,
        bump_revision: bool = True,
    ) -> ClinicalDocument:
        raise NotImplementedError

    @abstractmethod
    def create_derived(
        self,
        original_id: UUID,
        condition: WriteCondition,
        derive: Derivation,
        mark_original: OriginalMarker,
    ) -> Tuple[ClinicalDocument, ClinicalDocument]:
        """Insert a document derived from ``original_id``.

        The derivation number passed to ``derive`` is the count of documents
        already derived from the original plus one. ``derive`` also receives
        the document named by the original's ``latest_amendment_id``, or None.
        Both are read in the same atomic step as the insert. Returns
        ``(derived, updated_original)``.
        """

        raise NotImplementedError

    @abstractmethod
    def add_viewer(self, document_id: UUID, viewer_id: str) -> bool:
        """Idempotently record ``viewer_id``. Returns True if newly added."""

        raise NotImplementedError

    @abstractmethod
    def count_derived(self, original_id: UUID) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_derived(self, original_id: UUID) -> List[ClinicalDocument]:
        """Documents derived from ``original_id``, oldest amendment number first."""

        raise NotImplementedError

    @abstractmethod
    def list_by_patient(
        self,
        organization_id: str,
        patient_id: str,
        filters: DocumentFilters,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        raise NotImplementedError

    @abstractmethod
    def search(
        self,
        organization_id: str,
        criteria: DocumentSearch,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        raise NotImplementedError

    @abstractmethod
    def statistics(
        self,
        organization_id: str,
        facility_id: Optional[str],
        since: datetime,
    ) -> DocumentStatistics:
        raise NotImplementedError

    # Convenience commands built on the atomic primitive.

    def update(
        self,
        document_id: UUID,
        changes: Mapping[str, Any],
        actor: str,
        condition: WriteCondition,
    ) -> ClinicalDocument:
        """Apply already-validated content ``changes`` to a draft."""

        def _apply(document: ClinicalDocument) -> ClinicalDocument:
            return document.model_copy(
                update={**changes, "updated_by": actor, "updated_at": condition.now}
            )

        return self.conditional_update(document_id, condition, _apply)

    def soft_delete(
        self,
        document_id: UUID,
        actor: str,
        reason: str,
        condition: WriteCondition,
    ) -> bool:
        def _delete(document: ClinicalDocument) -> ClinicalDocument:
            return document.model_copy(
                update={
                    "deleted": True,
                    "deleted_at": condition.now,
                    "deleted_by": actor,
                    "deletion_reason": reason,
                    "lock": None,
                    "updated_at": condition.now,
                }
            )

        self.conditional_update(document_id, condition, _delete)
        return True


class DocumentVersionRepository(ABC):
    @abstractmethod
    def append(self, version: DocumentVersion) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_for_document(self, document_id: UUID) -> List[DocumentVersion]:
        """Snapshots for a document, newest first."""

        raise NotImplementedError
