from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from src.clinical_docs.domain.errors import PersistenceError
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument, DocumentStatus
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.domain.models.queries import (
    DocumentFilters,
    DocumentSearch,
    DocumentStatistics,
    Page,
)
from src.clinical_docs.infra.db.repositories import (
    Derivation,
    DocumentRepository,
    DocumentVersionRepository,
    Mutation,
    OriginalMarker,
    WriteCondition,
)


def _matches(document: ClinicalDocument, organization_id: str, criteria: DocumentFilters) -> bool:
    if document.deleted or document.organization_id != organization_id:
        return False
    if criteria.encounter_id is not None and document.encounter_id != criteria.encounter_id:
        return False
    if criteria.kind is not None and document.kind != criteria.kind.value:  # type: ignore[attr-defined]
        return False
    if criteria.status is not None and document.status != criteria.status:
        return False
    if criteria.note_type is not None and getattr(document, "note_type", None) != criteria.note_type:
        return False
    if criteria.condition is not None and getattr(document, "condition", None) != criteria.condition:
        return False
    if criteria.from_date is not None and document.document_date < criteria.from_date:
        return False
    if criteria.to_date is not None and document.document_date > criteria.to_date:
        return False

    if isinstance(criteria, DocumentSearch):
        if criteria.patient_id is not None and document.patient_id != criteria.patient_id:
            return False
        if criteria.facility_id is not None and document.facility_id != criteria.facility_id:
            return False
        if criteria.created_by is not None and document.created_by != criteria.created_by:
            return False
        if criteria.text and criteria.text.lower() not in document.searchable_text().lower():
            return False
        if criteria.tags and not set(criteria.tags) & set(document.tags):
            return False
    return True


def _paginate(documents: Iterable[ClinicalDocument], page: Page) -> Tuple[List[ClinicalDocument], int]:
    ordered = sorted(documents, key=lambda d: (d.document_date, d.created_at), reverse=True)
    window = ordered[page.offset : page.offset + page.effective_limit]
    return [d.model_copy(deep=True) for d in window], len(ordered)


class InMemoryDocumentRepository(DocumentRepository):
    """Dictionary-backed document store.

    Used by tests and local development. A single store-level lock makes each
    conditional write atomic, standing in for the row lock a database would
    take. Documents are deep-copied on the way in and out so callers can
    never mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self._documents: Dict[UUID, ClinicalDocument] = {}
        self._lock = threading.Lock()

    def create(self, document: ClinicalDocument) -> ClinicalDocument:
        with self._lock:
            if document.id in self._documents:
                raise PersistenceError(f"Document {document.id} already exists")
            self._documents[document.id] = document.model_copy(deep=True)
        return document.model_copy(deep=True)

    def get(self, document_id: UUID) -> Optional[ClinicalDocument]:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None or document.deleted:
                return None
            return document.model_copy(deep=True)

    def conditional_update(
        self,
        document_id: UUID,
        condition: WriteCondition,
        mutate: Mutation,
        *,
        bump_revision: bool = True,
    ) -> ClinicalDocument:
        with self._lock:
            current = condition.check(document_id, self._documents.get(document_id))
            updated = mutate(current.model_copy(deep=True))
            if bump_revision:
                updated = updated.model_copy(update={"revision": current.revision + 1})
            self._documents[document_id] = updated
            return updated.model_copy(deep=True)

    def create_derived(
        self,
        original_id: UUID,
        condition: WriteCondition,
        derive: Derivation,
        mark_original: OriginalMarker,
    ) -> Tuple[ClinicalDocument, ClinicalDocument]:
        with self._lock:
            original = condition.check(original_id, self._documents.get(original_id))
            number = self._count_derived(original_id) + 1
            latest = self._documents.get(original.latest_amendment_id) if original.latest_amendment_id else None
            derived = derive(
                original.model_copy(deep=True),
                number,
                latest.model_copy(deep=True) if latest is not None else None,
            )
            if derived.id in self._documents:
                raise PersistenceError(f"Document {derived.id} already exists")
            updated_original = mark_original(original.model_copy(deep=True), derived)
            updated_original = updated_original.model_copy(update={"revision": original.revision + 1})
            self._documents[derived.id] = derived.model_copy(deep=True)
            self._documents[original_id] = updated_original
            return derived.model_copy(deep=True), updated_original.model_copy(deep=True)

    def add_viewer(self, document_id: UUID, viewer_id: str) -> bool:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None or viewer_id in document.viewed_by:
                return False
            self._documents[document_id] = document.model_copy(
                update={"viewed_by": [*document.viewed_by, viewer_id]}
            )
            return True

    def count_derived(self, original_id: UUID) -> int:
        with self._lock:
            return self._count_derived(original_id)

    def _count_derived(self, original_id: UUID) -> int:
        return sum(1 for d in self._documents.values() if d.original_document_id == original_id)

    def list_derived(self, original_id: UUID) -> List[ClinicalDocument]:
        with self._lock:
            derived = [d for d in self._documents.values() if d.original_document_id == original_id]
            derived.sort(key=lambda d: d.amendment_number or 0)
            return [d.model_copy(deep=True) for d in derived]

    def list_by_patient(
        self,
        organization_id: str,
        patient_id: str,
        filters: DocumentFilters,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        with self._lock:
            matching = [
                d
                for d in self._documents.values()
                if d.patient_id == patient_id and _matches(d, organization_id, filters)
            ]
            return _paginate(matching, page)

    def search(
        self,
        organization_id: str,
        criteria: DocumentSearch,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        with self._lock:
            matching = [d for d in self._documents.values() if _matches(d, organization_id, criteria)]
            return _paginate(matching, page)

    def statistics(
        self,
        organization_id: str,
        facility_id: Optional[str],
        since: datetime,
    ) -> DocumentStatistics:
        by_status: Dict[DocumentStatus, int] = defaultdict(int)
        total = recent = 0
        with self._lock:
            for document in self._documents.values():
                if document.deleted or document.organization_id != organization_id:
                    continue
                if facility_id is not None and document.facility_id != facility_id:
                    continue
                total += 1
                by_status[document.status] += 1
                if document.document_date > since:
                    recent += 1
        stats = DocumentStatistics(total=total, recent=recent)
        stats.by_status.update(by_status)
        stats.needs_finalization = stats.by_status[DocumentStatus.DRAFT]
        return stats


class InMemoryDocumentVersionRepository(DocumentVersionRepository):
    def __init__(self) -> None:
        self._versions: Dict[UUID, List[DocumentVersion]] = defaultdict(list)
        self._lock = threading.Lock()

    def append(self, version: DocumentVersion) -> None:
        with self._lock:
            self._versions[version.document_id].append(version)

    def list_for_document(self, document_id: UUID) -> List[DocumentVersion]:
        with self._lock:
            entries = list(self._versions.get(document_id, []))
        return sorted(entries, key=lambda v: (v.version, v.changed_at), reverse=True)


document_repository: DocumentRepository = InMemoryDocumentRepository()
version_repository: DocumentVersionRepository = InMemoryDocumentVersionRepository()
