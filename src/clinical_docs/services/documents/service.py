from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import ValidationError

from src.clinical_docs.clock import Clock, as_utc, utc_now
from src.clinical_docs.config import settings
from src.clinical_docs.domain.errors import (
    DocumentNotFound,
    InvalidDocumentData,
    InvalidStateTransition,
    ValidationIncomplete,
)
from src.clinical_docs.domain.models.clinical_document import (
    DOCUMENT_TYPES,
    ClinicalDocument,
    DerivationKind,
    DocumentKind,
    DocumentStatus,
)
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.domain.models.queries import DocumentFilters, DocumentSearch, DocumentStatistics, Page
from src.clinical_docs.infra.db import inmemory
from src.clinical_docs.infra.db.repositories import (
    DRAFT_ONLY,
    DocumentRepository,
    DocumentVersionRepository,
    WriteCondition,
)
from src.clinical_docs.services.amendments.service import AmendmentEngine, AmendmentPolicy
from src.clinical_docs.services.audit.service import AuditService, audit_service
from src.clinical_docs.services.audit.view_tracker import ViewTracker
from src.clinical_docs.services.locks.service import LockManager
from src.clinical_docs.services.versions.service import VersionRecorder
from src.clinical_docs.tenancy import get_current_tenant

logger = logging.getLogger(__name__)

# Envelope fields a caller may set when creating a document, on top of the
# variant's editable content fields.
CREATE_FIELDS = frozenset({"patient_id", "encounter_id", "facility_id", "document_date"})


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class DocumentLifecycleService:
    """Draft, finalize and amend clinical documents.

    Commands are validated here and then expressed as a single conditional
    write against the document store, so every precondition (status, edit
    lock, expected revision) is evaluated atomically with the change. Version
    snapshots, view tracking and audit events run after the write has
    committed and never change the command's outcome.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        versions: DocumentVersionRepository,
        *,
        clock: Clock = utc_now,
        lock_stale_after: Optional[timedelta] = None,
        amendment_policy: Optional[AmendmentPolicy] = None,
        audit: AuditService = audit_service,
    ) -> None:
        self._documents = documents
        self._clock = clock
        self._audit = audit
        self.locks = LockManager(documents, clock=clock, stale_after=lock_stale_after)
        self.versions = VersionRecorder(versions, clock=clock)
        self.views = ViewTracker(documents, audit=audit)
        self.amendments = AmendmentEngine(documents, clock=clock, policy=amendment_policy)

    # Commands

    def create_document(self, kind: DocumentKind | str, data: Mapping[str, Any], actor: str) -> ClinicalDocument:
        try:
            kind = DocumentKind(kind)
        except ValueError as exc:
            raise InvalidDocumentData(f"Unknown document kind '{kind}'") from exc

        model = DOCUMENT_TYPES[kind]
        rejected = sorted(set(data) - CREATE_FIELDS - set(model.editable_fields()))
        if rejected:
            raise InvalidDocumentData("Fields cannot be set on create: " + ", ".join(rejected))

        now = self._clock()
        payload: Dict[str, Any] = dict(data)
        if payload.get("document_date") is None:
            payload["document_date"] = now
        payload.update(
            id=uuid4(),
            kind=kind.value,
            organization_id=get_current_tenant(),
            status=DocumentStatus.DRAFT,
            version=1,
            revision=1,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        try:
            document = model.model_validate(payload)
        except ValidationError as exc:
            raise InvalidDocumentData(str(exc)) from exc

        created = self._documents.create(document)
        logger.info("Created %s %s for patient %s", kind.value, created.id, created.patient_id)
        self._log("created", created, actor)
        return created

    def get_document(self, document_id: UUID, actor: str) -> ClinicalDocument:
        """Return a document and record ``actor`` as a viewer."""

        document = self._load(document_id)
        if self.views.record_view(document_id, actor) and actor not in document.viewed_by:
            document = document.model_copy(update={"viewed_by": [*document.viewed_by, actor]})
        return document

    def update_document(
        self,
        document_id: UUID,
        fields: Mapping[str, Any],
        actor: str,
        *,
        expected_revision: Optional[int] = None,
    ) -> ClinicalDocument:
        if not fields:
            raise InvalidDocumentData("No fields to update")

        current = self._load(document_id)
        if not current.is_draft:
            raise InvalidStateTransition(
                f"Cannot edit document {document_id} in status '{current.status.value}'",
                document_id=document_id,
                status=current.status.value,
            )
        changes = current.validated_changes(fields)

        condition = self._condition("edit", actor=actor, expected_revision=expected_revision)
        updated = self._documents.update(document_id, changes, actor, condition)
        self._log("updated", updated, actor, fields=sorted(changes))
        return updated

    def finalize_document(
        self,
        document_id: UUID,
        actor: str,
        attestation: Optional[str],
        *,
        expected_revision: Optional[int] = None,
    ) -> ClinicalDocument:
        """Make a draft permanently immutable.

        Status, lock and revision are checked first, then the variant's
        completeness rules, then the attestation. Exactly one of several
        concurrent finalizes can pass the draft precondition; the rest fail
        with ``InvalidStateTransition``.
        """

        now = self._clock()

        def _finalize(document: ClinicalDocument) -> ClinicalDocument:
            document.validate_completeness()
            if _is_blank(attestation):
                raise ValidationIncomplete(["attestation"], document_id=document.id)
            return document.model_copy(
                update={
                    "status": DocumentStatus.FINALIZED,
                    "version": document.version + 1,
                    "lock": None,
                    "finalized_by": actor,
                    "finalized_at": now,
                    "attestation": attestation.strip(),
                    "updated_by": actor,
                    "updated_at": now,
                }
            )

        condition = self._condition("finalize", actor=actor, expected_revision=expected_revision, now=now)
        finalized = self._documents.conditional_update(document_id, condition, _finalize)
        logger.info("Finalized document %s at version %s", finalized.id, finalized.version)

        self.versions.snapshot(finalized, "Finalization", actor)
        self._log("finalized", finalized, actor, version=finalized.version)
        return finalized

    def create_amendment(
        self,
        original_id: UUID,
        reason: str,
        changes: str,
        section: Optional[str],
        actor: str,
    ) -> ClinicalDocument:
        amendment, original = self.amendments.amend(
            original_id, reason=reason, changes=changes, section=section, actor=actor
        )
        self.versions.snapshot(amendment, f"Amendment {amendment.amendment_number}: {reason}", actor)
        self._log(
            "amended",
            amendment,
            actor,
            original_document_id=str(original.id),
            amendment_number=amendment.amendment_number,
        )
        return amendment

    def create_addendum(self, document_id: UUID, content: str, reason: str, actor: str) -> ClinicalDocument:
        addendum, original = self.amendments.addend(document_id, content=content, reason=reason, actor=actor)
        self.versions.snapshot(addendum, f"Addendum {addendum.amendment_number}: {reason}", actor)
        self._log(
            "addended",
            addendum,
            actor,
            original_document_id=str(original.id),
            amendment_number=addendum.amendment_number,
        )
        return addendum

    def lock_document(self, document_id: UUID, actor: str) -> bool:
        acquired = self.locks.acquire(document_id, actor)
        self._audit.log_event(
            action="locked" if acquired else "lock_refused",
            resource_type="clinical_document",
            resource_id=str(document_id),
            subject=actor,
        )
        return acquired

    def unlock_document(self, document_id: UUID, actor: str) -> bool:
        released = self.locks.release(document_id, actor)
        if released:
            self._audit.log_event(
                action="unlocked",
                resource_type="clinical_document",
                resource_id=str(document_id),
                subject=actor,
            )
        return released

    def delete_document(self, document_id: UUID, actor: str, reason: str) -> bool:
        """Soft-delete a draft. Finalized records are never removed."""

        if _is_blank(reason):
            raise InvalidDocumentData("A deletion reason is required")

        condition = self._condition("delete", actor=actor)
        deleted = self._documents.soft_delete(document_id, actor, reason.strip(), condition)
        logger.info("Soft-deleted document %s", document_id)
        self._audit.log_event(
            action="deleted",
            resource_type="clinical_document",
            resource_id=str(document_id),
            subject=actor,
        )
        return deleted

    # Queries

    def list_by_patient(
        self,
        patient_id: str,
        filters: Optional[DocumentFilters] = None,
        page: Optional[Page] = None,
    ) -> Tuple[List[ClinicalDocument], int]:
        filters = _normalize_dates(filters or DocumentFilters())
        return self._documents.list_by_patient(get_current_tenant(), patient_id, filters, page or Page())

    def search(
        self,
        criteria: Optional[DocumentSearch] = None,
        page: Optional[Page] = None,
    ) -> Tuple[List[ClinicalDocument], int]:
        criteria = _normalize_dates(criteria or DocumentSearch())
        return self._documents.search(get_current_tenant(), criteria, page or Page())

    def list_versions(self, document_id: UUID) -> List[DocumentVersion]:
        self._load(document_id)
        return self.versions.history(document_id)

    def list_amendments(self, original_id: UUID) -> List[ClinicalDocument]:
        """Amendments and addenda of ``original_id``, in numbering order."""

        self._load(original_id)
        return self._documents.list_derived(original_id)

    def get_current_revision(self, original_id: UUID) -> ClinicalDocument:
        """Return the latest amendment of a document, or the document itself.

        Addenda do not supersede content, so only amendments are considered.
        Passing an amendment id resolves to its original first.
        """

        document = self._load(original_id)
        if document.is_amendment and document.original_document_id is not None:
            document = self._load(document.original_document_id)

        amendments = [
            derived
            for derived in self._documents.list_derived(document.id)
            if derived.amendment_kind == DerivationKind.AMENDMENT
        ]
        return amendments[-1] if amendments else document

    def get_statistics(self, facility_id: Optional[str] = None) -> DocumentStatistics:
        since = self._clock() - timedelta(days=settings.recent_window_days)
        return self._documents.statistics(get_current_tenant(), facility_id, since)

    # Helpers

    def _load(self, document_id: UUID) -> ClinicalDocument:
        document = self._documents.get(document_id)
        if document is None or document.organization_id != get_current_tenant():
            raise DocumentNotFound(document_id)
        return document

    def _condition(
        self,
        action: str,
        *,
        actor: str,
        expected_revision: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> WriteCondition:
        return WriteCondition(
            organization_id=get_current_tenant(),
            now=now or self._clock(),
            action=action,
            statuses=DRAFT_ONLY,
            writable_by=actor,
            stale_after=self.locks.stale_after,
            expected_revision=expected_revision,
        )

    def _log(self, action: str, document: ClinicalDocument, actor: str, **extra: Any) -> None:
        self._audit.log_event(
            action=action,
            resource_type=document.kind,  # type: ignore[attr-defined]
            resource_id=str(document.id),
            subject=actor,
            extra={"patient_id": document.patient_id, **extra},
        )


def _normalize_dates(criteria: DocumentFilters) -> DocumentFilters:
    updates = {}
    if criteria.from_date is not None:
        updates["from_date"] = as_utc(criteria.from_date)
    if criteria.to_date is not None:
        updates["to_date"] = as_utc(criteria.to_date)
    return criteria.model_copy(update=updates) if updates else criteria


document_service = DocumentLifecycleService(inmemory.document_repository, inmemory.version_repository)
