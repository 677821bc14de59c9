from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.clinical_docs.clock import as_utc, utc_now


class Base(DeclarativeBase):
    pass


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


class ClinicalDocumentORM(Base):
    """Single table for every document variant.

    Envelope fields are real columns so lifecycle preconditions and filters
    can be expressed in SQL. Variant content lives in the JSON ``body``
    column and is decoded into the pydantic variant exactly once, in
    :meth:`to_domain`. ``row_version`` is SQLAlchemy's optimistic
    concurrency counter: every UPDATE is issued as a compare-and-set on it.
    """

    __tablename__ = "clinical_documents"
    __table_args__ = (
        UniqueConstraint("original_document_id", "amendment_number", name="uq_clinical_documents_derivation"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    patient_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    encounter_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    facility_id: Mapped[str | None] = mapped_column(String, nullable=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    finalized_by: Mapped[str | None] = mapped_column(String, nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attestation: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_amendment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amendment_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    original_document_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    amendment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    amendment_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amendment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    latest_amendment_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Denormalized from the body so progress-note filters stay in SQL.
    note_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(16), nullable=True)

    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    addenda: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    search_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Comma-separated tag list, matched with a delimiter-wrapped LIKE.
    tags: Mapped[str | None] = mapped_column(String, nullable=True)

    created_by: Mapped[str] = mapped_column(String, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    document_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    views: Mapped[List["DocumentViewORM"]] = relationship(
        order_by="DocumentViewORM.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": row_version}

    @classmethod
    def from_domain(cls, document: "ClinicalDocument") -> "ClinicalDocumentORM":  # type: ignore[name-defined]
        orm = cls(id=document.id)
        orm.apply_domain(document)
        return orm

    def apply_domain(self, document: "ClinicalDocument") -> None:  # type: ignore[name-defined]
        """Copy every persisted field from the domain model except views."""

        self.kind = document.kind
        self.patient_id = document.patient_id
        self.encounter_id = document.encounter_id
        self.facility_id = document.facility_id
        self.organization_id = document.organization_id
        self.status = document.status.value
        self.version = document.version
        self.revision = document.revision
        self.locked_by = document.lock.locked_by if document.lock is not None else None
        self.locked_at = as_utc(document.lock.locked_at) if document.lock is not None else None
        self.finalized_by = document.finalized_by
        self.finalized_at = _utc(document.finalized_at)
        self.attestation = document.attestation
        self.is_amendment = document.is_amendment
        self.amendment_kind = _enum_value(document.amendment_kind)
        self.original_document_id = document.original_document_id
        self.amendment_reason = document.amendment_reason
        self.amendment_number = document.amendment_number
        self.amendment_date = _utc(document.amendment_date)
        self.latest_amendment_id = document.latest_amendment_id
        self.note_type = _enum_value(getattr(document, "note_type", None))
        self.condition = _enum_value(getattr(document, "condition", None))
        self.body = document.content_snapshot()
        self.addenda = [entry.model_dump(mode="json") for entry in document.addenda]
        self.search_text = document.searchable_text()
        self.tags = ",".join(document.tags) if document.tags else None
        self.created_by = document.created_by
        self.updated_by = document.updated_by
        self.document_date = as_utc(document.document_date)
        self.created_at = as_utc(document.created_at)
        self.updated_at = as_utc(document.updated_at)
        self.deleted = document.deleted
        self.deleted_at = _utc(document.deleted_at)
        self.deleted_by = document.deleted_by
        self.deletion_reason = document.deletion_reason

    def to_domain(self) -> "ClinicalDocument":  # type: ignore[name-defined]
        from src.clinical_docs.domain.models.clinical_document import clinical_document_adapter

        lock = None
        if self.locked_by is not None and self.locked_at is not None:
            lock = {"locked_by": self.locked_by, "locked_at": as_utc(self.locked_at)}

        payload: Dict[str, Any] = dict(self.body or {})
        payload.update(
            id=self.id,
            kind=self.kind,
            patient_id=self.patient_id,
            encounter_id=self.encounter_id,
            facility_id=self.facility_id,
            organization_id=self.organization_id,
            status=self.status,
            version=self.version,
            revision=self.revision,
            lock=lock,
            finalized_by=self.finalized_by,
            finalized_at=_utc(self.finalized_at),
            attestation=self.attestation,
            is_amendment=self.is_amendment,
            amendment_kind=self.amendment_kind,
            original_document_id=self.original_document_id,
            amendment_reason=self.amendment_reason,
            amendment_number=self.amendment_number,
            amendment_date=_utc(self.amendment_date),
            latest_amendment_id=self.latest_amendment_id,
            addenda=self.addenda or [],
            tags=self.tags.split(",") if self.tags else [],
            created_by=self.created_by,
            updated_by=self.updated_by,
            viewed_by=[view.viewer_id for view in self.views],
            document_date=as_utc(self.document_date),
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
            deleted=self.deleted,
            deleted_at=_utc(self.deleted_at),
            deleted_by=self.deleted_by,
            deletion_reason=self.deletion_reason,
        )
        return clinical_document_adapter.validate_python(payload)


class DocumentViewORM(Base):
    """One row per (document, viewer); the unique constraint is the dedup."""

    __tablename__ = "document_views"
    __table_args__ = (UniqueConstraint("document_id", "viewer_id", name="uq_document_views_viewer"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("clinical_documents.id"), nullable=False, index=True)
    viewer_id: Mapped[str] = mapped_column(String, nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)


class DocumentVersionORM(Base):
    __tablename__ = "document_versions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    document_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    content_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    changed_by: Mapped[str] = mapped_column(String, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @classmethod
    def from_domain(cls, version: "DocumentVersion") -> "DocumentVersionORM":  # type: ignore[name-defined]
        return cls(
            id=version.id,
            document_id=version.document_id,
            version=version.version,
            content_snapshot=version.content_snapshot,
            changed_by=version.changed_by,
            changed_at=as_utc(version.changed_at),
            reason=version.reason,
        )

    def to_domain(self) -> "DocumentVersion":  # type: ignore[name-defined]
        from src.clinical_docs.domain.models.document_version import DocumentVersion

        return DocumentVersion(
            id=self.id,
            document_id=self.document_id,
            version=self.version,
            content_snapshot=self.content_snapshot or {},
            changed_by=self.changed_by,
            changed_at=as_utc(self.changed_at),
            reason=self.reason,
        )
