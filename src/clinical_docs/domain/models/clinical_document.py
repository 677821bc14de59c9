from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, ClassVar, Dict, List, Literal, Mapping, Optional, Tuple, Type, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from src.clinical_docs.clock import as_utc
from src.clinical_docs.domain.errors import InvalidDocumentData, ValidationIncomplete
from src.clinical_docs.domain.models.clinical_payloads import (
    Addendum,
    ClinicalOrder,
    ConsultationDetails,
    Diagnosis,
    DischargeDetails,
    FollowUp,
    Intervention,
    MedicationAdministration,
    MedicationEntry,
    ProcedureDetails,
    ShiftDetails,
    VitalSigns,
)
from src.clinical_docs.domain.models.document_lock import DocumentLock


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    AMENDED = "amended"
    ADDENDED = "addended"


class DocumentKind(str, Enum):
    SOAP_NOTE = "soap_note"
    PROGRESS_NOTE = "progress_note"


class DerivationKind(str, Enum):
    AMENDMENT = "amendment"
    ADDENDUM = "addendum"


class ProgressNoteType(str, Enum):
    DAILY = "daily"
    SHIFT = "shift"
    DISCHARGE = "discharge"
    PROCEDURE = "procedure"
    CONSULTATION = "consultation"
    TRANSFER = "transfer"
    PHONE = "phone"
    OTHER = "other"


class PatientCondition(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    CRITICAL = "critical"


class Consciousness(str, Enum):
    ALERT = "alert"
    DROWSY = "drowsy"
    CONFUSED = "confused"
    UNRESPONSIVE = "unresponsive"


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class ClinicalDocument(BaseModel, ABC):
    """Envelope shared by every clinical document variant.

    Content lives on the concrete variants. The envelope carries identity,
    lifecycle, amendment linkage, audit and soft-delete state. ``version``
    only moves at finalize (it numbers the compliance ledger); ``revision``
    moves on every content or lifecycle write and is what callers quote back
    for optimistic concurrency.
    """

    # Names of the variant-specific content fields, in display order.
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ()
    # Sections an amendment may target, and the one used for "all".
    AMENDABLE_SECTIONS: ClassVar[Tuple[str, ...]] = ()
    LEAD_SECTION: ClassVar[str] = ""

    id: UUID
    patient_id: str = Field(min_length=1)
    encounter_id: Optional[str] = None
    facility_id: Optional[str] = None
    organization_id: str

    status: DocumentStatus = DocumentStatus.DRAFT
    version: int = Field(default=1, ge=1)
    revision: int = Field(default=1, ge=1)
    lock: Optional[DocumentLock] = None

    finalized_by: Optional[str] = None
    finalized_at: Optional[datetime] = None
    attestation: Optional[str] = None

    is_amendment: bool = False
    amendment_kind: Optional[DerivationKind] = None
    original_document_id: Optional[UUID] = None
    amendment_reason: Optional[str] = None
    amendment_number: Optional[int] = Field(default=None, ge=1)
    amendment_date: Optional[datetime] = None
    # Set on an original once an amendment supersedes it.
    latest_amendment_id: Optional[UUID] = None
    addenda: List[Addendum] = Field(default_factory=list)

    tags: List[str] = Field(default_factory=list)
    created_by: str
    updated_by: Optional[str] = None
    viewed_by: List[str] = Field(default_factory=list)
    document_date: datetime
    created_at: datetime
    updated_at: datetime

    deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    deletion_reason: Optional[str] = None

    @field_validator("document_date")
    @classmethod
    def _document_date_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_envelope(self) -> "ClinicalDocument":
        if self.lock is not None and self.status != DocumentStatus.DRAFT:
            raise ValueError("only draft documents can carry an edit lock")
        if self.is_amendment and self.original_document_id is None:
            raise ValueError("amendment documents must reference their original")
        if len(set(self.viewed_by)) != len(self.viewed_by):
            raise ValueError("viewed_by must not contain duplicates")
        return self

    @classmethod
    def editable_fields(cls) -> Tuple[str, ...]:
        return cls.CONTENT_FIELDS + ("tags",)

    @property
    def is_draft(self) -> bool:
        return self.status == DocumentStatus.DRAFT

    @abstractmethod
    def missing_fields(self) -> List[str]:
        raise NotImplementedError

    def validate_completeness(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise ValidationIncomplete(missing, document_id=self.id)

    def validated_changes(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate a partial content update against this variant.

        Returns the parsed values keyed by field name, ready to be applied with
        ``model_copy(update=...)``.
        """

        allowed = self.editable_fields()
        rejected = sorted(name for name in fields if name not in allowed)
        if rejected:
            raise InvalidDocumentData("Fields cannot be edited: " + ", ".join(rejected))

        merged = self.model_dump()
        merged.update(fields)
        try:
            candidate = type(self).model_validate(merged)
        except ValidationError as exc:
            raise InvalidDocumentData(str(exc)) from exc
        return {name: getattr(candidate, name) for name in fields}

    def content_snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", include=set(self.CONTENT_FIELDS))

    def section_text(self, section: str) -> str:
        if section not in self.AMENDABLE_SECTIONS:
            raise InvalidDocumentData(f"Unknown section {section!r} for {type(self).__name__}")
        return getattr(self, section) or ""

    @abstractmethod
    def searchable_text(self) -> str:
        raise NotImplementedError


class SoapNote(ClinicalDocument):
    """Structured SOAP note (Subjective, Objective, Assessment, Plan)."""

    REQUIRED_SECTIONS: ClassVar[Tuple[str, ...]] = ("subjective", "objective", "assessment", "plan")
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = REQUIRED_SECTIONS + (
        "chief_complaint",
        "vital_signs",
        "diagnoses",
        "medications",
        "orders",
        "follow_up",
    )
    AMENDABLE_SECTIONS: ClassVar[Tuple[str, ...]] = REQUIRED_SECTIONS
    LEAD_SECTION: ClassVar[str] = "subjective"

    kind: Literal["soap_note"] = "soap_note"

    subjective: str = ""
    objective: str = ""
    assessment: str = ""
    plan: str = ""
    chief_complaint: Optional[str] = None
    vital_signs: Optional[VitalSigns] = None
    diagnoses: List[Diagnosis] = Field(default_factory=list)
    medications: List[MedicationEntry] = Field(default_factory=list)
    orders: List[ClinicalOrder] = Field(default_factory=list)
    follow_up: Optional[FollowUp] = None

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_SECTIONS if _is_blank(getattr(self, name))]

    def searchable_text(self) -> str:
        parts = [self.subjective, self.objective, self.assessment, self.plan, self.chief_complaint or ""]
        return "\n".join(part for part in parts if part)


def _shift_requirements(note: "ProgressNote") -> List[str]:
    shift = note.shift
    missing = []
    if shift is None or shift.start is None:
        missing.append("shift.start")
    if shift is None or shift.end is None:
        missing.append("shift.end")
    if shift is None or shift.shift_type is None:
        missing.append("shift.shift_type")
    return missing


def _discharge_requirements(note: "ProgressNote") -> List[str]:
    discharge = note.discharge
    missing = []
    if discharge is None or discharge.disposition is None:
        missing.append("discharge.disposition")
    if discharge is None or _is_blank(discharge.instructions):
        missing.append("discharge.instructions")
    return missing


def _procedure_requirements(note: "ProgressNote") -> List[str]:
    procedure = note.procedure
    missing = []
    if procedure is None or _is_blank(procedure.procedure_name):
        missing.append("procedure.procedure_name")
    if procedure is None or procedure.start_time is None:
        missing.append("procedure.start_time")
    return missing


_NOTE_TYPE_REQUIREMENTS: Dict[ProgressNoteType, Callable[["ProgressNote"], List[str]]] = {
    ProgressNoteType.SHIFT: _shift_requirements,
    ProgressNoteType.DISCHARGE: _discharge_requirements,
    ProgressNoteType.PROCEDURE: _procedure_requirements,
}


class ProgressNote(ClinicalDocument):
    """Free-form progress note: daily, shift, discharge, procedure notes and so on."""

    MIN_CONTENT_LENGTH: ClassVar[int] = 10
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = (
        "note_type",
        "content",
        "condition",
        "consciousness",
        "vital_signs",
        "medications",
        "interventions",
        "observations",
        "concerns",
        "follow_up_needed",
        "follow_up_date",
        "follow_up_instructions",
        "shift",
        "procedure",
        "discharge",
        "consultation",
    )
    AMENDABLE_SECTIONS: ClassVar[Tuple[str, ...]] = ("content",)
    LEAD_SECTION: ClassVar[str] = "content"

    kind: Literal["progress_note"] = "progress_note"

    note_type: ProgressNoteType = ProgressNoteType.DAILY
    content: str = ""
    condition: PatientCondition = PatientCondition.STABLE
    consciousness: Optional[Consciousness] = None
    vital_signs: Optional[VitalSigns] = None
    medications: List[MedicationAdministration] = Field(default_factory=list)
    interventions: List[Intervention] = Field(default_factory=list)
    observations: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)
    follow_up_needed: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_instructions: Optional[str] = None

    shift: Optional[ShiftDetails] = None
    procedure: Optional[ProcedureDetails] = None
    discharge: Optional[DischargeDetails] = None
    consultation: Optional[ConsultationDetails] = None

    def missing_fields(self) -> List[str]:
        missing = []
        if len(self.content.strip()) < self.MIN_CONTENT_LENGTH:
            missing.append("content")
        requirements = _NOTE_TYPE_REQUIREMENTS.get(self.note_type)
        if requirements is not None:
            missing.extend(requirements(self))
        return missing

    def searchable_text(self) -> str:
        return "\n".join([self.content, *self.observations, *self.concerns])


ClinicalDocumentUnion = Annotated[Union[SoapNote, ProgressNote], Field(discriminator="kind")]

clinical_document_adapter: TypeAdapter[ClinicalDocumentUnion] = TypeAdapter(ClinicalDocumentUnion)

DOCUMENT_TYPES: Dict[DocumentKind, Type[ClinicalDocument]] = {
    DocumentKind.SOAP_NOTE: SoapNote,
    DocumentKind.PROGRESS_NOTE: ProgressNote,
}
