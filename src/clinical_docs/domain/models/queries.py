from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from src.clinical_docs.config import settings
from src.clinical_docs.domain.models.clinical_document import (
    DocumentKind,
    DocumentStatus,
    PatientCondition,
    ProgressNoteType,
)


class Page(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default_factory=lambda: settings.default_page_size, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.effective_limit

    @property
    def effective_limit(self) -> int:
        return min(self.limit, settings.max_page_size)


class DocumentFilters(BaseModel):
    """Optional filters for a patient's document listing."""

    encounter_id: Optional[str] = None
    kind: Optional[DocumentKind] = None
    status: Optional[DocumentStatus] = None
    note_type: Optional[ProgressNoteType] = None
    condition: Optional[PatientCondition] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


class DocumentSearch(DocumentFilters):
    """Organization-wide search criteria.

    ``text`` is matched case-insensitively against the narrative sections;
    ``tags`` matches documents carrying at least one of the given tags.
    """

    patient_id: Optional[str] = None
    facility_id: Optional[str] = None
    created_by: Optional[str] = None
    text: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class DocumentStatistics(BaseModel):
    total: int = 0
    by_status: Dict[DocumentStatus, int] = Field(default_factory=lambda: {s: 0 for s in DocumentStatus})
    recent: int = 0
    needs_finalization: int = 0
