from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DocumentVersion(BaseModel):
    """Immutable point-in-time copy of a document's content.

    Entries are appended at significant transitions (finalize, amendment,
    addendum) and never updated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID
    document_id: UUID
    version: int
    content_snapshot: Dict[str, Any] = Field(default_factory=dict)
    changed_by: str
    changed_at: datetime
    reason: Optional[str] = None
