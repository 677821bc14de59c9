from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID


class DocumentError(Exception):
    """Base class for every typed failure raised by the document core."""


class DocumentNotFound(DocumentError):
    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Clinical document {document_id} not found")
        self.document_id = document_id


class InvalidStateTransition(DocumentError):
    """The requested command is not allowed from the document's current status."""

    def __init__(self, message: str, *, document_id: Optional[UUID] = None, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.status = status


class ValidationIncomplete(DocumentError):
    """Required sections or fields are missing at finalize time."""

    def __init__(self, missing: Iterable[str], *, document_id: Optional[UUID] = None) -> None:
        self.missing: List[str] = list(missing)
        super().__init__("Document cannot be finalized, missing: " + ", ".join(self.missing))
        self.document_id = document_id


class LockConflict(DocumentError):
    def __init__(self, document_id: UUID, locked_by: str, locked_at: datetime) -> None:
        super().__init__(f"Document {document_id} is locked by {locked_by} since {locked_at.isoformat()}")
        self.document_id = document_id
        self.locked_by = locked_by
        self.locked_at = locked_at


class ConcurrencyConflict(DocumentError):
    """The document changed since the caller last read it."""

    def __init__(
        self,
        document_id: UUID,
        *,
        expected_revision: Optional[int] = None,
        actual_revision: Optional[int] = None,
    ) -> None:
        if expected_revision is not None:
            message = (
                f"Document {document_id} is at revision {actual_revision}, "
                f"caller expected {expected_revision}"
            )
        else:
            message = f"Document {document_id} was modified concurrently; retry the command"
        super().__init__(message)
        self.document_id = document_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class InvalidDocumentData(DocumentError):
    """Command payload names unknown or non-editable fields, or fails field validation."""


class PersistenceError(DocumentError):
    """Opaque store-level failure. The original exception is kept as ``__cause__``."""
