from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.clinical_docs.domain.errors import (
    ConcurrencyConflict,
    DocumentError,
    DocumentNotFound,
    InvalidDocumentData,
    InvalidStateTransition,
    LockConflict,
    PersistenceError,
    ValidationIncomplete,
)
from src.clinical_docs.domain.models.clinical_document import (
    ClinicalDocumentUnion,
    DocumentKind,
    DocumentStatus,
    PatientCondition,
    ProgressNoteType,
)
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.domain.models.queries import DocumentFilters, DocumentSearch, DocumentStatistics, Page
from src.clinical_docs.security import get_actor, get_api_key
from src.clinical_docs.services.documents import service as documents_module
from src.clinical_docs.services.documents.service import DocumentLifecycleService
from src.clinical_docs.tenancy import tenant_dependency


router = APIRouter(
    tags=["documents"],
    dependencies=[Depends(get_api_key), Depends(tenant_dependency)],
)


def get_document_service() -> DocumentLifecycleService:
    """Resolve the active service at request time.

    Looked up on the module so that ``init_sql_repositories`` can swap in a
    SQL-backed service after import.
    """

    return documents_module.document_service


class DocumentCreateRequest(BaseModel):
    kind: DocumentKind
    fields: Dict[str, Any]


class DocumentUpdateRequest(BaseModel):
    fields: Dict[str, Any]
    expected_revision: Optional[int] = None


class FinalizeRequest(BaseModel):
    attestation: str
    expected_revision: Optional[int] = None


class AmendmentRequest(BaseModel):
    reason: str
    changes: str
    section: Optional[str] = None


class AddendumRequest(BaseModel):
    content: str
    reason: str


class LockResponse(BaseModel):
    document_id: UUID
    locked: bool


class DeleteResponse(BaseModel):
    document_id: UUID
    deleted: bool


class DocumentPage(BaseModel):
    items: List[ClinicalDocumentUnion]
    total: int
    page: int
    limit: int


def _filters(
    encounter_id: Optional[str] = None,
    kind: Optional[DocumentKind] = None,
    status_filter: Optional[DocumentStatus] = Query(None, alias="status"),
    note_type: Optional[ProgressNoteType] = None,
    condition: Optional[PatientCondition] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> DocumentFilters:
    return DocumentFilters(
        encounter_id=encounter_id,
        kind=kind,
        status=status_filter,
        note_type=note_type,
        condition=condition,
        from_date=from_date,
        to_date=to_date,
    )


def _page(page: int = Query(1, ge=1), limit: Optional[int] = Query(None, ge=1)) -> Page:
    return Page(page=page) if limit is None else Page(page=page, limit=limit)


@router.post("/documents", response_model=ClinicalDocumentUnion, status_code=status.HTTP_201_CREATED)
async def create_document(
    payload: DocumentCreateRequest,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.create_document(payload.kind, payload.fields, actor)


@router.get("/documents", response_model=DocumentPage)
async def search_documents(
    filters: DocumentFilters = Depends(_filters),
    patient_id: Optional[str] = None,
    facility_id: Optional[str] = None,
    created_by: Optional[str] = None,
    text: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    page: Page = Depends(_page),
    service: DocumentLifecycleService = Depends(get_document_service),
) -> DocumentPage:
    criteria = DocumentSearch(
        **filters.model_dump(),
        patient_id=patient_id,
        facility_id=facility_id,
        created_by=created_by,
        text=text,
        tags=tags or [],
    )
    items, total = service.search(criteria, page)
    return DocumentPage(items=items, total=total, page=page.page, limit=page.effective_limit)


@router.get("/documents/statistics", response_model=DocumentStatistics)
async def document_statistics(
    facility_id: Optional[str] = None,
    service: DocumentLifecycleService = Depends(get_document_service),
) -> DocumentStatistics:
    return service.get_statistics(facility_id)


@router.get("/patients/{patient_id}/documents", response_model=DocumentPage)
async def list_patient_documents(
    patient_id: str,
    filters: DocumentFilters = Depends(_filters),
    page: Page = Depends(_page),
    service: DocumentLifecycleService = Depends(get_document_service),
) -> DocumentPage:
    items, total = service.list_by_patient(patient_id, filters, page)
    return DocumentPage(items=items, total=total, page=page.page, limit=page.effective_limit)


@router.get("/documents/{document_id}", response_model=ClinicalDocumentUnion)
async def get_document(
    document_id: UUID,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.get_document(document_id, actor)


@router.patch("/documents/{document_id}", response_model=ClinicalDocumentUnion)
async def update_document(
    document_id: UUID,
    payload: DocumentUpdateRequest,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.update_document(
        document_id, payload.fields, actor, expected_revision=payload.expected_revision
    )


@router.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: UUID,
    reason: str = Query(..., min_length=1),
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
) -> DeleteResponse:
    deleted = service.delete_document(document_id, actor, reason)
    return DeleteResponse(document_id=document_id, deleted=deleted)


@router.post("/documents/{document_id}/finalize", response_model=ClinicalDocumentUnion)
async def finalize_document(
    document_id: UUID,
    payload: FinalizeRequest,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.finalize_document(
        document_id, actor, payload.attestation, expected_revision=payload.expected_revision
    )


@router.post(
    "/documents/{document_id}/amendments",
    response_model=ClinicalDocumentUnion,
    status_code=status.HTTP_201_CREATED,
)
async def create_amendment(
    document_id: UUID,
    payload: AmendmentRequest,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.create_amendment(document_id, payload.reason, payload.changes, payload.section, actor)


@router.get("/documents/{document_id}/amendments", response_model=List[ClinicalDocumentUnion])
async def list_amendments(
    document_id: UUID,
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.list_amendments(document_id)


@router.get("/documents/{document_id}/current", response_model=ClinicalDocumentUnion)
async def get_current_revision(
    document_id: UUID,
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.get_current_revision(document_id)


@router.post(
    "/documents/{document_id}/addenda",
    response_model=ClinicalDocumentUnion,
    status_code=status.HTTP_201_CREATED,
)
async def create_addendum(
    document_id: UUID,
    payload: AddendumRequest,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
):
    return service.create_addendum(document_id, payload.content, payload.reason, actor)


@router.get("/documents/{document_id}/versions", response_model=List[DocumentVersion])
async def list_versions(
    document_id: UUID,
    service: DocumentLifecycleService = Depends(get_document_service),
) -> List[DocumentVersion]:
    return service.list_versions(document_id)


@router.post("/documents/{document_id}/lock", response_model=LockResponse)
async def lock_document(
    document_id: UUID,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
) -> LockResponse:
    return LockResponse(document_id=document_id, locked=service.lock_document(document_id, actor))


@router.delete("/documents/{document_id}/lock", response_model=LockResponse)
async def unlock_document(
    document_id: UUID,
    actor: str = Depends(get_actor),
    service: DocumentLifecycleService = Depends(get_document_service),
) -> LockResponse:
    released = service.unlock_document(document_id, actor)
    return LockResponse(document_id=document_id, locked=not released)


# Typed core errors and the HTTP status each maps to.
ERROR_STATUS: Dict[Type[DocumentError], int] = {
    DocumentNotFound: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    ValidationIncomplete: status.HTTP_422_UNPROCESSABLE_ENTITY,
    LockConflict: status.HTTP_423_LOCKED,
    InvalidDocumentData: status.HTTP_400_BAD_REQUEST,
    PersistenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def document_error_handler(request: Request, exc: DocumentError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        # Store failures are opaque to callers.
        return JSONResponse(status_code=status_code, content={"detail": "Internal error"})

    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ValidationIncomplete):
        body["missing"] = exc.missing
    elif isinstance(exc, LockConflict):
        body["locked_by"] = exc.locked_by
        body["locked_at"] = exc.locked_at.isoformat()
    elif isinstance(exc, ConcurrencyConflict) and exc.actual_revision is not None:
        body["revision"] = exc.actual_revision
    return JSONResponse(status_code=status_code, content=body)
