from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, literal, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query
from sqlalchemy.orm.exc import StaleDataError

from src.clinical_docs.config import settings
from src.clinical_docs.domain.errors import ConcurrencyConflict, PersistenceError
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument, DocumentStatus
from src.clinical_docs.domain.models.document_version import DocumentVersion
from src.clinical_docs.domain.models.queries import (
    DocumentFilters,
    DocumentSearch,
    DocumentStatistics,
    Page,
)
from src.clinical_docs.infra.db.models import ClinicalDocumentORM, DocumentVersionORM, DocumentViewORM
from src.clinical_docs.infra.db.repositories import (
    Derivation,
    DocumentRepository,
    DocumentVersionRepository,
    Mutation,
    OriginalMarker,
    WriteCondition,
)
from src.clinical_docs.infra.db.session import SessionFactory

logger = logging.getLogger(__name__)


def _apply_filters(query: Query, criteria: DocumentFilters) -> Query:
    if criteria.encounter_id is not None:
        query = query.filter(ClinicalDocumentORM.encounter_id == criteria.encounter_id)
    if criteria.kind is not None:
        query = query.filter(ClinicalDocumentORM.kind == criteria.kind.value)
    if criteria.status is not None:
        query = query.filter(ClinicalDocumentORM.status == criteria.status.value)
    if criteria.note_type is not None:
        query = query.filter(ClinicalDocumentORM.note_type == criteria.note_type.value)
    if criteria.condition is not None:
        query = query.filter(ClinicalDocumentORM.condition == criteria.condition.value)
    if criteria.from_date is not None:
        query = query.filter(ClinicalDocumentORM.document_date >= criteria.from_date)
    if criteria.to_date is not None:
        query = query.filter(ClinicalDocumentORM.document_date <= criteria.to_date)

    if isinstance(criteria, DocumentSearch):
        if criteria.patient_id is not None:
            query = query.filter(ClinicalDocumentORM.patient_id == criteria.patient_id)
        if criteria.facility_id is not None:
            query = query.filter(ClinicalDocumentORM.facility_id == criteria.facility_id)
        if criteria.created_by is not None:
            query = query.filter(ClinicalDocumentORM.created_by == criteria.created_by)
        if criteria.text:
            query = query.filter(ClinicalDocumentORM.search_text.icontains(criteria.text, autoescape=True))
        if criteria.tags:
            wrapped = literal(",") + ClinicalDocumentORM.tags + literal(",")
            query = query.filter(or_(*[wrapped.like(f"%,{tag},%") for tag in criteria.tags]))
    return query


class SqlDocumentRepository(DocumentRepository):
    """SQL-backed document store.

    Conditional writes are optimistic: the row is read, the
    :class:`WriteCondition` is evaluated against it, and the UPDATE is issued
    as a compare-and-set on ``row_version``. If another writer got there
    first, SQLAlchemy raises ``StaleDataError`` and the whole step is retried
    against the fresh row, so the precondition always reflects the state the
    write actually lands on.
    """

    def __init__(self, session_factory: SessionFactory, *, max_attempts: Optional[int] = None) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts or settings.store_max_write_attempts

    def create(self, document: ClinicalDocument) -> ClinicalDocument:
        session = self._session_factory()
        try:
            session.add(ClinicalDocumentORM.from_domain(document))
            session.commit()
            return document
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Failed to create document {document.id}") from exc
        finally:
            session.close()

    def get(self, document_id: UUID) -> Optional[ClinicalDocument]:
        session = self._session_factory()
        try:
            orm = session.get(ClinicalDocumentORM, document_id)
            if orm is None or orm.deleted:
                return None
            return orm.to_domain()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load document {document_id}") from exc
        finally:
            session.close()

    def conditional_update(
        self,
        document_id: UUID,
        condition: WriteCondition,
        mutate: Mutation,
        *,
        bump_revision: bool = True,
    ) -> ClinicalDocument:
        for attempt in range(1, self._max_attempts + 1):
            session = self._session_factory()
            try:
                orm = session.get(ClinicalDocumentORM, document_id)
                current = condition.check(document_id, orm.to_domain() if orm is not None else None)
                updated = mutate(current)
                if bump_revision:
                    updated = updated.model_copy(update={"revision": current.revision + 1})
                orm.apply_domain(updated)
                session.commit()
                return updated
            except StaleDataError:
                session.rollback()
                logger.info("Write to document %s lost a race (attempt %d), retrying", document_id, attempt)
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Failed to update document {document_id}") from exc
            finally:
                session.close()
        raise ConcurrencyConflict(document_id)

    def create_derived(
        self,
        original_id: UUID,
        condition: WriteCondition,
        derive: Derivation,
        mark_original: OriginalMarker,
    ) -> Tuple[ClinicalDocument, ClinicalDocument]:
        for attempt in range(1, self._max_attempts + 1):
            session = self._session_factory()
            try:
                orm = session.get(ClinicalDocumentORM, original_id)
                original = condition.check(original_id, orm.to_domain() if orm is not None else None)
                existing = (
                    session.query(func.count(ClinicalDocumentORM.id))
                    .filter(ClinicalDocumentORM.original_document_id == original_id)
                    .scalar()
                )
                latest = None
                if original.latest_amendment_id is not None:
                    latest_orm = session.get(ClinicalDocumentORM, original.latest_amendment_id)
                    latest = latest_orm.to_domain() if latest_orm is not None else None
                derived = derive(original, (existing or 0) + 1, latest)
                updated_original = mark_original(original, derived)
                updated_original = updated_original.model_copy(update={"revision": original.revision + 1})
                session.add(ClinicalDocumentORM.from_domain(derived))
                orm.apply_domain(updated_original)
                session.commit()
                return derived, updated_original
            except (StaleDataError, IntegrityError):
                # Either the original moved or another derivation claimed the
                # same number; both mean the count must be re-derived.
                session.rollback()
                logger.info("Derivation from %s lost a race (attempt %d), retrying", original_id, attempt)
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Failed to derive document from {original_id}") from exc
            finally:
                session.close()
        raise ConcurrencyConflict(original_id)

    def add_viewer(self, document_id: UUID, viewer_id: str) -> bool:
        session = self._session_factory()
        try:
            orm = session.get(ClinicalDocumentORM, document_id)
            if orm is None or any(view.viewer_id == viewer_id for view in orm.views):
                return False
            session.add(DocumentViewORM(document_id=document_id, viewer_id=viewer_id))
            session.commit()
            return True
        except IntegrityError:
            # A concurrent reader recorded the same viewer first.
            session.rollback()
            return False
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Failed to record view of document {document_id}") from exc
        finally:
            session.close()

    def count_derived(self, original_id: UUID) -> int:
        session = self._session_factory()
        try:
            return (
                session.query(func.count(ClinicalDocumentORM.id))
                .filter(ClinicalDocumentORM.original_document_id == original_id)
                .scalar()
            ) or 0
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to count derivations of {original_id}") from exc
        finally:
            session.close()

    def list_derived(self, original_id: UUID) -> List[ClinicalDocument]:
        session = self._session_factory()
        try:
            rows = (
                session.query(ClinicalDocumentORM)
                .filter(ClinicalDocumentORM.original_document_id == original_id)
                .order_by(ClinicalDocumentORM.amendment_number.asc())
                .all()
            )
            return [row.to_domain() for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list derivations of {original_id}") from exc
        finally:
            session.close()

    def list_by_patient(
        self,
        organization_id: str,
        patient_id: str,
        filters: DocumentFilters,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        session = self._session_factory()
        try:
            query = session.query(ClinicalDocumentORM).filter(
                ClinicalDocumentORM.organization_id == organization_id,
                ClinicalDocumentORM.patient_id == patient_id,
                ClinicalDocumentORM.deleted.is_(False),
            )
            return self._page(_apply_filters(query, filters), page)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list documents for patient {patient_id}") from exc
        finally:
            session.close()

    def search(
        self,
        organization_id: str,
        criteria: DocumentSearch,
        page: Page,
    ) -> Tuple[List[ClinicalDocument], int]:
        session = self._session_factory()
        try:
            query = session.query(ClinicalDocumentORM).filter(
                ClinicalDocumentORM.organization_id == organization_id,
                ClinicalDocumentORM.deleted.is_(False),
            )
            return self._page(_apply_filters(query, criteria), page)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to search documents") from exc
        finally:
            session.close()

    @staticmethod
    def _page(query: Query, page: Page) -> Tuple[List[ClinicalDocument], int]:
        total = query.count()
        rows = (
            query.order_by(ClinicalDocumentORM.document_date.desc(), ClinicalDocumentORM.created_at.desc())
            .offset(page.offset)
            .limit(page.effective_limit)
            .all()
        )
        return [row.to_domain() for row in rows], total

    def statistics(
        self,
        organization_id: str,
        facility_id: Optional[str],
        since: datetime,
    ) -> DocumentStatistics:
        session = self._session_factory()
        try:
            scope = [
                ClinicalDocumentORM.organization_id == organization_id,
                ClinicalDocumentORM.deleted.is_(False),
            ]
            if facility_id is not None:
                scope.append(ClinicalDocumentORM.facility_id == facility_id)

            stats = DocumentStatistics()
            rows = (
                session.query(ClinicalDocumentORM.status, func.count(ClinicalDocumentORM.id))
                .filter(*scope)
                .group_by(ClinicalDocumentORM.status)
                .all()
            )
            for status, count in rows:
                stats.by_status[DocumentStatus(status)] = count
                stats.total += count
            stats.recent = (
                session.query(func.count(ClinicalDocumentORM.id))
                .filter(*scope, ClinicalDocumentORM.document_date > since)
                .scalar()
            ) or 0
            stats.needs_finalization = stats.by_status[DocumentStatus.DRAFT]
            return stats
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to compute document statistics") from exc
        finally:
            session.close()


class SqlDocumentVersionRepository(DocumentVersionRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def append(self, version: DocumentVersion) -> None:
        session = self._session_factory()
        try:
            session.add(DocumentVersionORM.from_domain(version))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Failed to append version for document {version.document_id}") from exc
        finally:
            session.close()

    def list_for_document(self, document_id: UUID) -> List[DocumentVersion]:
        session = self._session_factory()
        try:
            rows = (
                session.query(DocumentVersionORM)
                .filter(DocumentVersionORM.document_id == document_id)
                .order_by(DocumentVersionORM.version.desc(), DocumentVersionORM.changed_at.desc())
                .all()
            )
            return [row.to_domain() for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list versions for document {document_id}") from exc
        finally:
            session.close()
