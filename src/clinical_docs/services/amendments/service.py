from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from src.clinical_docs.clock import Clock, utc_now
from src.clinical_docs.domain.errors import InvalidDocumentData
from src.clinical_docs.domain.models.clinical_document import (
    ClinicalDocument,
    DerivationKind,
    DocumentStatus,
)
from src.clinical_docs.domain.models.clinical_payloads import Addendum
from src.clinical_docs.infra.db.repositories import DocumentRepository, WriteCondition
from src.clinical_docs.tenancy import get_current_tenant

logger = logging.getLogger(__name__)

ALL_SECTIONS = "all"

# An original can be amended again after its first amendment; derived
# documents themselves are never amended.
AMENDABLE_STATUSES = frozenset({DocumentStatus.FINALIZED, DocumentStatus.AMENDED})


class AmendmentPolicy(ABC):
    """Decides how amendment text is merged into the current content."""

    @abstractmethod
    def merge(self, current: ClinicalDocument, section: str, changes: str, number: int) -> Dict[str, Any]:
        """Return content field updates that turn ``current`` into amendment ``number``."""

        raise NotImplementedError


class AppendMarkerPolicy(AmendmentPolicy):
    """Append ``[AMENDMENT n]: <changes>`` to the target section.

    ``section="all"`` marks the whole document amended by appending to the
    variant's lead section (subjective for SOAP notes, content for progress
    notes).
    """

    def merge(self, current: ClinicalDocument, section: str, changes: str, number: int) -> Dict[str, Any]:
        target = current.LEAD_SECTION if section == ALL_SECTIONS else section
        text = current.section_text(target)
        marker = f"[AMENDMENT {number}]: {changes}"
        return {target: f"{text}\n\n{marker}" if text else marker}


def _require_text(name: str, value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise InvalidDocumentData(f"{name} is required")
    return value.strip()


class AmendmentEngine:
    """Derives new linked documents from finalized originals.

    The amendment number is never read from a stored counter: the store
    counts the documents already derived from the original inside the same
    atomic step that inserts the new one, so concurrent amendments cannot
    share a number and a client retry cannot skip one.

    Each amendment starts from the current revision: the latest amendment
    when there is one, otherwise the original. Corrections made by earlier
    amendments therefore carry forward into later ones.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        *,
        clock: Clock = utc_now,
        policy: Optional[AmendmentPolicy] = None,
    ) -> None:
        self._documents = documents
        self._clock = clock
        self.policy = policy or AppendMarkerPolicy()

    def amend(
        self,
        original_id: UUID,
        *,
        reason: str,
        changes: str,
        section: Optional[str],
        actor: str,
    ) -> Tuple[ClinicalDocument, ClinicalDocument]:
        """Create an amendment. Returns ``(amendment, updated_original)``."""

        reason = _require_text("reason", reason)
        changes = _require_text("changes", changes)
        section = section or ALL_SECTIONS
        now = self._clock()

        def _derive(
            original: ClinicalDocument, number: int, latest: Optional[ClinicalDocument]
        ) -> ClinicalDocument:
            current = latest if latest is not None else original
            return self._build_derived(
                original,
                source=current,
                number=number,
                kind=DerivationKind.AMENDMENT,
                status=DocumentStatus.AMENDED,
                reason=reason,
                actor=actor,
                content_updates=self.policy.merge(current, section, changes, number),
                addenda=list(original.addenda),
                now=now,
            )

        def _mark(original: ClinicalDocument, amendment: ClinicalDocument) -> ClinicalDocument:
            return original.model_copy(
                update={
                    "status": DocumentStatus.AMENDED,
                    "latest_amendment_id": amendment.id,
                    "updated_by": actor,
                    "updated_at": now,
                }
            )

        amendment, original = self._documents.create_derived(
            original_id, self._condition("amend", now), _derive, _mark
        )
        logger.info(
            "Created amendment %s (number %s) for document %s", amendment.id, amendment.amendment_number, original_id
        )
        return amendment, original

    def addend(
        self,
        original_id: UUID,
        *,
        content: str,
        reason: str,
        actor: str,
    ) -> Tuple[ClinicalDocument, ClinicalDocument]:
        """Create an addendum: an amendment variant that leaves content untouched.

        The addendum text is recorded as an :class:`Addendum` entry on the new
        document. It shares the amendment numbering but does not supersede the
        original, whose status is left as it was.
        """

        content = _require_text("content", content)
        reason = _require_text("reason", reason)
        now = self._clock()

        def _derive(
            original: ClinicalDocument, number: int, latest: Optional[ClinicalDocument]
        ) -> ClinicalDocument:
            entry = Addendum(content=content, reason=reason, added_by=actor, added_at=now)
            return self._build_derived(
                original,
                source=original,
                number=number,
                kind=DerivationKind.ADDENDUM,
                status=DocumentStatus.ADDENDED,
                reason=reason,
                actor=actor,
                content_updates={},
                addenda=[*original.addenda, entry],
                now=now,
            )

        def _mark(original: ClinicalDocument, addendum: ClinicalDocument) -> ClinicalDocument:
            return original.model_copy(update={"updated_by": actor, "updated_at": now})

        addendum, original = self._documents.create_derived(
            original_id, self._condition("add an addendum to", now), _derive, _mark
        )
        logger.info("Created addendum %s (number %s) for document %s", addendum.id, addendum.amendment_number, original_id)
        return addendum, original

    @staticmethod
    def _condition(action: str, now: datetime) -> WriteCondition:
        return WriteCondition(
            organization_id=get_current_tenant(),
            now=now,
            action=action,
            statuses=AMENDABLE_STATUSES,
            allow_derived=False,
        )

    @staticmethod
    def _build_derived(
        original: ClinicalDocument,
        *,
        source: ClinicalDocument,
        number: int,
        kind: DerivationKind,
        status: DocumentStatus,
        reason: str,
        actor: str,
        content_updates: Dict[str, Any],
        addenda: List[Addendum],
        now: datetime,
    ) -> ClinicalDocument:
        payload = original.model_dump()
        payload.update(source.content_snapshot())
        payload.update(content_updates)
        payload.update(
            id=uuid4(),
            status=status,
            version=1,
            revision=1,
            lock=None,
            finalized_by=None,
            finalized_at=None,
            attestation=None,
            is_amendment=True,
            amendment_kind=kind,
            original_document_id=original.id,
            amendment_reason=reason,
            amendment_number=number,
            amendment_date=now,
            latest_amendment_id=None,
            addenda=[entry.model_dump() for entry in addenda],
            created_by=actor,
            updated_by=actor,
            viewed_by=[],
            created_at=now,
            updated_at=now,
        )
        return type(original).model_validate(payload)
