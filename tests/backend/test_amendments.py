import threading

import pytest

from src.clinical_docs.domain.errors import InvalidDocumentData, InvalidStateTransition
from src.clinical_docs.domain.models.clinical_document import DerivationKind, DocumentStatus


def test_amend_finalized_note(service, finalized):
    amendment = service.create_amendment(
        finalized.id,
        reason="correct dosage",
        changes="Amoxicillin 250mg, not 500mg.",
        section="plan",
        actor="doctor-1",
    )

    assert amendment.id != finalized.id
    assert amendment.is_amendment is True
    assert amendment.amendment_kind == DerivationKind.AMENDMENT
    assert amendment.original_document_id == finalized.id
    assert amendment.amendment_reason == "correct dosage"
    assert amendment.amendment_number == 1
    assert amendment.status == DocumentStatus.AMENDED
    assert amendment.plan == finalized.plan + "\n\n[AMENDMENT 1]: Amoxicillin 250mg, not 500mg."
    assert amendment.subjective == finalized.subjective
    assert amendment.patient_id == finalized.patient_id

    original = service.get_document(finalized.id, "doctor-1")
    assert original.status == DocumentStatus.AMENDED
    assert original.latest_amendment_id == amendment.id
    # The original's finalized content never changes.
    assert original.plan == finalized.plan
    assert original.attestation == finalized.attestation


def test_amendment_numbers_are_sequential(service, finalized):
    first = service.create_amendment(finalized.id, "typo", "Fixed typo.", "objective", "doctor-1")
    second = service.create_amendment(finalized.id, "dosage", "Dose changed.", "plan", "doctor-2")

    assert first.amendment_number == 1
    assert second.amendment_number == 2
    assert [a.id for a in service.list_amendments(finalized.id)] == [first.id, second.id]
    assert service._documents.count_derived(finalized.id) == 2


def test_amending_a_draft_fails(service, draft):
    with pytest.raises(InvalidStateTransition):
        service.create_amendment(draft.id, "reason", "changes", "plan", "doctor-1")

    assert service.list_amendments(draft.id) == []


def test_amendments_cannot_be_amended_or_edited(service, finalized):
    amendment = service.create_amendment(finalized.id, "typo", "Fixed typo.", "plan", "doctor-1")

    with pytest.raises(InvalidStateTransition):
        service.create_amendment(amendment.id, "again", "More changes.", "plan", "doctor-1")
    with pytest.raises(InvalidStateTransition):
        service.update_document(amendment.id, {"plan": "Edited"}, "doctor-1")


def test_amend_whole_document_marks_lead_section(service, finalized):
    amendment = service.create_amendment(finalized.id, "late entry", "Patient also reports headache.", None, "doctor-1")

    assert amendment.subjective.endswith("[AMENDMENT 1]: Patient also reports headache.")
    assert amendment.plan == finalized.plan


def test_amend_unknown_section_is_rejected(service, finalized):
    with pytest.raises(InvalidDocumentData):
        service.create_amendment(finalized.id, "reason", "changes", "billing", "doctor-1")

    assert service.list_amendments(finalized.id) == []
    assert service.get_document(finalized.id, "doctor-1").status == DocumentStatus.FINALIZED


def test_amend_requires_reason_and_changes(service, finalized):
    with pytest.raises(InvalidDocumentData):
        service.create_amendment(finalized.id, " ", "changes", "plan", "doctor-1")
    with pytest.raises(InvalidDocumentData):
        service.create_amendment(finalized.id, "reason", "", "plan", "doctor-1")


def test_amendment_records_snapshot(service, finalized):
    amendment = service.create_amendment(finalized.id, "dosage", "Dose changed.", "plan", "doctor-1")

    versions = service.list_versions(amendment.id)
    assert len(versions) == 1
    assert versions[0].reason == "Amendment 1: dosage"
    assert versions[0].content_snapshot["plan"] == amendment.plan


def test_current_revision_follows_latest_amendment(service, finalized):
    assert service.get_current_revision(finalized.id).id == finalized.id

    service.create_amendment(finalized.id, "one", "First.", "plan", "doctor-1")
    latest = service.create_amendment(finalized.id, "two", "Second.", "plan", "doctor-1")

    assert service.get_current_revision(finalized.id).id == latest.id
    assert service.get_current_revision(latest.id).id == latest.id


def test_addendum_shares_numbering_and_keeps_original_status(service, finalized):
    addendum = service.create_addendum(finalized.id, "Lab results reviewed, normal.", "late results", "doctor-1")

    assert addendum.status == DocumentStatus.ADDENDED
    assert addendum.amendment_kind == DerivationKind.ADDENDUM
    assert addendum.amendment_number == 1
    assert addendum.plan == finalized.plan
    assert [entry.content for entry in addendum.addenda] == ["Lab results reviewed, normal."]
    assert addendum.addenda[0].added_by == "doctor-1"
    assert service.get_document(finalized.id, "doctor-1").status == DocumentStatus.FINALIZED

    amendment = service.create_amendment(finalized.id, "dosage", "Dose changed.", "plan", "doctor-1")
    assert amendment.amendment_number == 2
    # Addenda never supersede the content.
    assert service.get_current_revision(finalized.id).id == amendment.id


def test_addendum_requires_finalized_original(service, draft):
    with pytest.raises(InvalidStateTransition):
        service.create_addendum(draft.id, "Note", "reason", "doctor-1")


def test_later_amendments_carry_earlier_corrections(service, finalized):
    dosage = service.create_amendment(finalized.id, "dosage", "Amoxicillin 250mg.", "plan", "doctor-1")
    exam = service.create_amendment(finalized.id, "exam", "Mild wheeze on the left.", "objective", "doctor-2")

    current = service.get_current_revision(finalized.id)
    assert current.id == exam.id
    assert current.plan == dosage.plan
    assert "[AMENDMENT 1]: Amoxicillin 250mg." in current.plan
    assert current.objective == finalized.objective + "\n\n[AMENDMENT 2]: Mild wheeze on the left."
    # The original keeps its finalized content.
    assert service.get_document(finalized.id, "doctor-1").plan == finalized.plan


def test_concurrent_amendments_get_distinct_numbers(service, finalized):
    attempts = 8
    barrier = threading.Barrier(attempts)
    numbers = []
    errors = []

    def amend(index: int) -> None:
        barrier.wait()
        try:
            amendment = service.create_amendment(finalized.id, "addition", f"Note {index}.", "plan", "doctor-1")
            numbers.append(amendment.amendment_number)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=amend, args=(i,)) for i in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(numbers) == list(range(1, attempts + 1))
    assert service._documents.count_derived(finalized.id) == attempts

    current = service.get_current_revision(finalized.id)
    assert current.amendment_number == attempts
    for number in range(1, attempts + 1):
        assert f"[AMENDMENT {number}]:" in current.plan
