import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.clinical_docs.domain.errors import (
    ConcurrencyConflict,
    DocumentNotFound,
    InvalidDocumentData,
    InvalidStateTransition,
    ValidationIncomplete,
)
from src.clinical_docs.domain.models.clinical_document import ClinicalDocument, DocumentStatus, SoapNote
from src.clinical_docs.tenancy import set_current_tenant


def test_create_document_starts_as_draft_version_one(draft, clock):
    assert isinstance(draft, SoapNote)
    assert draft.status == DocumentStatus.DRAFT
    assert draft.version == 1
    assert draft.revision == 1
    assert draft.organization_id == "default"
    assert draft.created_by == "doctor-1"
    assert draft.document_date == clock.now
    assert draft.lock is None


def test_create_document_rejects_envelope_fields(service):
    with pytest.raises(InvalidDocumentData):
        service.create_document("soap_note", {"patient_id": "pat-1", "status": "finalized"}, "doctor-1")


def test_create_document_rejects_unknown_kind(service):
    with pytest.raises(InvalidDocumentData):
        service.create_document("lab_report", {"patient_id": "pat-1"}, "doctor-1")


def test_create_document_validates_nested_payloads(service):
    with pytest.raises(InvalidDocumentData):
        service.create_document(
            "soap_note",
            {"patient_id": "pat-1", "vital_signs": {"blood_pressure": {"systolic": 80, "diastolic": 120}}},
            "doctor-1",
        )


def test_finalize_complete_note(service, draft, clock):
    # Create a draft with all four sections, then finalize.
    finalized = service.finalize_document(draft.id, "doctor-1", "I attest this note is accurate.")

    assert finalized.status == DocumentStatus.FINALIZED
    assert finalized.version == 2
    assert finalized.finalized_by == "doctor-1"
    assert finalized.finalized_at == clock.now
    assert finalized.attestation == "I attest this note is accurate."


def test_finalize_twice_fails_and_version_moves_once(service, draft):
    service.finalize_document(draft.id, "doctor-1", "I attest.")

    with pytest.raises(InvalidStateTransition):
        service.finalize_document(draft.id, "doctor-1", "I attest.")

    assert service.get_document(draft.id, "doctor-1").version == 2


@pytest.mark.parametrize("section", ["subjective", "objective", "assessment", "plan"])
def test_finalize_requires_every_soap_section(service, soap_fields, section):
    soap_fields[section] = "   "
    draft = service.create_document("soap_note", soap_fields, "doctor-1")

    with pytest.raises(ValidationIncomplete) as exc_info:
        service.finalize_document(draft.id, "doctor-1", "I attest.")

    assert exc_info.value.missing == [section]
    assert service.get_document(draft.id, "doctor-1").status == DocumentStatus.DRAFT


def test_finalize_requires_attestation(service, draft):
    with pytest.raises(ValidationIncomplete) as exc_info:
        service.finalize_document(draft.id, "doctor-1", "  ")

    assert exc_info.value.missing == ["attestation"]


def test_finalize_records_snapshot(service, finalized):
    versions = service.list_versions(finalized.id)

    assert len(versions) == 1
    assert versions[0].version == 2
    assert versions[0].reason == "Finalization"
    assert versions[0].content_snapshot["plan"] == finalized.plan


def test_update_draft_bumps_revision_not_version(service, draft, clock):
    clock.advance(minutes=5)
    updated = service.update_document(draft.id, {"plan": "Return in one week."}, "doctor-2")

    assert updated.plan == "Return in one week."
    assert updated.version == 1
    assert updated.revision == 2
    assert updated.updated_by == "doctor-2"
    assert updated.updated_at == clock.now


def test_update_finalized_document_fails_and_leaves_it_unchanged(service, finalized):
    with pytest.raises(InvalidStateTransition):
        service.update_document(finalized.id, {"plan": "Overwritten"}, "doctor-1")

    current = service.get_document(finalized.id, "doctor-1")
    assert current.plan == finalized.plan
    assert current.revision == finalized.revision


def test_update_rejects_non_editable_fields(service, draft):
    with pytest.raises(InvalidDocumentData):
        service.update_document(draft.id, {"version": 7}, "doctor-1")

    with pytest.raises(InvalidDocumentData):
        service.update_document(draft.id, {}, "doctor-1")


def test_update_with_stale_expected_revision_conflicts(service, draft):
    service.update_document(draft.id, {"plan": "First edit"}, "doctor-1", expected_revision=1)

    with pytest.raises(ConcurrencyConflict) as exc_info:
        service.update_document(draft.id, {"plan": "Lost edit"}, "doctor-2", expected_revision=1)

    assert exc_info.value.actual_revision == 2
    assert service.get_document(draft.id, "doctor-1").plan == "First edit"


def test_finalize_with_stale_expected_revision_conflicts(service, draft):
    service.update_document(draft.id, {"plan": "Edited"}, "doctor-1")

    with pytest.raises(ConcurrencyConflict):
        service.finalize_document(draft.id, "doctor-1", "I attest.", expected_revision=1)


def test_get_document_tracks_each_viewer_once(service, draft):
    for _ in range(5):
        service.get_document(draft.id, "nurse-1")
    document = service.get_document(draft.id, "doctor-2")

    assert document.viewed_by.count("nurse-1") == 1
    assert document.viewed_by == ["nurse-1", "doctor-2"]


def test_get_document_survives_view_tracking_failure(service, draft, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(service._documents, "add_viewer", broken)

    document = service.get_document(draft.id, "nurse-1")
    assert document.id == draft.id
    assert document.viewed_by == []


def test_finalize_survives_snapshot_failure(service, draft, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("history log down")

    monkeypatch.setattr(service.versions._versions, "append", broken)

    finalized = service.finalize_document(draft.id, "doctor-1", "I attest.")
    assert finalized.status == DocumentStatus.FINALIZED
    assert service.list_versions(draft.id) == []


def test_unknown_document_is_not_found(service):
    with pytest.raises(DocumentNotFound):
        service.get_document(uuid4(), "doctor-1")


def test_documents_are_scoped_to_organization(service, draft):
    set_current_tenant("other-org")

    with pytest.raises(DocumentNotFound):
        service.get_document(draft.id, "doctor-1")
    with pytest.raises(DocumentNotFound):
        service.finalize_document(draft.id, "doctor-1", "I attest.")


def test_soft_delete_draft(service, draft):
    assert service.delete_document(draft.id, "doctor-1", "Created in error") is True

    with pytest.raises(DocumentNotFound):
        service.get_document(draft.id, "doctor-1")
    items, total = service.list_by_patient("pat-1")
    assert total == 0


def test_soft_delete_requires_draft_and_reason(service, finalized, soap_fields):
    with pytest.raises(InvalidStateTransition):
        service.delete_document(finalized.id, "doctor-1", "Created in error")

    other = service.create_document("soap_note", soap_fields, "doctor-1")
    with pytest.raises(InvalidDocumentData):
        service.delete_document(other.id, "doctor-1", " ")


def test_concurrent_finalize_exactly_one_wins(service, draft):
    attempts = 8
    barrier = threading.Barrier(attempts)
    outcomes = []

    def finalize() -> None:
        barrier.wait()
        try:
            service.finalize_document(draft.id, "doctor-1", "I attest.")
            outcomes.append("finalized")
        except InvalidStateTransition:
            outcomes.append("rejected")

    threads = [threading.Thread(target=finalize) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("finalized") == 1
    assert outcomes.count("rejected") == attempts - 1
    assert service.get_document(draft.id, "doctor-1").version == 2
    assert len(service.list_versions(draft.id)) == 1


def test_document_base_cannot_be_instantiated(clock):
    with pytest.raises(TypeError):
        ClinicalDocument(
            id=uuid4(),
            patient_id="pat-1",
            organization_id="default",
            created_by="doctor-1",
            document_date=clock.now,
            created_at=clock.now,
            updated_at=clock.now,
        )


def test_document_date_is_normalized_to_utc(service, soap_fields):
    local = datetime(2024, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    offset = service.create_document("soap_note", {**soap_fields, "document_date": local}, "doctor-1")
    naive = service.create_document(
        "soap_note", {**soap_fields, "document_date": datetime(2024, 3, 1, 8, 0)}, "doctor-1"
    )

    assert offset.document_date.utcoffset() == timedelta(0)
    assert offset.document_date == naive.document_date == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
