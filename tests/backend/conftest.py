from datetime import datetime, timedelta, timezone

import pytest

from src.clinical_docs.infra.db.inmemory import InMemoryDocumentRepository, InMemoryDocumentVersionRepository
from src.clinical_docs.services.documents.service import DocumentLifecycleService
from src.clinical_docs.tenancy import set_current_tenant


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture(autouse=True)
def default_tenant():
    set_current_tenant("default")
    yield
    set_current_tenant("default")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(clock) -> DocumentLifecycleService:
    return DocumentLifecycleService(
        InMemoryDocumentRepository(),
        InMemoryDocumentVersionRepository(),
        clock=clock,
    )


@pytest.fixture
def soap_fields() -> dict:
    return {
        "patient_id": "pat-1",
        "encounter_id": "enc-1",
        "facility_id": "fac-1",
        "subjective": "Cough for three days, no fever.",
        "objective": "Lungs clear, SpO2 98%.",
        "assessment": "Viral upper respiratory infection.",
        "plan": "Fluids and rest; amoxicillin 500mg if worsening.",
    }


@pytest.fixture
def draft(service, soap_fields):
    return service.create_document("soap_note", soap_fields, "doctor-1")


@pytest.fixture
def finalized(service, draft):
    return service.finalize_document(draft.id, "doctor-1", "I attest this note is accurate.")
